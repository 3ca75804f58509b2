"""Messages and the tagged value encoding used to store them."""

import math
import re
from dataclasses import dataclass
from typing import Any, Union

from . import clock
from .clock import Timestamp
from .exceptions import SerializationError

Value = Union[None, int, float, str]

NULL_TAG = "0"
NUMBER_TAG = "N"
STRING_TAG = "S"

_INT_RE = re.compile(r"-?[0-9]+")

MESSAGE_FIELDS = ("timestamp", "dataset", "row", "column", "value")


def tag_value(value: Value) -> str:
    """Encode a value as ``<tag>:<text>`` for storage.

    Raises:
        SerializationError: If the value is not None, a finite number or a str.
    """
    if value is None:
        return f"{NULL_TAG}:"
    # bool is an int subclass but not a number here
    if isinstance(value, bool):
        raise SerializationError(f"Unserializable value type: {value!r}")
    if isinstance(value, int):
        return f"{NUMBER_TAG}:{value}"
    if isinstance(value, float):
        if not math.isfinite(value):
            raise SerializationError(f"Unserializable number: {value!r}")
        return f"{NUMBER_TAG}:{value!r}"
    if isinstance(value, str):
        return f"{STRING_TAG}:{value}"

    raise SerializationError(f"Unserializable value type: {type(value).__name__}")


def detag_value(tagged: str) -> Value:
    """Decode a value written by ``tag_value``."""
    if not isinstance(tagged, str) or len(tagged) < 2 or tagged[1] != ":":
        raise SerializationError(f"Invalid tagged value: {tagged!r}")

    tag, body = tagged[0], tagged[2:]
    if tag == NULL_TAG:
        return None
    if tag == NUMBER_TAG:
        try:
            return int(body) if _INT_RE.fullmatch(body) else float(body)
        except ValueError as e:
            raise SerializationError(f"Invalid number: {body!r}") from e
    if tag == STRING_TAG:
        return body

    raise SerializationError(f"Invalid type key for value: {tagged!r}")


@dataclass(frozen=True)
class Message:
    """A single fact written by a replica.

    (dataset, row, column) names a cell; several messages may target the
    same cell at different timestamps. Identity is (timestamp, group_id).
    """

    timestamp: Timestamp
    group_id: str
    dataset: str
    row: str
    column: str
    value: Value

    def __post_init__(self) -> None:
        for name in ("group_id", "dataset", "row", "column"):
            if not isinstance(getattr(self, name), str):
                raise SerializationError(f"Message {name} must be a string")
        # Reject bad values before anything reaches storage
        tag_value(self.value)

    @property
    def tagged_value(self) -> str:
        return tag_value(self.value)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire shape (group id is implied by the request)."""
        return {
            "timestamp": clock.to_string(self.timestamp),
            "dataset": self.dataset,
            "row": self.row,
            "column": self.column,
            "value": self.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], group_id: str) -> "Message":
        """Create from the wire shape.

        Raises:
            FormatError: If the timestamp is malformed.
            SerializationError: If a field is missing or the value is invalid.
        """
        if not isinstance(data, dict):
            raise SerializationError(f"Message must be an object, got {type(data).__name__}")
        missing = [f for f in MESSAGE_FIELDS if f not in data]
        if missing:
            raise SerializationError(f"Message missing fields: {', '.join(missing)}")

        return cls(
            timestamp=clock.parse(data["timestamp"]),
            group_id=group_id,
            dataset=data["dataset"],
            row=data["row"],
            column=data["column"],
            value=data["value"],
        )
