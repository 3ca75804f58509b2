"""Server side of the sync protocol.

One request is one transaction: validate the batch, append what is new,
fold it into the group's merkle index, commit, then work out which messages
the client is missing by comparing indexes.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from .. import clock, merkle
from ..clock import Timestamp
from ..exceptions import SerializationError
from ..messages import Message
from .message_log import MessageLog

logger = logging.getLogger(__name__)

# Replica id of the catch-up boundary; no valid replica id sorts below it
BOUNDARY_REPLICA_ID = "0"


@dataclass
class SyncRequest:
    """A parsed sync request."""

    group_id: str
    replica_id: str
    messages: list[dict[str, Any]] = field(default_factory=list)
    client_index: merkle.Index | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncRequest":
        """Create from the wire shape (``group_id``, ``client_id``, ``merkle``)."""
        return cls(
            group_id=data["group_id"],
            replica_id=data["client_id"],
            messages=data.get("messages") or [],
            client_index=data.get("merkle"),
        )


@dataclass
class SyncResponse:
    """Result of a sync: the catch-up messages and the group's index."""

    messages: list[Message]
    index: merkle.Index
    inserted: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire shape."""
        return {
            "status": "ok",
            "data": {
                "messages": [m.to_dict() for m in self.messages],
                "merkle": self.index,
            },
        }


class SyncCoordinator:
    """Applies sync requests to a MessageLog."""

    def __init__(self, log: MessageLog):
        self.log = log

    def _parse_batch(self, request: SyncRequest) -> list[Message]:
        if not isinstance(request.group_id, str) or not request.group_id:
            raise SerializationError("group_id must be a non-empty string")
        clock.normalize_replica_id(request.replica_id)
        if not isinstance(request.messages, list):
            raise SerializationError("messages must be a list")

        messages = [Message.from_dict(m, request.group_id) for m in request.messages]

        if request.client_index is not None:
            merkle.validate(request.client_index)

        return messages

    def apply(self, group_id: str, messages: list[Message]) -> tuple[merkle.Index, int]:
        """Append messages and update the group index in one transaction.

        Returns:
            The committed index and the number of newly stored messages.
        """
        inserted = 0
        with self.log.transaction() as txn:
            # Read inside the write transaction so concurrent syncs of the
            # same group cannot overwrite each other's index
            index = txn.load_index(group_id)
            for message in messages:
                if txn.append_if_absent(message):
                    index = merkle.insert(index, message.timestamp)
                    inserted += 1
            txn.save_index(group_id, index)
        return index, inserted

    def catch_up(
        self,
        group_id: str,
        replica_id: str,
        index: merkle.Index,
        client_index: merkle.Index,
    ) -> list[Message]:
        """Messages the client is missing, judged by comparing indexes."""
        diff_millis = merkle.diff(index, client_index)
        if diff_millis is None:
            return []

        boundary = Timestamp(diff_millis, 0, BOUNDARY_REPLICA_ID)
        logger.debug(f"Group {group_id} diverges from {replica_id} at {boundary}")
        return self.log.query_after(group_id, boundary, replica_id, inclusive=True)

    def sync(self, request: SyncRequest) -> SyncResponse:
        """Handle one sync request.

        Raises:
            FormatError: A timestamp in the batch is malformed.
            SerializationError: A message or its value is malformed.
            IndexShapeError: The client index does not fit the bucket scheme.
            StorageError: The transaction failed and was rolled back.

        Nothing is stored unless the whole batch is accepted.
        """
        messages = self._parse_batch(request)
        index, inserted = self.apply(request.group_id, messages)

        missing: list[Message] = []
        if request.client_index is not None:
            missing = self.catch_up(
                request.group_id, request.replica_id, index, request.client_index
            )

        logger.info(
            f"Sync group={request.group_id} replica={request.replica_id}: "
            f"received={len(messages)}, inserted={inserted}, returned={len(missing)}"
        )
        return SyncResponse(messages=missing, index=index, inserted=inserted)
