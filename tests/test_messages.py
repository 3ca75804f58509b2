"""Tests for messages and value tagging."""

import math

import pytest

from crdtrelay.clock import Timestamp, parse
from crdtrelay.exceptions import FormatError, SerializationError
from crdtrelay.messages import Message, detag_value, tag_value

TS = "2024-05-01T12:00:00.000Z-0000-000000000000000A"


def wire_message(**overrides):
    data = {
        "timestamp": TS,
        "dataset": "todos",
        "row": "r1",
        "column": "title",
        "value": "buy milk",
    }
    data.update(overrides)
    return data


class TestTagging:
    """Tests for tag_value and detag_value."""

    @pytest.mark.parametrize(
        "value,tagged",
        [
            (None, "0:"),
            (3.14, "N:3.14"),
            (42, "N:42"),
            (-7, "N:-7"),
            ("hello", "S:hello"),
            ("", "S:"),
            ("a:b:c", "S:a:b:c"),
        ],
    )
    def test_tag_and_detag(self, value, tagged):
        """Test values encode to their tagged form and back."""
        assert tag_value(value) == tagged
        assert detag_value(tagged) == value

    def test_integer_stays_integer(self):
        """Test integers decode as int and floats as float."""
        assert type(detag_value(tag_value(42))) is int
        assert type(detag_value(tag_value(3.0))) is float
        assert detag_value(tag_value(3.0)) == 3.0

    def test_float_precision(self):
        """Test floats round-trip exactly."""
        value = 0.1 + 0.2
        assert detag_value(tag_value(value)) == value

    @pytest.mark.parametrize(
        "value",
        [True, False, math.nan, math.inf, -math.inf, [1, 2], {"a": 1}, b"bytes", object()],
    )
    def test_unserializable(self, value):
        """Test unsupported values raise SerializationError."""
        with pytest.raises(SerializationError):
            tag_value(value)

    @pytest.mark.parametrize("tagged", ["", "X", "X:abc", "N:abc", "N:", "S", None, 5])
    def test_invalid_tagged(self, tagged):
        """Test malformed tagged strings raise SerializationError."""
        with pytest.raises(SerializationError):
            detag_value(tagged)


class TestMessage:
    """Tests for the Message type."""

    def test_from_dict(self):
        """Test building a message from the wire shape."""
        message = Message.from_dict(wire_message(), "group-1")

        assert message.timestamp == parse(TS)
        assert message.group_id == "group-1"
        assert message.dataset == "todos"
        assert message.row == "r1"
        assert message.column == "title"
        assert message.value == "buy milk"
        assert message.tagged_value == "S:buy milk"

    def test_to_dict(self):
        """Test the wire shape omits the group id."""
        message = Message(parse(TS), "group-1", "todos", "r1", "done", None)

        assert message.to_dict() == {
            "timestamp": TS,
            "dataset": "todos",
            "row": "r1",
            "column": "done",
            "value": None,
        }

    def test_dict_round_trip(self):
        """Test to_dict and from_dict agree."""
        message = Message(Timestamp(1714564800123, 3, "B"), "g", "d", "r", "c", 2.5)
        assert Message.from_dict(message.to_dict(), "g") == message

    def test_missing_field(self):
        """Test a missing field raises SerializationError."""
        data = wire_message()
        del data["value"]

        with pytest.raises(SerializationError, match="value"):
            Message.from_dict(data, "g")

    def test_null_value_is_not_missing(self):
        """Test an explicit null value is accepted."""
        message = Message.from_dict(wire_message(value=None), "g")
        assert message.value is None

    def test_bad_timestamp(self):
        """Test a malformed timestamp raises FormatError."""
        with pytest.raises(FormatError):
            Message.from_dict(wire_message(timestamp="yesterday"), "g")

    def test_bad_value(self):
        """Test an unserializable value raises SerializationError."""
        with pytest.raises(SerializationError):
            Message.from_dict(wire_message(value=[1, 2]), "g")

    def test_non_string_field(self):
        """Test non-string cell coordinates are rejected."""
        with pytest.raises(SerializationError):
            Message.from_dict(wire_message(row=5), "g")

    def test_not_an_object(self):
        """Test non-dict payloads are rejected."""
        with pytest.raises(SerializationError):
            Message.from_dict(["timestamp"], "g")
