"""Exception classes for crdtrelay."""


class CRDTRelayError(Exception):
    """Base exception class for all crdtrelay errors."""

    code = "CRDTRELAY_ERROR"


class FormatError(CRDTRelayError, ValueError):
    """Raised when a timestamp string is not in canonical form."""

    code = "INVALID_TIMESTAMP"


class SerializationError(CRDTRelayError, ValueError):
    """Raised when a message value is not null, a number or a string."""

    code = "INVALID_VALUE"


class IndexShapeError(CRDTRelayError, ValueError):
    """Raised when a merkle index does not match the bucketing scheme."""

    code = "INVALID_INDEX"


class StorageError(CRDTRelayError):
    """Raised when a storage transaction fails and has been rolled back."""

    code = "STORAGE_ERROR"


class ClockDriftError(CRDTRelayError):
    """Raised when a clock runs too far ahead of physical time."""

    code = "CLOCK_DRIFT"


class CounterOverflowError(CRDTRelayError):
    """Raised when more than 0xFFFF events share one millisecond."""

    code = "COUNTER_OVERFLOW"


class DuplicateReplicaError(CRDTRelayError):
    """Raised when a clock receives a timestamp carrying its own replica id."""

    code = "DUPLICATE_REPLICA"
