"""Merkle trie over message timestamps.

The index is a plain nested dict so it can be stored and sent as JSON:

    {"hash": 123, "count": 2, "1": {"hash": 123, "count": 2, "0": {...}}}

Each node's ``hash`` is the XOR of the digests of every timestamp below it,
so the result does not depend on insertion order. Child keys are the base 3
digits of ``clock.bucket_path``, coarsest first.

Indexes are treated as immutable: ``insert`` copies the nodes on the path
it touches and shares everything else.
"""

import hashlib
import json
from typing import Any, Iterable

from .clock import BUCKET_DEPTH, Timestamp, bucket_path, bucket_start, to_string
from .exceptions import IndexShapeError

CHILD_KEYS = ("0", "1", "2")
HASH_BITS = 32

Index = dict[str, Any]


def empty_index() -> Index:
    """Return the index of an empty timestamp set."""
    return {}


def timestamp_hash(ts: Timestamp) -> int:
    """32-bit digest of a timestamp's canonical string."""
    digest = hashlib.sha256(to_string(ts).encode("utf-8")).digest()
    return int.from_bytes(digest[: HASH_BITS // 8], "big")


def root_hash(index: Index) -> int:
    return index.get("hash", 0)


def count(index: Index) -> int:
    """Number of timestamps folded into the index."""
    return index.get("count", 0)


def _children(node: Index) -> list[str]:
    return sorted(k for k in node if k in CHILD_KEYS)


def _is_complete(node: Index) -> bool:
    """True when the node still lists every child (not pruned)."""
    children_hash = 0
    for key in _children(node):
        children_hash ^= root_hash(node[key])
    return children_hash == root_hash(node)


def _insert_node(node: Index, path: str, value: int) -> Index:
    updated = dict(node)
    updated["hash"] = node.get("hash", 0) ^ value
    updated["count"] = node.get("count", 0) + 1
    if path:
        key = path[0]
        updated[key] = _insert_node(node.get(key, {}), path[1:], value)
    return updated


def insert(index: Index, ts: Timestamp) -> Index:
    """Return a new index that also contains ``ts``.

    Callers must not insert the same timestamp twice: XOR would cancel it
    out again. The message log's dedup guarantees this on the relay.
    """
    return _insert_node(index, bucket_path(ts), timestamp_hash(ts))


def build(timestamps: Iterable[Timestamp]) -> Index:
    """Build an index from a collection of distinct timestamps."""
    index = empty_index()
    for ts in timestamps:
        index = insert(index, ts)
    return index


def diff(a: Index, b: Index) -> int | None:
    """Find where two indexes diverge.

    Walks both tries together, always following the earliest child whose
    hashes differ (a missing child has hash 0). The walk stops when no child
    differs, or at a node that has lost children to ``prune`` on either side.

    Returns:
        None when the root hashes match, otherwise the first millisecond of
        the bucket where the walk stopped. Everything the two sides
        disagree on lies at or after that time.
    """
    if root_hash(a) == root_hash(b):
        return None

    node_a, node_b = a, b
    path = ""
    while len(path) < BUCKET_DEPTH:
        if not (_is_complete(node_a) and _is_complete(node_b)):
            break

        keys = sorted(set(_children(node_a)) | set(_children(node_b)))

        diff_key = None
        for key in keys:
            if root_hash(node_a.get(key, {})) != root_hash(node_b.get(key, {})):
                diff_key = key
                break

        if diff_key is None:
            break

        path += diff_key
        node_a = node_a.get(diff_key, {})
        node_b = node_b.get(diff_key, {})

    return bucket_start(path)


def _validate_counter(name: str, value: Any, path: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise IndexShapeError(
            f"Index node {path or '<root>'}: {name} must be a non-negative int, got {value!r}"
        )


def _validate_node(node: Any, path: str) -> None:
    if not isinstance(node, dict):
        raise IndexShapeError(
            f"Index node {path or '<root>'} must be an object, got {type(node).__name__}"
        )

    for key, value in node.items():
        if key in ("hash", "count"):
            _validate_counter(key, value, path)
            if key == "hash" and value >= 2**HASH_BITS:
                raise IndexShapeError(
                    f"Index node {path or '<root>'}: hash wider than {HASH_BITS} bits"
                )
        elif key in CHILD_KEYS:
            if len(path) >= BUCKET_DEPTH:
                raise IndexShapeError(
                    f"Index deeper than {BUCKET_DEPTH} levels at {path + key}"
                )
            _validate_node(value, path + key)
        else:
            raise IndexShapeError(f"Unexpected key {key!r} in index node {path or '<root>'}")

    # A leaf above full depth means a different bucket granularity; only an
    # empty root may have no children
    if not _children(node) and len(path) != BUCKET_DEPTH and (path or node.get("hash", 0)):
        raise IndexShapeError(
            f"Index leaf at depth {len(path)}, expected {BUCKET_DEPTH}"
        )


def validate(index: Any) -> Index:
    """Check that an index matches this bucketing scheme.

    Returns:
        The index, unchanged.

    Raises:
        IndexShapeError: If the index could not come from ``insert`` or ``prune``.
    """
    _validate_node(index, "")
    return index


def prune(index: Index, keep: int = 2) -> Index:
    """Drop all but the ``keep`` most recent children at every level.

    Hashes are kept, so the pruned index still compares correctly; it only
    reports coarser (earlier) divergence points.
    """
    if keep < 1:
        raise ValueError("keep must be at least 1")
    if not index.get("hash"):
        return index

    pruned: Index = {"hash": index["hash"]}
    if "count" in index:
        pruned["count"] = index["count"]
    for key in _children(index)[-keep:]:
        pruned[key] = prune(index[key], keep)
    return pruned


def to_json(index: Index) -> str:
    """Serialize an index for storage."""
    return json.dumps(index, separators=(",", ":"), sort_keys=True)


def from_json(text: str) -> Index:
    """Load and validate a serialized index."""
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise IndexShapeError(f"Index is not valid JSON: {e}") from e
    return validate(data)
