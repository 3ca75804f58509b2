"""crdtrelay: a relay that keeps replicas of an append-only message log in sync.

Replicas stamp their writes with a hybrid logical clock and send them to the
relay, which stores them once and uses a merkle trie of timestamps to tell
each replica which messages it is missing.
"""

__version__ = "0.1.0"
