"""Replica-side sync client.

Keeps the replica's own clock, the messages it knows about and their merkle
index, and exchanges them with a relay over HTTP with retry logic.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

from .. import merkle
from ..clock import HybridClock, make_replica_id, to_string
from ..config import Config
from ..exceptions import CRDTRelayError
from ..messages import Message, Value

logger = logging.getLogger(__name__)


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    FAILED = "failed"
    OFFLINE = "offline"  # Relay unavailable


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    messages_sent: int = 0
    messages_received: int = 0
    error: str | None = None
    timestamp: datetime | None = None
    diverged_at: int | None = None  # millis, when still out of step


class SyncClient:
    """Client for synchronizing one replica of a group with a relay.

    Local writes go through ``record``, which stamps them with this
    replica's clock. ``sync`` pushes queued writes together with the local
    merkle index and applies whatever the relay reports missing.
    """

    def __init__(
        self,
        group_id: str,
        replica_id: str | None = None,
        server_url: str | None = None,
        clock: HybridClock | None = None,
        max_retries: int = 3,
        timeout: float = 30.0,
        index_keep: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the sync client.

        Args:
            group_id: Group this replica belongs to.
            replica_id: This replica's id (random if not given).
            server_url: Base URL of the relay (e.g., "http://relay:8006").
            clock: Clock to stamp writes with (created if not given).
            max_retries: Maximum attempts per request.
            timeout: Request timeout in seconds.
            index_keep: Children kept per trie level in the index sent to
                the relay (0 sends the full index).
            transport: Optional httpx transport (used by tests).
        """
        self.group_id = group_id
        self.clock = clock or HybridClock(replica_id or make_replica_id())
        self.server_url = server_url
        self.max_retries = max_retries
        self.timeout = timeout
        self.index_keep = index_keep
        self._transport = transport

        self.messages: dict[str, Message] = {}
        self.index: merkle.Index = merkle.empty_index()
        self._pending: list[Message] = []
        self._last_sync: datetime | None = None
        self._consecutive_failures = 0

    @classmethod
    def from_config(
        cls,
        config: Config,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "SyncClient":
        """Create a client from the ``client`` and ``clock`` config sections."""
        if not config.client.group_id:
            raise ValueError("client.group_id is not configured")

        clock = HybridClock(
            config.client.replica_id or make_replica_id(),
            max_drift_ms=config.clock.max_drift_ms,
        )
        return cls(
            group_id=config.client.group_id,
            server_url=config.client.server_url,
            clock=clock,
            max_retries=config.client.retry_max_attempts,
            timeout=config.client.timeout_seconds,
            index_keep=config.client.index_keep,
            transport=transport,
        )

    @property
    def replica_id(self) -> str:
        return self.clock.replica_id

    @property
    def pending(self) -> list[Message]:
        """Local writes not yet accepted by the relay."""
        return list(self._pending)

    def _store(self, message: Message) -> bool:
        key = to_string(message.timestamp)
        if key in self.messages:
            return False
        self.messages[key] = message
        self.index = merkle.insert(self.index, message.timestamp)
        return True

    def record(self, dataset: str, row: str, column: str, value: Value) -> Message:
        """Record a local write and queue it for the next sync."""
        message = Message(
            timestamp=self.clock.send(),
            group_id=self.group_id,
            dataset=dataset,
            row=row,
            column=column,
            value=value,
        )
        self._store(message)
        self._pending.append(message)
        return message

    def apply_remote(self, payload: list[dict[str, Any]]) -> int:
        """Apply messages received from the relay.

        Returns:
            Number of messages that were new to this replica.
        """
        added = 0
        for data in payload:
            message = Message.from_dict(data, self.group_id)
            self.clock.recv(message.timestamp)
            if self._store(message):
                added += 1
        return added

    def _own_messages_since(self, millis: int) -> list[Message]:
        return sorted(
            (
                m
                for m in self.messages.values()
                if m.timestamp.replica_id == self.replica_id
                and m.timestamp.millis >= millis
            ),
            key=lambda m: m.timestamp,
        )

    async def _request_with_retry(
        self,
        path: str,
        json_data: Any,
    ) -> tuple[Any, str | None]:
        """POST to the relay with exponential backoff retry.

        Returns:
            Tuple of (response_data, error_message).
        """
        if not self.server_url:
            return None, "No server URL configured"

        url = f"{self.server_url.rstrip('/')}{path}"
        backoff = 1.0

        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.post(url, json=json_data)

                    if response.status_code == 200:
                        self._consecutive_failures = 0
                        return response.json(), None

                    elif response.status_code >= 500:
                        # Server error, retry
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        # Client error, don't retry
                        return None, f"HTTP {response.status_code}: {response.text}"

                except httpx.ConnectError:
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except Exception as e:
                    logger.error(f"Request error: {e}")
                    self._consecutive_failures += 1
                    return None, str(e)

                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        return None, f"Connection failed: max retries ({self.max_retries}) exceeded"

    def outgoing_index(self) -> merkle.Index:
        """The local index as sent to the relay, pruned to ``index_keep``."""
        if self.index_keep > 0:
            return merkle.prune(self.index, self.index_keep)
        return self.index

    async def _post_sync(self, outgoing: list[Message]) -> tuple[Any, str | None]:
        payload = {
            "group_id": self.group_id,
            "client_id": self.replica_id,
            "messages": [m.to_dict() for m in outgoing],
            "merkle": self.outgoing_index(),
        }
        return await self._request_with_retry("/sync", payload)

    async def sync(self) -> SyncResult:
        """Push pending writes and pull what this replica is missing.

        If the indexes still disagree afterwards, the relay is missing some
        of our own older writes; they are resent once from the divergence
        point.
        """
        outgoing = list(self._pending)
        sent = 0
        received = 0
        diverged_at = None

        for _ in range(2):
            data, error = await self._post_sync(outgoing)
            if error:
                return SyncResult(
                    status=SyncStatus.OFFLINE if "Connection" in error else SyncStatus.FAILED,
                    messages_sent=sent,
                    messages_received=received,
                    error=error,
                )

            sent += len(outgoing)
            self._pending = [m for m in self._pending if m not in outgoing]

            body = data.get("data", {})
            try:
                received += self.apply_remote(body.get("messages", []))
                server_index = merkle.validate(body.get("merkle", {}))
            except CRDTRelayError as e:
                logger.error(f"Rejected reply from relay: {e}")
                return SyncResult(
                    status=SyncStatus.FAILED,
                    messages_sent=sent,
                    messages_received=received,
                    error=f"{e.code}: {e}",
                )

            diverged_at = merkle.diff(server_index, self.index)
            if diverged_at is None:
                break
            outgoing = self._own_messages_since(diverged_at)
            if not outgoing:
                break

        if diverged_at is not None:
            logger.warning(
                f"Group {self.group_id} still out of sync from {diverged_at}"
            )

        self._last_sync = datetime.now()
        return SyncResult(
            status=SyncStatus.SUCCESS,
            messages_sent=sent,
            messages_received=received,
            timestamp=self._last_sync,
            diverged_at=diverged_at,
        )

    async def sync_loop(
        self,
        interval_seconds: float = 60,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run continuous sync loop.

        Args:
            interval_seconds: Seconds between sync attempts.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                result = await self.sync()
                logger.info(
                    f"Sync: {result.status.value}, "
                    f"sent={result.messages_sent}, "
                    f"received={result.messages_received}"
                )
            except Exception as e:
                logger.error(f"Sync loop error: {e}")

            # Back off while the relay keeps failing
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(
                    interval_seconds * (2 ** self._consecutive_failures),
                    3600,
                )
                logger.debug(f"Backing off sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(wait_time)

        logger.info("Sync loop stopped")

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful sync."""
        return self._last_sync

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status."""
        return {
            "server_url": self.server_url,
            "group_id": self.group_id,
            "replica_id": self.replica_id,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "consecutive_failures": self._consecutive_failures,
            "pending_messages": len(self._pending),
            "known_messages": len(self.messages),
        }
