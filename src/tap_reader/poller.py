"""Polling loop that surfaces newly scanned RFID cards."""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Deque, Iterator

from .config import DEFAULT_HISTORY_LIMIT
from .device import DeviceProbe, TagRead, Unreachable


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ScanRecord:
    """A card read observed by the poller."""

    uid: str
    observed_at: datetime
    sequence_id: str

    def __post_init__(self) -> None:
        if not isinstance(self.uid, str) or not self.uid.strip():
            raise ValueError("Scan records require a non-empty uid")

    @classmethod
    def create(cls, uid: str, *, now: datetime | None = None) -> "ScanRecord":
        return cls(
            uid=uid,
            observed_at=now or datetime.now(timezone.utc),
            sequence_id=uuid.uuid4().hex,
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "uid": self.uid,
            "observed_at": self.observed_at.isoformat(),
            "sequence_id": self.sequence_id,
        }


class ScanHistory:
    """Newest-first bounded history; the oldest record is evicted past the limit."""

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if limit < 1:
            raise ValueError("History limit must be at least 1")
        self._records: Deque[ScanRecord] = deque(maxlen=limit)

    @property
    def limit(self) -> int:
        return self._records.maxlen or 0

    @property
    def latest(self) -> ScanRecord | None:
        return self._records[0] if self._records else None

    def add(self, record: ScanRecord) -> None:
        self._records.appendleft(record)

    def snapshot(self) -> tuple[ScanRecord, ...]:
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ScanRecord]:
        return iter(tuple(self._records))


@dataclass(frozen=True, slots=True)
class PollHandle:
    """Identifies one polling loop. Stale handles are ignored by :meth:`ScanPoller.stop` and by lost handlers."""

    address: str
    epoch: int


ScanListener = Callable[[ScanRecord, "tuple[ScanRecord, ...]"], None]
LostHandler = Callable[[PollHandle], "Awaitable[None] | None"]


class ScanPoller:
    """Poll ``/read-rfid`` at a fixed interval on exactly one address at a time.

    Every loop belongs to an epoch. Starting or stopping bumps the epoch, and
    a tick only records results while its epoch is still current, so a
    response that lands after :meth:`stop` is dropped.
    """

    def __init__(
        self,
        probe: DeviceProbe,
        *,
        interval: float = 1.0,
        read_timeout: float = 2.0,
        verify_timeout: float = 3.0,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        on_lost: LostHandler | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if read_timeout <= 0 or verify_timeout <= 0:
            raise ValueError("timeouts must be positive")
        self._probe = probe
        self._interval = float(interval)
        self._read_timeout = float(read_timeout)
        self._verify_timeout = float(verify_timeout)
        self._history = ScanHistory(history_limit)
        self._on_lost = on_lost
        self._listeners: list[ScanListener] = []
        self._epoch = 0
        self._handle: PollHandle | None = None
        self._task: asyncio.Task[None] | None = None
        self._lock: asyncio.Lock | None = None
        self._notifications: set[asyncio.Task[None]] = set()

    # ------------------------------ properties -----------------------------
    @property
    def handle(self) -> PollHandle | None:
        return self._handle

    @property
    def active(self) -> bool:
        return self._handle is not None

    @property
    def history(self) -> ScanHistory:
        return self._history

    @property
    def last_scan(self) -> ScanRecord | None:
        return self._history.latest

    def set_lost_handler(self, handler: LostHandler | None) -> None:
        self._on_lost = handler

    def add_listener(self, listener: ScanListener) -> None:
        """Register a callback invoked with the new record and updated history."""

        self._listeners.append(listener)

    # ------------------------------ lifecycle ------------------------------
    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def start(self, address: str) -> PollHandle:
        """Begin polling ``address``, cancelling any loop that is already running."""

        async with self._get_lock():
            await self._cancel_locked()
            self._epoch += 1
            handle = PollHandle(address=address, epoch=self._epoch)
            self._handle = handle
            self._task = asyncio.create_task(self._run(handle), name=f"scan-poller-{address}")
            logger.info("Polling reader at %s for card scans", address)
            return handle

    async def stop(self, handle: PollHandle | None = None) -> None:
        """Stop polling. With ``handle``, only stop if it is still the active loop."""

        async with self._get_lock():
            if handle is not None and handle != self._handle:
                return
            await self._cancel_locked()

    async def aclose(self) -> None:
        await self.stop()
        notifications = list(self._notifications)
        for task in notifications:
            task.cancel()
        if notifications:
            await asyncio.gather(*notifications, return_exceptions=True)

    async def _cancel_locked(self) -> None:
        task = self._task
        handle = self._handle
        self._task = None
        self._handle = None
        self._epoch += 1
        if task is None:
            return
        if task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:  # pragma: no cover - unexpected failure
                logger.debug("Scan poller task raised during cancellation", exc_info=True)
        if handle is not None:
            logger.info("Stopped polling reader at %s", handle.address)

    def _current(self, handle: PollHandle) -> bool:
        return self._epoch == handle.epoch

    # ------------------------------- polling -------------------------------
    async def _run(self, handle: PollHandle) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        while self._current(handle):
            keep_going = await self.poll_once(handle)
            if not keep_going:
                return
            # Ticks start on a fixed grid; a tick that overruns skips the missed slots.
            deadline += self._interval
            now = loop.time()
            if deadline < now:
                deadline = now
            await asyncio.sleep(deadline - now)

    async def poll_once(self, handle: PollHandle) -> bool:
        """Run a single tick for ``handle``. Returns ``False`` once the loop should end."""

        result = await self._probe.read_tag(handle.address, self._read_timeout)
        if not self._current(handle):
            return False
        if isinstance(result, TagRead):
            self._record(result.uid)
            return True
        return await self._handle_failure(handle, result)

    def _record(self, uid: str) -> None:
        if not uid:
            return
        latest = self._history.latest
        if latest is not None and latest.uid == uid:
            return
        record = ScanRecord.create(uid)
        self._history.add(record)
        logger.info("New card scanned: %s", uid)
        history = self._history.snapshot()
        for listener in list(self._listeners):
            try:
                listener(record, history)
            except Exception:
                logger.exception("Scan listener failed")

    async def _handle_failure(self, handle: PollHandle, failure: Unreachable) -> bool:
        logger.warning(
            "Polling %s failed (%s): %s; re-checking reader status",
            handle.address,
            failure.failure.value,
            failure.detail,
        )
        verification = await self._probe.probe(handle.address, self._verify_timeout)
        if not self._current(handle):
            return False
        if verification.reachable:
            return True
        logger.warning("Reader at %s is no longer reachable; stopping poller", handle.address)
        # The loop ends itself here; stop() from the lost handler then sees no task.
        self._task = None
        self._handle = None
        self._epoch += 1
        self._notify_lost(handle)
        return False

    def _notify_lost(self, handle: PollHandle) -> None:
        handler = self._on_lost
        if handler is None:
            return

        async def _deliver() -> None:
            try:
                result = handler(handle)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Scan poller lost handler failed")

        task = asyncio.get_running_loop().create_task(_deliver())
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)


__all__ = ["PollHandle", "ScanHistory", "ScanListener", "ScanPoller", "ScanRecord"]
