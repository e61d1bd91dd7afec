"""Local network status reporting for reader reconciliation."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import subprocess
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Sequence


logger = logging.getLogger(__name__)


class NetworkError(RuntimeError):
    """Raised when the platform network status cannot be read."""


class Transport(str, Enum):
    WIFI = "wifi"
    OTHER = "other"
    NONE = "none"


@dataclass(frozen=True, slots=True)
class NetworkStatus:
    """Snapshot of the host's connectivity. Replaced wholesale on change."""

    connected: bool
    transport: Transport = Transport.NONE
    ssid: str | None = None
    local_address: str | None = None

    @classmethod
    def none(cls) -> "NetworkStatus":
        return cls(connected=False, transport=Transport.NONE)

    @property
    def on_wifi(self) -> bool:
        return self.connected and self.transport is Transport.WIFI

    def to_dict(self) -> dict[str, object | None]:
        return {
            "connected": self.connected,
            "transport": self.transport.value,
            "ssid": self.ssid,
            "local_address": self.local_address,
        }


StatusCallback = Callable[[NetworkStatus], "Awaitable[None] | None"]


class NetworkBackend:
    """Abstract source of :class:`NetworkStatus` snapshots."""

    def read_status(self) -> NetworkStatus:  # pragma: no cover - interface only
        raise NotImplementedError


class StaticBackend(NetworkBackend):
    """Backend returning a status pushed in by the caller."""

    def __init__(self, status: NetworkStatus | None = None) -> None:
        self._status = status or NetworkStatus.none()

    def set_status(self, status: NetworkStatus) -> None:
        self._status = status

    def read_status(self) -> NetworkStatus:
        return self._status


class NMCLIBackend(NetworkBackend):
    """Read connectivity from NetworkManager via nmcli commands."""

    def __init__(self, interface: str | None = None, *, timeout: float = 5.0) -> None:
        self._preferred_interface = interface
        self._timeout = timeout

    # ------------------------------- helpers -------------------------------
    def _run(self, args: Sequence[str]) -> str:
        try:
            completed = subprocess.run(
                list(args),
                check=True,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as exc:  # pragma: no cover - environment specific
            raise NetworkError("nmcli command unavailable") from exc
        except subprocess.TimeoutExpired as exc:  # pragma: no cover - environment specific
            raise NetworkError("nmcli command timed out") from exc
        except subprocess.CalledProcessError as exc:
            error_output = (exc.stderr or "").strip() or (exc.stdout or "").strip() or str(exc)
            raise NetworkError(error_output) from exc
        return completed.stdout

    @staticmethod
    def _unescape_nmcli_field(value: str) -> str:
        if "\\" not in value:
            return value
        return value.replace("\\\\", "\\").replace("\\:", ":")

    def _active_device(self) -> tuple[str, Transport] | None:
        output = self._run(["nmcli", "-t", "-f", "DEVICE,TYPE,STATE", "device"])
        connected: list[tuple[str, Transport]] = []
        for line in output.splitlines():
            parts = line.split(":")
            if len(parts) < 3:
                continue
            device, dev_type, state = (part.strip() for part in parts[:3])
            # "connected (externally)" also counts; "connecting" does not.
            if not device or not state.startswith("connected"):
                continue
            if dev_type in {"loopback", "bridge", "tun"}:
                continue
            transport = Transport.WIFI if dev_type == "wifi" else Transport.OTHER
            if self._preferred_interface:
                if device == self._preferred_interface:
                    return device, transport
                continue
            connected.append((device, transport))
        for device, transport in connected:
            if transport is Transport.WIFI:
                return device, transport
        return connected[0] if connected else None

    def _device_address(self, device: str) -> str | None:
        output = self._run(["nmcli", "-t", "-f", "IP4.ADDRESS", "device", "show", device])
        for line in output.splitlines():
            if ":" not in line:
                continue
            key, value = line.split(":", 1)
            if not key.strip().startswith("IP4.ADDRESS"):
                continue
            candidate = value.split("/")[0].strip()
            try:
                return str(ipaddress.IPv4Address(candidate))
            except ValueError:
                continue
        return None

    def _active_ssid(self, device: str) -> str | None:
        output = self._run(["nmcli", "-t", "-f", "IN-USE,SSID", "device", "wifi", "list", "ifname", device])
        for line in output.splitlines():
            in_use, _, ssid_raw = line.partition(":")
            if in_use.strip() not in {"*", "yes"}:
                continue
            ssid = self._unescape_nmcli_field(ssid_raw).strip()
            return ssid or None
        return None

    # ---------------------------- interface impl ---------------------------
    def read_status(self) -> NetworkStatus:
        active = self._active_device()
        if active is None:
            return NetworkStatus.none()
        device, transport = active
        ssid = self._active_ssid(device) if transport is Transport.WIFI else None
        return NetworkStatus(
            connected=True,
            transport=transport,
            ssid=ssid,
            local_address=self._device_address(device),
        )


class Subscription:
    """Handle returned by :meth:`NetworkObserver.subscribe`."""

    def __init__(self, observer: "NetworkObserver", callback: StatusCallback) -> None:
        self._observer = observer
        self.callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def close(self) -> None:
        if not self._active:
            return
        self._active = False
        self._observer._release(self)


class NetworkObserver:
    """Publish network status changes to a single subscriber.

    Delivery is ordered: refreshes are serialised, and the subscriber's
    callback is awaited before the next change is reported.
    """

    def __init__(self, backend: NetworkBackend | None = None, *, watch_interval: float = 5.0) -> None:
        if watch_interval <= 0:
            raise ValueError("watch_interval must be positive")
        self._backend = backend or NMCLIBackend()
        self._watch_interval = float(watch_interval)
        self._status = NetworkStatus.none()
        self._primed = False
        self._subscription: Subscription | None = None
        self._refresh_lock: asyncio.Lock | None = None
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    # ------------------------------ queries -------------------------------
    def current(self) -> NetworkStatus:
        return self._status

    # --------------------------- subscriptions ----------------------------
    def subscribe(self, callback: StatusCallback) -> Subscription:
        if self._subscription is not None and self._subscription.active:
            raise RuntimeError("NetworkObserver already has a subscriber")
        subscription = Subscription(self, callback)
        self._subscription = subscription
        return subscription

    @asynccontextmanager
    async def subscribed(self, callback: StatusCallback) -> AsyncIterator[Subscription]:
        """Subscribe for the duration of the ``async with`` block."""

        subscription = self.subscribe(callback)
        try:
            yield subscription
        finally:
            subscription.close()

    def _release(self, subscription: Subscription) -> None:
        if self._subscription is subscription:
            self._subscription = None

    # ------------------------------ refresh -------------------------------
    async def refresh(self, *, force: bool = False) -> NetworkStatus:
        """Re-read the backend and notify the subscriber when the status changed.

        ``force`` notifies even when nothing changed, for user-requested refreshes.
        """

        if self._refresh_lock is None:
            self._refresh_lock = asyncio.Lock()
        async with self._refresh_lock:
            status = await self._read()
            changed = status != self._status or not self._primed
            self._status = status
            self._primed = True
            if changed or force:
                await self._emit(status)
            return status

    async def _read(self) -> NetworkStatus:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._backend.read_status)
        except (NetworkError, OSError) as exc:
            logger.warning("Unable to read network status: %s", exc)
            return NetworkStatus.none()

    async def _emit(self, status: NetworkStatus) -> None:
        subscription = self._subscription
        if subscription is None or not subscription.active:
            return
        try:
            result = subscription.callback(status)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Network status subscriber failed")

    # ----------------------------- lifecycle ------------------------------
    def start(self) -> None:
        """Start watching the backend for changes."""

        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._watch())

    async def aclose(self) -> None:
        """Stop the watcher and drop the subscriber."""

        task = self._task
        stop_event = self._stop_event
        self._task = None
        self._stop_event = None
        if task is not None and stop_event is not None:
            stop_event.set()
            try:
                await task
            except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
                pass
        if self._subscription is not None:
            self._subscription.close()

    async def _watch(self) -> None:
        assert self._stop_event is not None
        stop_event = self._stop_event
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._watch_interval)
            except asyncio.TimeoutError:
                pass
            else:
                break
            await self.refresh()


__all__ = [
    "NMCLIBackend",
    "NetworkBackend",
    "NetworkError",
    "NetworkObserver",
    "NetworkStatus",
    "StaticBackend",
    "Subscription",
    "Transport",
]
