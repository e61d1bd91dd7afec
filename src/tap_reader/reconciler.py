"""Connection state machine tying network events, discovery and polling together.

The reconciler is the single owner of the believed reader address and the
connection state. Network events, probe outcomes, discovery results and poll
failures all funnel through one ``asyncio.Lock`` so state is only mutated by
one writer at a time.

States::

    idle --(setup SSID)--> setup --(probe: joined)--> operational
    idle --(other Wi-Fi)--> locating --(found)--> operational
    operational --(probe/poll failure, Wi-Fi drop)--> lost --(retry/manual)--> locating/operational
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

import httpx

from .config import ConfigManager, DEFAULT_SETTINGS, ReaderSettings
from .device import (
    CredentialSender,
    DeviceProbe,
    FailureKind,
    ProbeResult,
    Reachable,
    ReaderError,
    SendResult,
    Unreachable,
    normalise_address,
)
from .locator import DeviceLocator, LocateResult
from .mdns import HostnameResolver
from .network import NetworkObserver, NetworkStatus, Subscription
from .poller import PollHandle, ScanPoller, ScanRecord
from .system_log import EventLog


logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    IDLE = "idle"
    SETUP = "setup"
    LOCATING = "locating"
    OPERATIONAL = "operational"
    LOST = "lost"


class ConnectionMode(str, Enum):
    SETUP = "setup"
    OPERATIONAL = "operational"
    UNKNOWN = "unknown"


def mode_for_state(state: ConnectionState) -> ConnectionMode:
    if state is ConnectionState.SETUP:
        return ConnectionMode.SETUP
    if state is ConnectionState.OPERATIONAL:
        return ConnectionMode.OPERATIONAL
    return ConnectionMode.UNKNOWN


@dataclass(frozen=True, slots=True)
class ReaderSnapshot:
    """Everything the presentation layer renders, captured at one instant."""

    network: NetworkStatus
    state: ConnectionState
    address: str | None
    last_scan: ScanRecord | None
    history: tuple[ScanRecord, ...]
    discovering: bool
    sending_credentials: bool
    last_error: FailureKind | None
    last_active: datetime | None

    @property
    def mode(self) -> ConnectionMode:
        return mode_for_state(self.state)

    @property
    def manual_entry_available(self) -> bool:
        return not self.discovering

    def to_dict(self) -> dict[str, object | None]:
        return {
            "network": self.network.to_dict(),
            "state": self.state.value,
            "mode": self.mode.value,
            "address": self.address,
            "last_scan": self.last_scan.to_dict() if self.last_scan is not None else None,
            "history": [record.to_dict() for record in self.history],
            "discovering": self.discovering,
            "sending_credentials": self.sending_credentials,
            "last_error": self.last_error.value if self.last_error is not None else None,
            "last_active": self.last_active.isoformat() if self.last_active is not None else None,
            "manual_entry_available": self.manual_entry_available,
        }


SnapshotListener = Callable[[ReaderSnapshot], None]


class ConnectionReconciler:
    """Determine where the reader is and which mode it is in."""

    def __init__(
        self,
        observer: NetworkObserver,
        *,
        settings: ReaderSettings | None = None,
        config: ConfigManager | None = None,
        client: httpx.AsyncClient | None = None,
        probe: DeviceProbe | None = None,
        locator: DeviceLocator | None = None,
        poller: ScanPoller | None = None,
        sender: CredentialSender | None = None,
        resolver: HostnameResolver | None = None,
        event_log: EventLog | None = None,
    ) -> None:
        if settings is None:
            settings = config.get_settings() if config is not None else DEFAULT_SETTINGS
        self._settings = settings
        self._config = config
        self._observer = observer
        self._owned_client: httpx.AsyncClient | None = None
        if client is None and (probe is None or sender is None):
            client = httpx.AsyncClient()
            self._owned_client = client
        self._probe = probe or DeviceProbe(client)
        self._sender = sender or CredentialSender(client, timeout=settings.credential_timeout)
        self._owned_resolver: HostnameResolver | None = None
        if locator is None:
            if resolver is None:
                resolver = HostnameResolver()
                self._owned_resolver = resolver
            locator = DeviceLocator(self._probe, settings=settings, resolver=resolver)
        self._locator = locator
        self._poller = poller or ScanPoller(
            self._probe,
            interval=settings.poll_interval,
            read_timeout=settings.poll_timeout,
            verify_timeout=settings.probe_timeout,
            history_limit=settings.history_limit,
        )
        self._poller.set_lost_handler(self._handle_poll_lost)
        self._poller.add_listener(self._handle_scan)
        self._event_log = event_log or EventLog(path=None)

        self._lock = asyncio.Lock()
        self._network = observer.current()
        self._state = ConnectionState.IDLE
        self._address: str | None = None
        self._known_address: str | None = config.get_known_address() if config is not None else None
        self._last_error: FailureKind | None = None
        self._last_active: datetime | None = None
        self._sending = False
        self._listeners: list[SnapshotListener] = []
        self._subscription: Subscription | None = None
        self._reprobe_task: asyncio.Task[None] | None = None
        self._rediscover_task: asyncio.Task[None] | None = None
        self._poll_handle: PollHandle | None = None

    # ------------------------------ properties -----------------------------
    @property
    def settings(self) -> ReaderSettings:
        return self._settings

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def poller(self) -> ScanPoller:
        return self._poller

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def mode(self) -> ConnectionMode:
        return mode_for_state(self._state)

    @property
    def address(self) -> str | None:
        return self._address

    def snapshot(self) -> ReaderSnapshot:
        return ReaderSnapshot(
            network=self._network,
            state=self._state,
            address=self._address,
            last_scan=self._poller.last_scan,
            history=self._poller.history.snapshot(),
            discovering=self._locator.in_progress,
            sending_credentials=self._sending,
            last_error=self._last_error,
            last_active=self._last_active,
        )

    def add_listener(self, listener: SnapshotListener) -> None:
        """Register a callback receiving a :class:`ReaderSnapshot` after each change."""

        self._listeners.append(listener)

    # ------------------------------ lifecycle ------------------------------
    async def start(self) -> ReaderSnapshot:
        """Subscribe to network changes and reconcile the initial status."""

        if self._subscription is None:
            self._subscription = self._observer.subscribe(self.handle_network_status)
            self._event_log.record("connection", "startup", "Reader reconciliation started.")
        self._observer.start()
        await self._observer.refresh(force=True)
        return self.snapshot()

    async def aclose(self) -> None:
        for task in (self._reprobe_task, self._rediscover_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reprobe_task = None
        self._rediscover_task = None
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        await self._observer.aclose()
        await self._poller.aclose()
        if self._owned_resolver is not None:
            await self._owned_resolver.aclose()
        if self._owned_client is not None:
            await self._owned_client.aclose()
            self._owned_client = None

    async def wait_for_pending(self) -> None:
        """Wait for a scheduled credential re-probe to finish."""

        task = self._reprobe_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    # ---------------------------- network events ---------------------------
    async def handle_network_status(self, status: NetworkStatus) -> None:
        """React to a network change reported by the observer."""

        async with self._lock:
            self._network = status
            if not status.on_wifi:
                await self._poller.stop()
                self._last_error = FailureKind.NO_NETWORK
                self._record(
                    "network",
                    "no_network",
                    "Wi-Fi connection required to reach the reader.",
                    transport=status.transport.value,
                )
                if self._state is ConnectionState.OPERATIONAL:
                    self._set_state(ConnectionState.LOST, "Wi-Fi dropped; no longer watching the reader.")
            else:
                if self._last_error is FailureKind.NO_NETWORK:
                    self._last_error = None
                self._record(
                    "network",
                    "wifi_connected",
                    f"Connected to Wi-Fi network {status.ssid or 'unknown'}.",
                    ssid=status.ssid,
                    local_address=status.local_address,
                )
                if status.ssid == self._settings.setup_ssid:
                    await self._enter_setup_locked()
                else:
                    await self._reconnect_locked(status)
        self._publish()

    async def _enter_setup_locked(self) -> None:
        await self._poller.stop()
        self._address = self._settings.access_point_address
        self._set_state(ConnectionState.SETUP, "On the reader's setup network.")
        result = await self._probe.probe(self._address, self._settings.probe_timeout)
        await self._apply_probe_locked(result)

    async def _reconnect_locked(self, status: NetworkStatus) -> None:
        await self._poller.stop()
        self._set_state(ConnectionState.LOCATING, "Looking for the reader on the current network.")
        known = self._previous_station_address()
        if known is not None:
            result = await self._probe.probe(known, self._settings.probe_timeout)
            if isinstance(result, Reachable):
                await self._apply_probe_locked(result)
                return
            self._record(
                "discovery",
                "known_address_unreachable",
                f"Reader not answering at last known address {known}.",
                address=known,
                failure=result.failure.value,
            )
        await self._locate_locked(status.local_address)

    def _previous_station_address(self) -> str | None:
        for candidate in (self._address, self._known_address):
            if candidate and candidate != self._settings.access_point_address:
                return candidate
        return None

    # ------------------------------ discovery ------------------------------
    async def rediscover(self) -> LocateResult | None:
        """Run discovery on user request."""

        if self._locator.in_progress:
            raise ReaderError("Discovery already in progress")
        async with self._lock:
            if not self._network.on_wifi:
                self._last_error = FailureKind.NO_NETWORK
                result = None
            else:
                await self._poller.stop()
                self._set_state(ConnectionState.LOCATING, "Discovery requested.")
                result = await self._locate_locked(self._network.local_address)
        self._publish()
        return result

    async def _locate_locked(self, hint: str | None) -> LocateResult | None:
        self._publish()
        result = await self._locator.locate(hint)
        if result is None:
            self._last_error = FailureKind.DISCOVERY_EXHAUSTED
            self._set_state(
                ConnectionState.LOST,
                "Reader not found on this network; enter its address manually.",
            )
            self._schedule_rediscovery()
            return None
        self._record(
            "discovery",
            "found",
            f"Reader found at {result.address} by {result.strategy} lookup.",
            address=result.address,
            strategy=result.strategy,
        )
        await self._apply_probe_locked(result.probe)
        return result

    def _schedule_rediscovery(self) -> None:
        interval = self._settings.rediscover_interval
        if interval <= 0:
            return
        if self._rediscover_task is not None and not self._rediscover_task.done():
            return
        self._rediscover_task = asyncio.get_running_loop().create_task(self._rediscover_loop(interval))

    async def _rediscover_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self._state is not ConnectionState.LOST or not self._network.on_wifi:
                return
            if self._locator.in_progress:
                continue
            logger.info("Retrying reader discovery in the background")
            try:
                await self.rediscover()
            except ReaderError:
                continue
            if self._state is not ConnectionState.LOST:
                return

    # ---------------------------- manual address ---------------------------
    async def set_manual_address(self, address: str) -> ProbeResult:
        """Probe a user-entered address and adopt it when the reader answers."""

        cleaned = normalise_address(address)
        if self._locator.in_progress:
            raise ReaderError("Discovery in progress; try again when it finishes")
        async with self._lock:
            self._record("discovery", "manual_address", f"Checking manually entered address {cleaned}.", address=cleaned)
            result = await self._probe.probe(cleaned, self._settings.probe_timeout)
            await self._apply_probe_locked(result)
        self._publish()
        return result

    # ------------------------------ credentials ----------------------------
    async def submit_credentials(self, ssid: str, password: str) -> SendResult:
        """Hand Wi-Fi credentials to the reader and schedule a confirmation probe."""

        cleaned_ssid = ssid.strip() if isinstance(ssid, str) else ""
        if not cleaned_ssid or not isinstance(password, str) or not password:
            raise ValueError("Both SSID and password are required")
        async with self._lock:
            if self._sending:
                raise ReaderError("Credentials are already being sent")
            address = self._address or self._settings.access_point_address
            self._sending = True
        self._publish()
        result = await self._sender.send(address, cleaned_ssid, password)
        if not result.ok:
            self._record(
                "credentials",
                "send_failed",
                f"Could not deliver Wi-Fi credentials to {address}.",
                address=address,
                failure=result.failure.value if result.failure else None,
                status_code=result.status_code,
            )
            async with self._lock:
                self._sending = False
            self._publish()
            return result
        self._record(
            "credentials",
            "sent",
            f"Reader accepted credentials for {cleaned_ssid}; confirming in "
            f"{self._settings.credential_reprobe_delay:g}s.",
            address=address,
            ssid=cleaned_ssid,
        )
        self._reprobe_task = asyncio.get_running_loop().create_task(
            self._delayed_reprobe(address, self._settings.credential_reprobe_delay)
        )
        return result

    async def _delayed_reprobe(self, address: str, delay: float) -> None:
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            async with self._lock:
                result = await self._probe.probe(address, self._settings.probe_timeout)
                await self._apply_probe_locked(result)
        finally:
            self._sending = False
            self._publish()

    # ------------------------------- refresh -------------------------------
    async def refresh_network(self) -> NetworkStatus:
        """Re-read the network status and reconcile even if nothing changed."""

        return await self._observer.refresh(force=True)

    # ----------------------------- transitions -----------------------------
    async def _apply_probe_locked(self, result: ProbeResult) -> None:
        if isinstance(result, Unreachable):
            self._last_error = result.failure
            if self._state is ConnectionState.OPERATIONAL and result.address == self._address:
                await self._poller.stop()
                self._set_state(ConnectionState.LOST, f"Reader stopped answering at {result.address}.")
                self._schedule_rediscovery()
            else:
                self._record(
                    "connection",
                    "probe_failed",
                    f"Reader did not answer at {result.address}.",
                    address=result.address,
                    failure=result.failure.value,
                    detail=result.detail,
                )
            return
        self._last_error = None
        self._last_active = datetime.now(timezone.utc)
        if not result.is_connected:
            await self._poller.stop()
            self._address = self._settings.access_point_address
            self._set_state(ConnectionState.SETUP, "Reader is waiting for Wi-Fi credentials.")
            return
        target = result.reported_address if result.relocated else result.address
        if target != result.address:
            self._record(
                "connection",
                "address_changed",
                f"Reader moved from {result.address} to {target}.",
                previous=result.address,
                address=target,
            )
        self._address = target
        self._remember(target)
        self._set_state(ConnectionState.OPERATIONAL, f"Reader operational at {target}.")
        self._poll_handle = await self._poller.start(target)

    def _remember(self, address: str) -> None:
        if address == self._settings.access_point_address:
            return
        self._known_address = address
        if self._config is None:
            return
        try:
            self._config.set_known_address(address)
        except (OSError, ValueError) as exc:
            logger.warning("Unable to remember reader address %s: %s", address, exc)

    async def _handle_poll_lost(self, handle: PollHandle) -> None:
        address = handle.address
        async with self._lock:
            # A loop started after this one supersedes its loss signal.
            if handle != self._poll_handle or self._poller.handle is not None:
                return
            if self._state is not ConnectionState.OPERATIONAL or self._address != address:
                return
            self._last_error = FailureKind.UNREACHABLE
            await self._poller.stop()
            self._set_state(ConnectionState.LOST, f"Lost contact with the reader at {address}.")
            self._schedule_rediscovery()
        self._publish()

    def _handle_scan(self, record: ScanRecord, history: tuple[ScanRecord, ...]) -> None:
        del history
        self._last_active = record.observed_at
        self._publish()

    def _set_state(self, state: ConnectionState, message: str) -> None:
        previous = self._state
        self._state = state
        if previous is state:
            return
        self._record(
            "connection",
            state.value,
            message,
            previous=previous.value,
            address=self._address,
            error=self._last_error.value if self._last_error is not None else None,
        )

    def _record(self, category: str, event: str, message: str, **metadata: object | None) -> None:
        self._event_log.record(category, event, message, metadata=metadata or None)

    def _publish(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Reader snapshot listener failed")


__all__ = [
    "ConnectionMode",
    "ConnectionReconciler",
    "ConnectionState",
    "ReaderSnapshot",
    "SnapshotListener",
    "mode_for_state",
]
