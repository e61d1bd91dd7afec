import asyncio
from dataclasses import replace

import pytest

from tap_reader.config import ConfigManager, ReaderSettings
from tap_reader.device import DeviceProbe, FailureKind, Reachable, ReaderError
from tap_reader.network import NetworkObserver, NetworkStatus, StaticBackend, Transport
from tap_reader.poller import ScanPoller
from tap_reader.reconciler import ConnectionMode, ConnectionReconciler, ConnectionState
from tap_reader.system_log import EventLog


FAST_SETTINGS = ReaderSettings(
    candidate_addresses=("192.168.1.1", "192.168.1.100"),
    probe_timeout=0.5,
    hostname_timeout=0.2,
    candidate_timeout=0.2,
    sweep_timeout=0.2,
    sweep_first=1,
    sweep_last=3,
    poll_interval=0.01,
    poll_timeout=0.5,
    credential_timeout=0.5,
    credential_reprobe_delay=0,
    network_watch_interval=60,
)

SETUP_WIFI = NetworkStatus(connected=True, transport=Transport.WIFI, ssid="TapyzeSetup", local_address="192.168.4.2")
HOME_WIFI = NetworkStatus(connected=True, transport=Transport.WIFI, ssid="HomeNet", local_address="192.168.1.20")


def _build(client, backend, resolver, *, settings=FAST_SETTINGS, config=None):
    observer = NetworkObserver(backend, watch_interval=settings.network_watch_interval)
    return ConnectionReconciler(
        observer,
        settings=settings,
        config=config,
        client=client,
        resolver=resolver,
        event_log=EventLog(path=None),
    )


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def test_setup_network_with_unjoined_device_stays_in_setup(reader_net, stub_resolver) -> None:
    reader_net.add("192.168.4.1", connected=False, ip="0.0.0.0")

    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(SETUP_WIFI), stub_resolver)
            snapshot = await reconciler.start()
            poller_active = reconciler.poller.active
            await reconciler.aclose()
            return snapshot, poller_active

    snapshot, poller_active = asyncio.run(scenario())

    assert snapshot.state is ConnectionState.SETUP
    assert snapshot.mode is ConnectionMode.SETUP
    assert snapshot.address == "192.168.4.1"
    assert snapshot.last_error is None
    assert poller_active is False


def test_setup_network_with_joined_device_adopts_reported_address(reader_net, stub_resolver) -> None:
    reader_net.add("192.168.4.1", connected=True, ip="192.168.1.42")
    reader_net.add("192.168.1.42", connected=True, ip="192.168.1.42", uid="")

    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(SETUP_WIFI), stub_resolver)
            snapshot = await reconciler.start()
            handle = reconciler.poller.handle
            await reconciler.aclose()
            return snapshot, handle

    snapshot, handle = asyncio.run(scenario())

    assert snapshot.state is ConnectionState.OPERATIONAL
    assert snapshot.address == "192.168.1.42"
    assert handle is not None
    assert handle.address == "192.168.1.42"


def test_credentials_then_delayed_probe_reaches_operational(reader_net, stub_resolver) -> None:
    access_point = reader_net.add("192.168.4.1", connected=False, ip="0.0.0.0")
    reader_net.add("192.168.1.42", connected=True, ip="192.168.1.42")
    settings = replace(FAST_SETTINGS, credential_reprobe_delay=0.05)

    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(SETUP_WIFI), stub_resolver, settings=settings)
            await reconciler.start()
            result = await reconciler.submit_credentials("HomeNet", "secret")
            sending = reconciler.snapshot().sending_credentials
            access_point.connected = True
            access_point.ip = "192.168.1.42"
            await reconciler.wait_for_pending()
            snapshot = reconciler.snapshot()
            handle = reconciler.poller.handle
            await reconciler.aclose()
            return result, sending, snapshot, handle

    result, sending, snapshot, handle = asyncio.run(scenario())

    assert result.ok is True
    assert sending is True
    assert reader_net.credentials == [("192.168.4.1", {"ssid": "HomeNet", "password": "secret"})]
    assert snapshot.state is ConnectionState.OPERATIONAL
    assert snapshot.address == "192.168.1.42"
    assert snapshot.sending_credentials is False
    assert handle is not None and handle.address == "192.168.1.42"


def test_failed_credential_send_is_reported_immediately(reader_net, stub_resolver) -> None:
    reader_net.add("192.168.4.1", connected=False, wifi_status_code=500)

    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(SETUP_WIFI), stub_resolver)
            await reconciler.start()
            result = await reconciler.submit_credentials("HomeNet", "secret")
            snapshot = reconciler.snapshot()
            await reconciler.aclose()
            return result, snapshot

    result, snapshot = asyncio.run(scenario())

    assert result.ok is False
    assert result.status_code == 500
    assert snapshot.sending_credentials is False
    assert snapshot.state is ConnectionState.SETUP
    assert len(reader_net.hosts_for("/wifi-setup")) == 1


@pytest.mark.parametrize("ssid, password", [("", "secret"), ("   ", "secret"), ("HomeNet", "")])
def test_blank_credentials_are_rejected(reader_net, stub_resolver, ssid, password) -> None:
    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(SETUP_WIFI), stub_resolver)
            try:
                with pytest.raises(ValueError):
                    await reconciler.submit_credentials(ssid, password)
            finally:
                await reconciler.aclose()

    asyncio.run(scenario())

    assert reader_net.credentials == []


def test_home_network_runs_discovery_and_remembers_address(tmp_path, reader_net, stub_resolver) -> None:
    reader_net.add("192.168.1.100", connected=True, ip="192.168.1.100")
    config = ConfigManager(tmp_path / "config.json")

    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(HOME_WIFI), stub_resolver, config=config)
            snapshot = await reconciler.start()
            await reconciler.aclose()
            return snapshot

    snapshot = asyncio.run(scenario())

    assert snapshot.state is ConnectionState.OPERATIONAL
    assert snapshot.address == "192.168.1.100"
    assert ConfigManager(tmp_path / "config.json").get_known_address() == "192.168.1.100"


def test_known_address_is_probed_before_discovery(tmp_path, reader_net, stub_resolver) -> None:
    reader_net.add("192.168.1.42", connected=True, ip="192.168.1.42")
    config = ConfigManager(tmp_path / "config.json")
    config.set_known_address("192.168.1.42")

    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(HOME_WIFI), stub_resolver, config=config)
            snapshot = await reconciler.start()
            await reconciler.aclose()
            return snapshot

    snapshot = asyncio.run(scenario())

    assert snapshot.state is ConnectionState.OPERATIONAL
    assert snapshot.address == "192.168.1.42"
    assert reader_net.hosts_for("/status")[0] == "192.168.1.42"
    assert stub_resolver.lookups == []


def test_exhausted_discovery_allows_manual_entry(reader_net, stub_resolver) -> None:
    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(HOME_WIFI), stub_resolver)
            lost = await reconciler.start()
            reader_net.add("192.168.1.77", connected=True, ip="192.168.1.77")
            probe = await reconciler.set_manual_address(" 192.168.1.77 ")
            found = reconciler.snapshot()
            await reconciler.aclose()
            return lost, probe, found

    lost, probe, found = asyncio.run(scenario())

    assert lost.state is ConnectionState.LOST
    assert lost.last_error is FailureKind.DISCOVERY_EXHAUSTED
    assert lost.manual_entry_available is True
    assert lost.to_dict()["last_error"] == "discovery_exhausted"
    assert isinstance(probe, Reachable)
    assert found.state is ConnectionState.OPERATIONAL
    assert found.address == "192.168.1.77"
    assert found.last_error is None


def test_invalid_manual_address_leaves_state_unchanged(reader_net, stub_resolver) -> None:
    reader_net.add("192.168.4.1", connected=False)

    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(SETUP_WIFI), stub_resolver)
            before = await reconciler.start()
            with pytest.raises(ValueError):
                await reconciler.set_manual_address("not an address")
            after = reconciler.snapshot()
            await reconciler.aclose()
            return before, after

    before, after = asyncio.run(scenario())

    assert after.state is before.state is ConnectionState.SETUP
    assert after.address == before.address


def test_unreachable_manual_address_keeps_state_and_reports_error(reader_net, stub_resolver) -> None:
    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(HOME_WIFI), stub_resolver)
            await reconciler.start()
            result = await reconciler.set_manual_address("192.168.1.250")
            snapshot = reconciler.snapshot()
            await reconciler.aclose()
            return result, snapshot

    result, snapshot = asyncio.run(scenario())

    assert result.reachable is False
    assert snapshot.state is ConnectionState.LOST
    assert snapshot.last_error is FailureKind.UNREACHABLE


def test_poll_failure_transitions_to_lost(reader_net, stub_resolver) -> None:
    device = reader_net.add("192.168.1.100", connected=True, ip="192.168.1.100", uid="ABCD1234")

    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(HOME_WIFI), stub_resolver)
            await reconciler.start()
            await _wait_until(lambda: reconciler.snapshot().last_scan is not None)
            device.failing = True
            await _wait_until(lambda: reconciler.state is ConnectionState.LOST)
            snapshot = reconciler.snapshot()
            poller_active = reconciler.poller.active
            await reconciler.aclose()
            return snapshot, poller_active

    snapshot, poller_active = asyncio.run(scenario())

    assert snapshot.state is ConnectionState.LOST
    assert snapshot.last_error is FailureKind.UNREACHABLE
    assert snapshot.last_scan is not None
    assert snapshot.last_scan.uid == "ABCD1234"
    assert [record.uid for record in snapshot.history] == ["ABCD1234"]
    assert poller_active is False


def test_stale_loss_signal_does_not_undo_newer_poll_loop(reader_net, stub_resolver) -> None:
    reader_net.add("192.168.1.100", connected=True, ip="192.168.1.100", uid="ABCD1234")

    class CapturingPoller(ScanPoller):
        lost_handler = None

        def set_lost_handler(self, handler) -> None:
            self.lost_handler = handler
            super().set_lost_handler(handler)

    async def scenario():
        async with reader_net.client() as client:
            poller = CapturingPoller(DeviceProbe(client), interval=0.01, read_timeout=0.5, verify_timeout=0.5)
            reconciler = ConnectionReconciler(
                NetworkObserver(StaticBackend(HOME_WIFI), watch_interval=60),
                settings=FAST_SETTINGS,
                client=client,
                poller=poller,
                resolver=stub_resolver,
                event_log=EventLog(path=None),
            )
            await reconciler.start()
            stale = poller.handle
            await reconciler.set_manual_address("192.168.1.100")
            current = poller.handle
            await poller.lost_handler(stale)
            state = reconciler.state
            still_polling = poller.handle == current
            await reconciler.aclose()
            return stale, current, state, still_polling

    stale, current, state, still_polling = asyncio.run(scenario())

    assert stale is not None and current is not None
    assert current.epoch > stale.epoch
    assert state is ConnectionState.OPERATIONAL
    assert still_polling is True


def test_duplicate_scans_produce_single_record(reader_net, stub_resolver) -> None:
    reader_net.add("192.168.1.100", connected=True, ip="192.168.1.100", uid="ABCD1234")

    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(HOME_WIFI), stub_resolver)
            await reconciler.start()
            await _wait_until(lambda: len(reader_net.hosts_for("/read-rfid")) >= 3)
            snapshot = reconciler.snapshot()
            await reconciler.aclose()
            return snapshot

    snapshot = asyncio.run(scenario())

    assert [record.uid for record in snapshot.history] == ["ABCD1234"]
    assert snapshot.last_active is not None


def test_losing_wifi_reports_no_network_and_stops_polling(reader_net, stub_resolver) -> None:
    reader_net.add("192.168.1.100", connected=True, ip="192.168.1.100")
    backend = StaticBackend(HOME_WIFI)

    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, backend, stub_resolver)
            await reconciler.start()
            was_polling = reconciler.poller.active
            backend.set_status(NetworkStatus(connected=True, transport=Transport.OTHER))
            await reconciler.refresh_network()
            snapshot = reconciler.snapshot()
            poller_active = reconciler.poller.active
            backend.set_status(HOME_WIFI)
            await reconciler.refresh_network()
            restored = reconciler.snapshot()
            await reconciler.aclose()
            return was_polling, snapshot, poller_active, restored

    was_polling, snapshot, poller_active, restored = asyncio.run(scenario())

    assert was_polling is True
    assert snapshot.last_error is FailureKind.NO_NETWORK
    assert snapshot.network.on_wifi is False
    assert snapshot.state is ConnectionState.LOST
    assert snapshot.mode is ConnectionMode.UNKNOWN
    assert poller_active is False
    assert restored.state is ConnectionState.OPERATIONAL
    assert restored.address == "192.168.1.100"
    assert restored.last_error is None


def test_rediscover_without_network_reports_no_network(reader_net, stub_resolver) -> None:
    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(NetworkStatus.none()), stub_resolver)
            await reconciler.start()
            result = await reconciler.rediscover()
            snapshot = reconciler.snapshot()
            await reconciler.aclose()
            return result, snapshot

    result, snapshot = asyncio.run(scenario())

    assert result is None
    assert snapshot.last_error is FailureKind.NO_NETWORK
    assert reader_net.requests == []


def test_commands_are_refused_while_discovery_runs(reader_net, stub_resolver) -> None:
    reader_net.add("192.168.1.1", connected=True, ip="192.168.1.1", delay=0.1)

    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(NetworkStatus.none()), stub_resolver)
            await reconciler.start()
            reconciler._network = HOME_WIFI  # noqa: SLF001 - skip the observer for timing control
            running = asyncio.create_task(reconciler.rediscover())
            await _wait_until(lambda: reconciler.snapshot().discovering)
            with pytest.raises(ReaderError):
                await reconciler.rediscover()
            with pytest.raises(ReaderError):
                await reconciler.set_manual_address("192.168.1.50")
            assert reconciler.snapshot().manual_entry_available is False
            result = await running
            await reconciler.aclose()
            return result

    result = asyncio.run(scenario())

    assert result is not None
    assert result.address == "192.168.1.1"


def test_background_rediscovery_recovers_when_enabled(reader_net, stub_resolver) -> None:
    settings = replace(FAST_SETTINGS, rediscover_interval=0.05)

    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(HOME_WIFI), stub_resolver, settings=settings)
            first = await reconciler.start()
            reader_net.add("192.168.1.2", connected=True, ip="192.168.1.2")
            await _wait_until(lambda: reconciler.state is ConnectionState.OPERATIONAL, timeout=5)
            snapshot = reconciler.snapshot()
            await reconciler.aclose()
            return first, snapshot

    first, snapshot = asyncio.run(scenario())

    assert first.state is ConnectionState.LOST
    assert snapshot.address == "192.168.1.2"


def test_listeners_and_event_log_follow_transitions(reader_net, stub_resolver) -> None:
    reader_net.add("192.168.4.1", connected=False)
    states: list[str] = []

    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(SETUP_WIFI), stub_resolver)
            reconciler.add_listener(lambda snapshot: states.append(snapshot.state.value))
            await reconciler.start()
            entries = reconciler.event_log.tail()
            await reconciler.aclose()
            return entries

    entries = asyncio.run(scenario())

    assert states[-1] == "setup"
    categories = {entry.category for entry in entries}
    assert {"network", "connection"} <= categories
    events = [entry.event for entry in entries]
    assert "wifi_connected" in events
    assert "setup" in events


def test_snapshot_dict_exposes_presentation_state(reader_net, stub_resolver) -> None:
    reader_net.add("192.168.4.1", connected=False)

    async def scenario():
        async with reader_net.client() as client:
            reconciler = _build(client, StaticBackend(SETUP_WIFI), stub_resolver)
            snapshot = await reconciler.start()
            await reconciler.aclose()
            return snapshot.to_dict()

    payload = asyncio.run(scenario())

    assert payload["state"] == "setup"
    assert payload["mode"] == "setup"
    assert payload["address"] == "192.168.4.1"
    assert payload["network"]["ssid"] == "TapyzeSetup"
    assert payload["history"] == []
    assert payload["last_scan"] is None
    assert payload["discovering"] is False
    assert payload["sending_credentials"] is False
    assert payload["manual_entry_available"] is True
