"""Command-line helpers for checking on a reader without the web front-end.

Usage::

    python -m tap_reader.cli probe 192.168.1.42
    python -m tap_reader.cli locate --hint 192.168.1.10
    python -m tap_reader.cli send 192.168.4.1 HomeNet secret
    python -m tap_reader.cli watch 192.168.1.42 --seconds 30
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Sequence, TextIO

import httpx

from .config import ConfigManager, DEFAULT_SETTINGS, ReaderSettings, resolve_config_path
from .device import CredentialSender, DeviceProbe, Reachable, normalise_address
from .locator import DeviceLocator
from .mdns import HostnameResolver
from .poller import ScanPoller, ScanRecord


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tap-reader", description="Talk to an RFID reader on the local network.")
    parser.add_argument("--config", help="Path to the JSON config file (defaults to $TAP_READER_CONFIG)")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    probe = subparsers.add_parser("probe", help="Check whether a reader answers at ADDRESS")
    probe.add_argument("address")

    locate = subparsers.add_parser("locate", help="Search the local network for the reader")
    locate.add_argument("--hint", help="This machine's IPv4 address, used for the subnet sweep")

    send = subparsers.add_parser("send", help="Hand Wi-Fi credentials to a reader in setup mode")
    send.add_argument("address")
    send.add_argument("ssid")
    send.add_argument("password")

    watch = subparsers.add_parser("watch", help="Print new card scans from the reader at ADDRESS")
    watch.add_argument("address")
    watch.add_argument("--seconds", type=float, default=30.0, help="How long to watch (default: 30)")
    return parser


def _emit(payload: dict[str, object | None], message: str, *, as_json: bool, stream: TextIO) -> None:
    if as_json:
        stream.write(json.dumps(payload) + "\n")
    else:
        stream.write(message + "\n")
    stream.flush()


async def _probe(args: argparse.Namespace, settings: ReaderSettings, client: httpx.AsyncClient, stream: TextIO) -> int:
    address = normalise_address(args.address)
    result = await DeviceProbe(client).probe(address, settings.probe_timeout)
    if isinstance(result, Reachable):
        state = "joined to Wi-Fi" if result.is_connected else "in setup mode"
        message = f"Reader at {address} is {state}"
        if result.relocated:
            message += f" and reports address {result.reported_address}"
    else:
        message = f"No reader at {address}: {result.failure.value} ({result.detail})"
    _emit(result.to_dict(), message, as_json=args.json, stream=stream)
    return 0 if result.reachable else 1


async def _locate(args: argparse.Namespace, settings: ReaderSettings, client: httpx.AsyncClient, stream: TextIO) -> int:
    resolver = HostnameResolver()
    try:
        locator = DeviceLocator(DeviceProbe(client), settings=settings, resolver=resolver)
        result = await locator.locate(args.hint)
    finally:
        await resolver.aclose()
    if result is None:
        _emit(
            {"found": None},
            "Reader not found; enter its address manually.",
            as_json=args.json,
            stream=stream,
        )
        return 1
    _emit(
        {"found": result.to_dict()},
        f"Reader found at {result.address} ({result.strategy})",
        as_json=args.json,
        stream=stream,
    )
    return 0


async def _send(args: argparse.Namespace, settings: ReaderSettings, client: httpx.AsyncClient, stream: TextIO) -> int:
    address = normalise_address(args.address)
    if not args.ssid.strip() or not args.password:
        raise ValueError("Both SSID and password are required")
    sender = CredentialSender(client, timeout=settings.credential_timeout)
    result = await sender.send(address, args.ssid.strip(), args.password)
    if result.ok:
        message = f"Reader at {address} accepted credentials for {args.ssid.strip()}"
    else:
        message = f"Reader at {address} did not accept credentials: {result.detail}"
    _emit(result.to_dict(), message, as_json=args.json, stream=stream)
    return 0 if result.ok else 1


async def _watch(args: argparse.Namespace, settings: ReaderSettings, client: httpx.AsyncClient, stream: TextIO) -> int:
    address = normalise_address(args.address)
    lost = asyncio.Event()

    def _on_scan(record: ScanRecord, history: tuple[ScanRecord, ...]) -> None:
        _emit(
            {"scan": record.to_dict(), "history_size": len(history)},
            f"{record.observed_at:%H:%M:%S} {record.uid}",
            as_json=args.json,
            stream=stream,
        )

    poller = ScanPoller(
        DeviceProbe(client),
        interval=settings.poll_interval,
        read_timeout=settings.poll_timeout,
        verify_timeout=settings.probe_timeout,
        history_limit=settings.history_limit,
        on_lost=lambda _address: lost.set(),
    )
    poller.add_listener(_on_scan)
    await poller.start(address)
    try:
        await asyncio.wait_for(lost.wait(), timeout=args.seconds)
    except asyncio.TimeoutError:
        return 0
    finally:
        await poller.aclose()
    _emit({"lost": address}, f"Lost contact with the reader at {address}", as_json=args.json, stream=stream)
    return 1


_COMMANDS = {
    "probe": _probe,
    "locate": _locate,
    "send": _send,
    "watch": _watch,
}


def _load_settings(config_path: str | None) -> ReaderSettings:
    path = resolve_config_path(config_path)
    if not path.is_file():
        return DEFAULT_SETTINGS
    return ConfigManager(path).get_settings()


async def run(args: argparse.Namespace, *, stream: TextIO | None = None, client: httpx.AsyncClient | None = None) -> int:
    """Execute the parsed command and return the process exit code."""

    output = stream or sys.stdout
    settings = _load_settings(args.config)
    handler = _COMMANDS[args.command]
    if client is not None:
        return await handler(args, settings, client, output)
    async with httpx.AsyncClient() as owned:
        return await handler(args, settings, owned, output)


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(run(args))
    except ValueError as exc:
        parser.error(str(exc))
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
    return 2


if __name__ == "__main__":  # pragma: no cover - manual entry point
    sys.exit(main())
