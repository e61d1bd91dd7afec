"""Multi-strategy discovery of the reader on an unknown local network.

Strategies are plain async functions taking a :class:`LocateContext` and
returning the successful :class:`~tap_reader.device.Reachable` probe or
``None``. :class:`DeviceLocator` runs them in priority order and stops at the
first match.
"""
from __future__ import annotations

import asyncio
import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

from .config import DEFAULT_SETTINGS, ReaderSettings
from .device import DeviceProbe, Reachable, normalise_address
from .mdns import HostnameResolver


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LocateContext:
    """Inputs shared by the strategies of one discovery run."""

    probe: DeviceProbe
    settings: ReaderSettings = DEFAULT_SETTINGS
    hint: str | None = None
    resolver: HostnameResolver | None = None
    tried: set[str] = field(default_factory=set)

    async def try_address(self, address: str, timeout: float) -> Reachable | None:
        """Probe ``address`` once per run; only a recognised reader counts."""

        if address in self.tried:
            return None
        self.tried.add(address)
        result = await self.probe.probe(address, timeout)
        if isinstance(result, Reachable):
            return result
        return None


Strategy = Callable[[LocateContext], Awaitable["Reachable | None"]]


@dataclass(frozen=True, slots=True)
class LocateResult:
    """The address a strategy found the reader at and what it reported."""

    address: str
    strategy: str
    probe: Reachable

    def to_dict(self) -> dict[str, object | None]:
        return {
            "address": self.address,
            "strategy": self.strategy,
            "probe": self.probe.to_dict(),
        }


async def hostname_strategy(context: LocateContext) -> Reachable | None:
    """Probe the reader's mDNS hostname."""

    settings = context.settings
    target = settings.hostname
    if context.resolver is not None:
        resolved = await context.resolver.resolve(settings.hostname, settings.hostname_timeout)
        if resolved:
            logger.debug("Resolved %s to %s", settings.hostname, resolved)
            target = resolved
    return await context.try_address(target, settings.hostname_timeout)


async def candidate_strategy(context: LocateContext) -> Reachable | None:
    """Probe the static list of common router and static addresses in order."""

    settings = context.settings
    for address in settings.candidate_addresses:
        result = await context.try_address(address, settings.candidate_timeout)
        if result is not None:
            return result
    return None


def sweep_addresses(hint: str | None, first: int = 1, last: int = 20) -> list[str]:
    """Return the low host range of the /24 containing ``hint``, excluding ``hint``."""

    if not hint:
        return []
    try:
        local = ipaddress.IPv4Address(hint.strip())
    except ValueError:
        return []
    network = ipaddress.IPv4Network(f"{local}/24", strict=False)
    base = int(network.network_address)
    addresses: list[str] = []
    for host in range(first, last + 1):
        candidate = ipaddress.IPv4Address(base + host)
        if candidate != local:
            addresses.append(str(candidate))
    return addresses


async def subnet_sweep_strategy(context: LocateContext) -> Reachable | None:
    """Sweep the low host range of the caller's own subnet."""

    settings = context.settings
    for address in sweep_addresses(context.hint, settings.sweep_first, settings.sweep_last):
        result = await context.try_address(address, settings.sweep_timeout)
        if result is not None:
            return result
    return None


DEFAULT_STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("hostname", hostname_strategy),
    ("candidates", candidate_strategy),
    ("subnet_sweep", subnet_sweep_strategy),
)


class DeviceLocator:
    """Run discovery strategies in priority order, first match wins."""

    def __init__(
        self,
        probe: DeviceProbe,
        *,
        settings: ReaderSettings = DEFAULT_SETTINGS,
        resolver: HostnameResolver | None = None,
        strategies: Sequence[tuple[str, Strategy]] = DEFAULT_STRATEGIES,
        locate_timeout: float | None = None,
    ) -> None:
        self._probe = probe
        self._settings = settings
        self._resolver = resolver
        self._strategies = tuple(strategies)
        self._locate_timeout = settings.locate_timeout if locate_timeout is None else float(locate_timeout)
        self._in_progress = False

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    @property
    def settings(self) -> ReaderSettings:
        return self._settings

    async def locate(self, hint: str | None = None) -> LocateResult | None:
        """Search for the reader.

        ``hint`` is the caller's own IPv4 address, used for the subnet sweep.
        Returns ``None`` when every strategy is exhausted, when the overall
        time bound expires, or when another discovery run is already active.
        """

        if self._in_progress:
            logger.warning("Discovery already in progress; ignoring re-entrant request")
            return None
        cleaned_hint: str | None
        try:
            cleaned_hint = normalise_address(hint) if hint else None
        except ValueError:
            logger.debug("Ignoring invalid discovery hint %r", hint)
            cleaned_hint = None
        context = LocateContext(
            probe=self._probe,
            settings=self._settings,
            hint=cleaned_hint,
            resolver=self._resolver,
        )
        self._in_progress = True
        try:
            return await asyncio.wait_for(self._run(context), timeout=self._locate_timeout)
        except asyncio.TimeoutError:
            logger.warning("Discovery gave up after %.1fs", self._locate_timeout)
            return None
        finally:
            self._in_progress = False

    async def _run(self, context: LocateContext) -> LocateResult | None:
        for name, strategy in self._strategies:
            logger.debug("Trying discovery strategy %s", name)
            found = await strategy(context)
            if found is not None:
                logger.info("Found reader at %s using %s strategy", found.address, name)
                return LocateResult(address=found.address, strategy=name, probe=found)
        logger.info("Reader not found after probing %d addresses", len(context.tried))
        return None


__all__ = [
    "DEFAULT_STRATEGIES",
    "DeviceLocator",
    "LocateContext",
    "LocateResult",
    "Strategy",
    "candidate_strategy",
    "hostname_strategy",
    "subnet_sweep_strategy",
    "sweep_addresses",
]
