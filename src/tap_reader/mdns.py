"""mDNS hostname lookups used to find ``rfidreader.local``."""
from __future__ import annotations

import asyncio
import ipaddress
import logging

try:  # pragma: no cover - import guard for optional dependency failures
    from zeroconf import AddressResolverIPv4
    from zeroconf.asyncio import AsyncZeroconf
except Exception as exc:  # pragma: no cover - dependency import failure
    AsyncZeroconf = None  # type: ignore[assignment]
    AddressResolverIPv4 = None  # type: ignore[assignment]
    _zeroconf_error: Exception | None = exc
else:
    _zeroconf_error = None


logger = logging.getLogger(__name__)


class _BaseResolver:
    """Internal protocol for resolver backends."""

    async def resolve(self, hostname: str, timeout: float) -> str | None:  # pragma: no cover - interface
        raise NotImplementedError

    async def aclose(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class _ZeroconfResolver(_BaseResolver):
    """Resolve ``.local`` names with multicast queries through python-zeroconf."""

    def __init__(self) -> None:
        if AsyncZeroconf is None or AddressResolverIPv4 is None:
            reason = _zeroconf_error or "zeroconf library unavailable"
            raise RuntimeError(reason)
        self._zeroconf: AsyncZeroconf | None = None
        self._disabled_reason: str | None = None

    def _ensure_zeroconf(self) -> AsyncZeroconf:
        if self._zeroconf is None:
            self._zeroconf = AsyncZeroconf()
        return self._zeroconf

    async def resolve(self, hostname: str, timeout: float) -> str | None:
        if self._disabled_reason is not None:
            return None
        server = hostname if hostname.endswith(".") else f"{hostname}."
        try:
            aiozc = self._ensure_zeroconf()
        except OSError as exc:  # pragma: no cover - environment specific
            message = str(exc) or exc.__class__.__name__
            logger.warning("mDNS lookups disabled: unable to open multicast socket (%s)", message)
            self._disabled_reason = message
            return None
        resolver = AddressResolverIPv4(server)
        try:
            found = await asyncio.wait_for(
                resolver.async_request(aiozc.zeroconf, int(timeout * 1000)),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return None
        except Exception as exc:  # pragma: no cover - zeroconf runtime issues
            logger.debug("mDNS lookup for %s failed: %s", hostname, exc)
            return None
        if not found:
            return None
        for address in resolver.parsed_addresses():
            try:
                parsed = ipaddress.ip_address(address)
            except ValueError:
                continue
            if parsed.version == 4:
                return str(parsed)
        return None

    async def aclose(self) -> None:
        zeroconf = self._zeroconf
        self._zeroconf = None
        if zeroconf is not None:
            try:
                await zeroconf.async_close()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Ignoring Zeroconf close failure", exc_info=True)


class _NullResolver(_BaseResolver):
    """Resolver used when zeroconf is unavailable; leaves lookups to the OS."""

    async def resolve(self, hostname: str, timeout: float) -> str | None:  # pragma: no cover - no behaviour
        del hostname, timeout
        return None

    async def aclose(self) -> None:  # pragma: no cover - no behaviour
        return


class HostnameResolver(_BaseResolver):
    """Look up the reader's advertised hostname on the local link.

    ``resolve`` returns ``None`` when the name cannot be resolved; callers may
    still try the hostname directly and let the system resolver handle it.
    """

    def __init__(self) -> None:
        self._backend = self._select_backend()

    @property
    def available(self) -> bool:
        return not isinstance(self._backend, _NullResolver)

    def _select_backend(self) -> _BaseResolver:
        if AsyncZeroconf is not None and AddressResolverIPv4 is not None:
            try:
                return _ZeroconfResolver()
            except Exception as exc:  # pragma: no cover - rare runtime error
                logger.warning("mDNS lookups disabled: zeroconf backend failed: %s", exc)
        elif _zeroconf_error is not None:
            logger.warning(
                "mDNS lookups disabled: zeroconf import failed: %s. Install the 'zeroconf' "
                "package to resolve the reader hostname without the system resolver.",
                _zeroconf_error,
            )
        return _NullResolver()

    async def resolve(self, hostname: str, timeout: float) -> str | None:
        if timeout <= 0:
            return None
        return await self._backend.resolve(hostname, timeout)

    async def aclose(self) -> None:
        await self._backend.aclose()


__all__ = ["HostnameResolver"]
