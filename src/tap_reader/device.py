"""HTTP helpers for talking to the RFID reader appliance.

Every call made here is bounded by an explicit timeout and returns a typed
result instead of raising. Network failures collapse into
:class:`Unreachable` so the callers can drive their state machines without
guarding each request.
"""
from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

import httpx


logger = logging.getLogger(__name__)


ACCESS_POINT_ADDRESS = "192.168.4.1"
SETUP_SSID = "TapyzeSetup"
READER_HOSTNAME = "rfidreader.local"
UNASSIGNED_ADDRESS = "0.0.0.0"

STATUS_PATH = "/status"
READ_TAG_PATH = "/read-rfid"
WIFI_SETUP_PATH = "/wifi-setup"

DEFAULT_PROBE_TIMEOUT = 3.0
DEFAULT_SEND_TIMEOUT = 5.0

_HOSTNAME_LABEL = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")


class FailureKind(str, Enum):
    """Classifies why a reader operation did not succeed."""

    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    MALFORMED_RESPONSE = "malformed_response"
    NO_NETWORK = "no_network"
    DISCOVERY_EXHAUSTED = "discovery_exhausted"


class ReaderError(RuntimeError):
    """Raised when a reader command cannot be issued in the current state."""


def normalise_address(value: object) -> str:
    """Return a cleaned IPv4 literal or hostname for the reader.

    Raises :class:`ValueError` for empty input, IPv6 literals, URLs, ports or
    anything else that is not a bare address.
    """

    if not isinstance(value, str):
        raise ValueError("Reader address must be a string")
    cleaned = value.strip().lower()
    if not cleaned:
        raise ValueError("Reader address must be provided")
    try:
        parsed = ipaddress.ip_address(cleaned)
    except ValueError:
        parsed = None
    if parsed is not None:
        if parsed.version != 4:
            raise ValueError("Only IPv4 reader addresses are supported")
        return str(parsed)
    hostname = cleaned.rstrip(".")
    if not hostname or len(hostname) > 253:
        raise ValueError(f"Invalid reader address: {value!r}")
    labels = hostname.split(".")
    if all(label.isdigit() for label in labels):
        raise ValueError(f"Invalid IPv4 address: {value!r}")
    if not all(_HOSTNAME_LABEL.match(label) for label in labels):
        raise ValueError(f"Invalid reader address: {value!r}")
    return hostname


def _reported_address(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    if not candidate or candidate == UNASSIGNED_ADDRESS:
        return None
    try:
        return normalise_address(candidate)
    except ValueError:
        logger.debug("Ignoring invalid address reported by reader: %r", value)
        return None


@dataclass(frozen=True, slots=True)
class Reachable:
    """A reader answered ``/status`` at ``address``."""

    address: str
    is_connected: bool
    reported_address: str | None = None

    @property
    def reachable(self) -> bool:
        return True

    @property
    def relocated(self) -> bool:
        """Whether the reader reports a station address other than the probed one."""

        return self.reported_address is not None and self.reported_address != self.address

    def to_dict(self) -> dict[str, object | None]:
        return {
            "reachable": True,
            "address": self.address,
            "is_connected": self.is_connected,
            "reported_address": self.reported_address,
        }


@dataclass(frozen=True, slots=True)
class Unreachable:
    """A request to ``address`` failed."""

    address: str
    failure: FailureKind
    detail: str | None = None

    @property
    def reachable(self) -> bool:
        return False

    def to_dict(self) -> dict[str, object | None]:
        return {
            "reachable": False,
            "address": self.address,
            "failure": self.failure.value,
            "detail": self.detail,
        }


@dataclass(frozen=True, slots=True)
class TagRead:
    """A well-formed ``/read-rfid`` answer. ``uid`` is empty when no card is present."""

    address: str
    uid: str


@dataclass(frozen=True, slots=True)
class SendResult:
    """Outcome of handing Wi-Fi credentials to the reader."""

    address: str
    ok: bool
    status_code: int | None = None
    failure: FailureKind | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, object | None]:
        return {
            "address": self.address,
            "ok": self.ok,
            "status_code": self.status_code,
            "failure": self.failure.value if self.failure is not None else None,
            "detail": self.detail,
        }


ProbeResult = Union[Reachable, Unreachable]
ReadResult = Union[TagRead, Unreachable]


class _ReaderHTTP:
    """Shared plumbing for components that issue requests to the reader."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        scheme: str = "http",
        port: int | None = None,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._scheme = scheme
        self._port = port

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
            self._owns_client = True
        return self._client

    def url(self, address: str, path: str) -> str:
        host = address if self._port is None else f"{address}:{self._port}"
        return f"{self._scheme}://{host}{path}"

    async def _request(
        self,
        method: str,
        address: str,
        path: str,
        timeout: float,
        **kwargs: Any,
    ) -> httpx.Response | Unreachable:
        client = self._ensure_client()
        url = self.url(address, path)
        try:
            # httpx applies the timeout per phase, wait_for caps the whole exchange.
            return await asyncio.wait_for(
                client.request(method, url, timeout=timeout, **kwargs),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return Unreachable(address, FailureKind.TIMEOUT, f"No answer from {url} within {timeout:g}s")
        except httpx.HTTPError as exc:
            return Unreachable(address, FailureKind.UNREACHABLE, str(exc) or exc.__class__.__name__)
        except (httpx.InvalidURL, OSError) as exc:
            return Unreachable(address, FailureKind.UNREACHABLE, str(exc) or exc.__class__.__name__)

    async def _get_json(self, address: str, path: str, timeout: float) -> dict[str, Any] | Unreachable:
        response = await self._request("GET", address, path, timeout)
        if isinstance(response, Unreachable):
            return response
        if not response.is_success:
            return Unreachable(address, FailureKind.UNREACHABLE, f"HTTP {response.status_code} from {path}")
        try:
            payload = response.json()
        except (ValueError, json.JSONDecodeError):
            logger.warning("Reader at %s returned a non-JSON body for %s", address, path)
            return Unreachable(address, FailureKind.MALFORMED_RESPONSE, "Response body is not JSON")
        if not isinstance(payload, dict):
            logger.warning("Reader at %s returned an unexpected payload for %s", address, path)
            return Unreachable(address, FailureKind.MALFORMED_RESPONSE, "Response body is not an object")
        return payload

    async def aclose(self) -> None:
        client = self._client
        if client is not None and self._owns_client:
            await client.aclose()
        self._client = None if self._owns_client else client


class DeviceProbe(_ReaderHTTP):
    """Single bounded-timeout status checks against a candidate address."""

    async def probe(self, address: str, timeout: float = DEFAULT_PROBE_TIMEOUT) -> ProbeResult:
        """Ask ``address`` for ``/status`` and classify the answer."""

        payload = await self._get_json(address, STATUS_PATH, timeout)
        if isinstance(payload, Unreachable):
            logger.debug("Probe of %s failed: %s (%s)", address, payload.failure.value, payload.detail)
            return payload
        # The connectivity flag is what identifies this device class.
        if "isConnected" not in payload:
            logger.warning("Device at %s answered /status without a connectivity flag", address)
            return Unreachable(address, FailureKind.MALFORMED_RESPONSE, "Missing isConnected field")
        flag = payload["isConnected"]
        if not isinstance(flag, bool):
            logger.warning("Device at %s reported a non-boolean connectivity flag: %r", address, flag)
            return Unreachable(address, FailureKind.MALFORMED_RESPONSE, "isConnected is not a boolean")
        return Reachable(
            address=address,
            is_connected=flag,
            reported_address=_reported_address(payload.get("ip")),
        )

    async def read_tag(self, address: str, timeout: float = DEFAULT_PROBE_TIMEOUT) -> ReadResult:
        """Fetch the most recent card UID from ``/read-rfid``."""

        payload = await self._get_json(address, READ_TAG_PATH, timeout)
        if isinstance(payload, Unreachable):
            return payload
        uid = payload.get("uid")
        if uid is None:
            uid = ""
        if not isinstance(uid, str):
            logger.warning("Reader at %s returned a non-string uid: %r", address, uid)
            return Unreachable(address, FailureKind.MALFORMED_RESPONSE, "uid is not a string")
        return TagRead(address=address, uid=uid.strip())


class CredentialSender(_ReaderHTTP):
    """One-shot delivery of Wi-Fi credentials to a reader in setup mode."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout: float = DEFAULT_SEND_TIMEOUT,
        scheme: str = "http",
        port: int | None = None,
    ) -> None:
        super().__init__(client, scheme=scheme, port=port)
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._timeout = float(timeout)

    async def send(self, address: str, ssid: str, password: str) -> SendResult:
        """POST ``{ssid, password}`` to ``/wifi-setup``.

        An accepted request only means the reader received the credentials;
        the caller has to probe again later to learn whether it joined.
        """

        response = await self._request(
            "POST",
            address,
            WIFI_SETUP_PATH,
            self._timeout,
            json={"ssid": ssid, "password": password},
        )
        if isinstance(response, Unreachable):
            logger.warning("Unable to send Wi-Fi credentials to %s: %s", address, response.detail)
            return SendResult(address, ok=False, failure=response.failure, detail=response.detail)
        if not response.is_success:
            logger.warning("Reader at %s rejected Wi-Fi credentials with HTTP %s", address, response.status_code)
            return SendResult(
                address,
                ok=False,
                status_code=response.status_code,
                failure=FailureKind.UNREACHABLE,
                detail=f"Reader answered HTTP {response.status_code}",
            )
        logger.info("Reader at %s accepted credentials for %s", address, ssid)
        return SendResult(address, ok=True, status_code=response.status_code)


__all__ = [
    "ACCESS_POINT_ADDRESS",
    "READER_HOSTNAME",
    "SETUP_SSID",
    "UNASSIGNED_ADDRESS",
    "CredentialSender",
    "DeviceProbe",
    "FailureKind",
    "ProbeResult",
    "Reachable",
    "ReadResult",
    "ReaderError",
    "SendResult",
    "TagRead",
    "Unreachable",
    "normalise_address",
]
