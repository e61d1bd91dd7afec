"""Configuration management for the Tap Reader companion."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from threading import Lock
from typing import Any, Mapping

from .device import ACCESS_POINT_ADDRESS, READER_HOSTNAME, SETUP_SSID, normalise_address


DEFAULT_CANDIDATE_ADDRESSES: tuple[str, ...] = (
    "192.168.1.1", "192.168.1.100", "192.168.1.101", "192.168.1.150", "192.168.1.200",
    "192.168.0.1", "192.168.0.100", "192.168.0.101", "192.168.0.150", "192.168.0.200",
    "192.168.2.1", "192.168.2.100", "192.168.2.101", "192.168.2.150", "192.168.2.200",
    "10.0.0.1", "10.0.0.100", "10.0.0.101", "10.0.0.150", "10.0.0.200",
)

DEFAULT_HISTORY_LIMIT = 20
DEFAULT_CONFIG_PATH = Path("data/config.json")
CONFIG_ENV_VAR = "TAP_READER_CONFIG"

# Headroom added to the worst-case discovery time for resolver and scheduling work.
LOCATE_TIMEOUT_SLACK = 2.0


def _positive_float(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number") from exc
    if not math.isfinite(number) or number <= 0:
        raise ValueError(f"{name} must be a positive finite value")
    return number


@dataclass(frozen=True, slots=True)
class ReaderSettings:
    """Tunable values for discovery, polling and credential hand-off."""

    access_point_address: str = ACCESS_POINT_ADDRESS
    setup_ssid: str = SETUP_SSID
    hostname: str = READER_HOSTNAME
    candidate_addresses: tuple[str, ...] = DEFAULT_CANDIDATE_ADDRESSES
    probe_timeout: float = 3.0
    hostname_timeout: float = 3.0
    candidate_timeout: float = 1.0
    sweep_timeout: float = 0.8
    sweep_first: int = 1
    sweep_last: int = 20
    poll_interval: float = 1.0
    poll_timeout: float = 2.0
    history_limit: int = DEFAULT_HISTORY_LIMIT
    credential_timeout: float = 5.0
    credential_reprobe_delay: float = 10.0
    network_watch_interval: float = 5.0
    rediscover_interval: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "access_point_address", normalise_address(self.access_point_address))
        object.__setattr__(self, "hostname", normalise_address(self.hostname))
        ssid = self.setup_ssid.strip() if isinstance(self.setup_ssid, str) else ""
        if not ssid:
            raise ValueError("Setup SSID must be a non-empty string")
        object.__setattr__(self, "setup_ssid", ssid)
        if isinstance(self.candidate_addresses, str):
            raise ValueError("Candidate addresses must be a list of addresses")
        candidates: list[str] = []
        for raw in self.candidate_addresses:
            address = normalise_address(raw)
            if address not in candidates:
                candidates.append(address)
        object.__setattr__(self, "candidate_addresses", tuple(candidates))
        for name in (
            "probe_timeout",
            "hostname_timeout",
            "candidate_timeout",
            "sweep_timeout",
            "poll_interval",
            "poll_timeout",
            "credential_timeout",
            "network_watch_interval",
        ):
            object.__setattr__(self, name, _positive_float(name, getattr(self, name)))
        for name in ("credential_reprobe_delay", "rediscover_interval"):
            value = getattr(self, name)
            if value == 0:
                object.__setattr__(self, name, 0.0)
            else:
                object.__setattr__(self, name, _positive_float(name, value))
        try:
            first = int(self.sweep_first)
            last = int(self.sweep_last)
            limit = int(self.history_limit)
        except (TypeError, ValueError) as exc:
            raise ValueError("Sweep range and history limit must be integers") from exc
        if not (1 <= first <= last <= 254):
            raise ValueError("Sweep range must satisfy 1 <= first <= last <= 254")
        if limit < 1:
            raise ValueError("History limit must be at least 1")
        object.__setattr__(self, "sweep_first", first)
        object.__setattr__(self, "sweep_last", last)
        object.__setattr__(self, "history_limit", limit)

    @property
    def locate_timeout(self) -> float:
        """Upper bound for one full discovery run across every strategy."""

        sweep_hosts = self.sweep_last - self.sweep_first + 1
        return (
            self.hostname_timeout * 2
            + self.candidate_timeout * len(self.candidate_addresses)
            + self.sweep_timeout * sweep_hosts
            + LOCATE_TIMEOUT_SLACK
        )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any], *, base: "ReaderSettings | None" = None) -> "ReaderSettings":
        """Build settings from a JSON mapping, keeping ``base`` values for missing keys."""

        if not isinstance(payload, Mapping):
            raise ValueError("Settings must be a JSON object")
        known = {field.name for field in fields(cls)}
        unknown = sorted(key for key in payload if key not in known)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(unknown)}")
        values = dict(payload)
        if "candidate_addresses" in values:
            raw = values["candidate_addresses"]
            if isinstance(raw, str) or not isinstance(raw, (list, tuple)):
                raise ValueError("Candidate addresses must be a list of addresses")
            values["candidate_addresses"] = tuple(raw)
        return replace(base or cls(), **values)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {}
        for field in fields(self):
            value = getattr(self, field.name)
            payload[field.name] = list(value) if isinstance(value, tuple) else value
        return payload


DEFAULT_SETTINGS = ReaderSettings()


def resolve_config_path(config_path: Path | str | None = None) -> Path:
    """Return ``config_path``, the ``TAP_READER_CONFIG`` override, or the default."""

    if config_path is not None:
        return Path(config_path)
    override = os.environ.get(CONFIG_ENV_VAR, "").strip()
    return Path(override) if override else DEFAULT_CONFIG_PATH


class ConfigManager:
    """Stores reader settings and the last known station address on disk."""

    def __init__(self, config_path: Path | str = DEFAULT_CONFIG_PATH) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        self._settings, self._known_address = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> tuple[ReaderSettings, str | None]:
        if not self._path.exists():
            return DEFAULT_SETTINGS, None
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            settings_payload = payload.get("settings")
            if settings_payload is None:
                settings = DEFAULT_SETTINGS
            else:
                settings = ReaderSettings.from_mapping(settings_payload)
            known_raw = payload.get("known_address")
            known_address = normalise_address(known_raw) if known_raw else None
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc
        if known_address == settings.access_point_address:
            known_address = None
        return settings, known_address

    def _save(self) -> None:
        payload: dict[str, Any] = {
            "settings": self._settings.to_dict(),
            "known_address": self._known_address,
        }
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def get_settings(self) -> ReaderSettings:
        with self._lock:
            return self._settings

    def set_settings(self, data: Mapping[str, Any] | ReaderSettings) -> ReaderSettings:
        with self._lock:
            if isinstance(data, ReaderSettings):
                settings = data
            else:
                settings = ReaderSettings.from_mapping(data, base=self._settings)
            self._settings = settings
            self._save()
        return settings

    def get_known_address(self) -> str | None:
        with self._lock:
            return self._known_address

    def set_known_address(self, address: str | None) -> str | None:
        """Remember the reader's station address for the next session."""

        cleaned = normalise_address(address) if address else None
        with self._lock:
            if cleaned == self._settings.access_point_address:
                return self._known_address
            if cleaned == self._known_address:
                return cleaned
            self._known_address = cleaned
            self._save()
        return cleaned


__all__ = [
    "CONFIG_ENV_VAR",
    "ConfigManager",
    "DEFAULT_CANDIDATE_ADDRESSES",
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_HISTORY_LIMIT",
    "DEFAULT_SETTINGS",
    "ReaderSettings",
    "resolve_config_path",
]
