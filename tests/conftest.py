from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field

import httpx
import pytest


@dataclass
class FakeDevice:
    connected: bool = True
    ip: str = "0.0.0.0"
    uid: str = ""
    status_payload: object | None = None
    wifi_status_code: int = 200
    delay: float = 0.0
    failing: bool = False


@dataclass
class FakeReaderNetwork:
    """Simulated LAN answering the reader's HTTP API through ``httpx.MockTransport``."""

    devices: dict[str, FakeDevice] = field(default_factory=dict)
    requests: list[tuple[str, str, str]] = field(default_factory=list)
    credentials: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def add(self, address: str, **kwargs: object) -> FakeDevice:
        device = FakeDevice(**kwargs)  # type: ignore[arg-type]
        self.devices[address] = device
        return device

    def hosts_for(self, path: str) -> list[str]:
        return [host for method, host, requested in self.requests if requested == path]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        path = request.url.path
        self.requests.append((request.method, host, path))
        device = self.devices.get(host)
        if device is None or device.failing:
            raise httpx.ConnectError("Connection refused", request=request)
        if device.delay:
            await asyncio.sleep(device.delay)
        if path == "/status" and request.method == "GET":
            payload = device.status_payload
            if payload is None:
                payload = {"isConnected": device.connected, "ip": device.ip}
            if isinstance(payload, str):
                return httpx.Response(200, text=payload)
            return httpx.Response(200, json=payload)
        if path == "/read-rfid" and request.method == "GET":
            return httpx.Response(200, json={"uid": device.uid})
        if path == "/wifi-setup" and request.method == "POST":
            self.credentials.append((host, json.loads(request.content)))
            return httpx.Response(device.wifi_status_code, text="ok")
        return httpx.Response(404, text="not found")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class StubResolver:
    """Hostname resolver that answers from a dictionary instead of multicast DNS."""

    def __init__(self, answers: dict[str, str] | None = None) -> None:
        self.answers = dict(answers or {})
        self.lookups: list[str] = []
        self.closed = False

    @property
    def available(self) -> bool:
        return True

    async def resolve(self, hostname: str, timeout: float) -> str | None:
        del timeout
        self.lookups.append(hostname)
        return self.answers.get(hostname)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def reader_net() -> FakeReaderNetwork:
    return FakeReaderNetwork()


@pytest.fixture
def stub_resolver() -> StubResolver:
    return StubResolver()
