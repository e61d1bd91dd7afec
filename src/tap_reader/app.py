"""FastAPI application exposing reader state to the companion front-end."""
from __future__ import annotations

import logging
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from .config import ConfigManager, resolve_config_path
from .device import ReaderError
from .network import NetworkBackend, NetworkObserver
from .reconciler import ConnectionReconciler
from .system_log import EventLog
from .version import APP_VERSION


class ManualAddressPayload(BaseModel):
    address: str


class CredentialsPayload(BaseModel):
    ssid: str
    password: str


def create_app(
    config_path: Path | str | None = None,
    *,
    reconciler: ConnectionReconciler | None = None,
    network_backend: NetworkBackend | None = None,
    event_log: EventLog | None = None,
) -> FastAPI:
    app = FastAPI(title="Tap Reader", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    if reconciler is None:
        config_manager = ConfigManager(resolve_config_path(config_path))
        settings = config_manager.get_settings()
        if event_log is None:
            event_log = EventLog(config_manager.path.parent / "event_log.jsonl")
        observer = NetworkObserver(network_backend, watch_interval=settings.network_watch_interval)
        reconciler = ConnectionReconciler(
            observer,
            settings=settings,
            config=config_manager,
            event_log=event_log,
        )
    shared_event_log = reconciler.event_log
    app.state.reconciler = reconciler

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        try:
            await reconciler.start()
        except Exception:  # pragma: no cover - unexpected failure
            logger.exception("Reader reconciliation failed to start")

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        await reconciler.aclose()
        shared_event_log.record("connection", "shutdown", "Reader reconciliation stopped.")

    @app.get("/api/reader")
    async def get_reader() -> dict[str, object | None]:
        return reconciler.snapshot().to_dict()

    @app.get("/api/reader/scans")
    async def get_scans(limit: int | None = None) -> dict[str, object]:
        snapshot = reconciler.snapshot()
        history = [record.to_dict() for record in snapshot.history]
        if limit is not None:
            if limit < 1:
                raise HTTPException(status_code=400, detail="limit must be at least 1")
            history = history[:limit]
        return {
            "last_scan": snapshot.last_scan.to_dict() if snapshot.last_scan is not None else None,
            "history": history,
        }

    @app.post("/api/reader/discover")
    async def discover_reader() -> dict[str, object | None]:
        try:
            result = await reconciler.rediscover()
        except ReaderError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {
            "found": result.to_dict() if result is not None else None,
            "reader": reconciler.snapshot().to_dict(),
        }

    @app.post("/api/reader/address")
    async def set_reader_address(payload: ManualAddressPayload) -> dict[str, object | None]:
        try:
            result = await reconciler.set_manual_address(payload.address)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ReaderError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {
            "probe": result.to_dict(),
            "reader": reconciler.snapshot().to_dict(),
        }

    @app.post("/api/reader/credentials")
    async def submit_credentials(payload: CredentialsPayload) -> dict[str, object | None]:
        try:
            result = await reconciler.submit_credentials(payload.ssid, payload.password)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ReaderError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        if not result.ok:
            raise HTTPException(
                status_code=502,
                detail=result.detail or "Reader did not accept the Wi-Fi credentials",
            )
        return {
            "result": result.to_dict(),
            "reader": reconciler.snapshot().to_dict(),
        }

    @app.post("/api/network/refresh")
    async def refresh_network() -> dict[str, object | None]:
        status = await reconciler.refresh_network()
        return {
            "network": status.to_dict(),
            "reader": reconciler.snapshot().to_dict(),
        }

    @app.get("/api/logs")
    async def get_event_log_entries(
        limit: int = 100, category: str | None = None
    ) -> dict[str, object]:
        try:
            entries = await run_in_threadpool(shared_event_log.tail, limit, category=category)
        except Exception as exc:  # pragma: no cover - unexpected failure
            logger.warning("Unable to load event log: %s", exc)
            raise HTTPException(status_code=503, detail="Unable to load event log") from exc
        ordered = list(reversed(entries))
        return {"entries": [entry.to_dict() for entry in ordered]}

    return app


__all__ = ["create_app"]
