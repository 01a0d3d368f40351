from __future__ import annotations

import os
from typing import Any, NoReturn

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from focuscal.config_manager import ConfigManager
from focuscal.errors import (
    AuthError,
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    DeltaTokenMissingError,
    EventNotFoundError,
    FocusCalError,
    MergeValidationError,
    ProviderError,
    SyncInProgressError,
)
from focuscal.models import DIRECTION_PULL, MODE_DELTA, parse_iso_datetime
from focuscal.scheduler import SyncScheduler
from focuscal.state_store import StateStore
from focuscal.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class TokenUpdateRequest(BaseModel):
    access_token: str = Field(min_length=1)
    expires_at: str | None = None


class SyncRunRequest(BaseModel):
    user_id: str = Field(min_length=1)
    calendar_id: str = "default"
    mode: str = MODE_DELTA
    direction: str = DIRECTION_PULL
    timeout_seconds: float | None = Field(default=None, gt=0)


class BatchSyncRequest(BaseModel):
    user_ids: list[str] = Field(default_factory=list)
    calendar_id: str = "default"


class ResolveConflictRequest(BaseModel):
    resolution: str
    merged: dict[str, Any] | None = None


class EventCreateRequest(BaseModel):
    user_id: str = Field(min_length=1)
    calendar_id: str = "default"
    event: dict[str, Any] = Field(default_factory=dict)


class EventUpdateRequest(BaseModel):
    changes: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _raise_http(exc: Exception) -> NoReturn:
    if isinstance(exc, AuthError):
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    if isinstance(exc, (SyncInProgressError, ConflictAlreadyResolvedError)):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, (ConflictNotFoundError, EventNotFoundError)):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, (MergeValidationError, DeltaTokenMissingError, ValueError)):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, ProviderError):
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    raise exc


def create_app() -> FastAPI:
    config_path = os.getenv("FOCUSCAL_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("FOCUSCAL_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="FocusCal Sync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        if app.state.context.config_manager.load().sync.scheduler_enabled:
            app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        app.state.context.config_manager.update(request.payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.put("/api/tokens/{user_id}")
    def put_token(user_id: str, request: TokenUpdateRequest) -> dict[str, Any]:
        try:
            expires_at = parse_iso_datetime(request.expires_at)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid expires_at datetime") from exc
        app.state.context.state_store.set_provider_token(user_id, request.access_token, expires_at)
        return {"message": "token stored", "user_id": user_id}

    @app.delete("/api/tokens/{user_id}")
    def delete_token(user_id: str) -> dict[str, Any]:
        if not app.state.context.state_store.delete_provider_token(user_id):
            raise HTTPException(status_code=404, detail="token not found")
        return {"message": "token removed", "user_id": user_id}

    @app.post("/api/sync/run")
    def run_sync(request: SyncRunRequest) -> dict[str, Any]:
        try:
            result = app.state.context.sync_engine.trigger_sync(
                request.user_id,
                request.calendar_id,
                request.mode,
                request.direction,
                trigger="api",
                timeout_seconds=request.timeout_seconds,
            )
        except (FocusCalError, ValueError) as exc:
            _raise_http(exc)
        return {"message": f"sync {result.status.lower()}", "result": result.to_dict()}

    @app.post("/api/sync/batch")
    def run_batch_sync(request: BatchSyncRequest) -> dict[str, Any]:
        if not request.user_ids:
            raise HTTPException(status_code=400, detail="user_ids must not be empty")
        try:
            batch = app.state.context.sync_engine.batch_sync(request.user_ids, request.calendar_id, trigger="api-batch")
        except (FocusCalError, ValueError) as exc:
            _raise_http(exc)
        return {"message": "batch sync finished", "result": batch.to_dict()}

    @app.delete("/api/sync/run")
    def cancel_sync(user_id: str, calendar_id: str = "default") -> dict[str, Any]:
        if not app.state.context.sync_engine.cancel_sync(user_id, calendar_id):
            raise HTTPException(status_code=404, detail="no sync pass is running for this calendar")
        return {"message": "sync cancelled"}

    @app.get("/api/sync/status")
    def sync_status(user_id: str, calendar_id: str = "default") -> dict[str, Any]:
        state = app.state.context.sync_engine.get_sync_status(user_id, calendar_id)
        if state is None:
            raise HTTPException(status_code=404, detail="no sync state for this calendar")
        return {"state": state.to_dict()}

    @app.delete("/api/sync/state")
    def delete_sync_state(user_id: str, calendar_id: str = "default") -> dict[str, Any]:
        try:
            removed = app.state.context.sync_engine.disable_sync(user_id, calendar_id)
        except SyncInProgressError as exc:
            _raise_http(exc)
        if not removed:
            raise HTTPException(status_code=404, detail="no sync state for this calendar")
        return {"message": "sync disabled"}

    @app.get("/api/sync/history")
    def sync_history(limit: int = 20, user_id: str | None = None) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit, user_id=user_id)}

    @app.get("/api/conflicts")
    def list_conflicts(user_id: str, calendar_id: str | None = None) -> dict[str, Any]:
        conflicts = app.state.context.sync_engine.list_conflicts(user_id, calendar_id)
        return {"conflicts": [item.to_dict() for item in conflicts]}

    @app.get("/api/conflicts/stats")
    def conflict_stats(user_id: str) -> dict[str, Any]:
        return app.state.context.state_store.conflict_stats(user_id)

    @app.post("/api/conflicts/{conflict_id}/resolve")
    def resolve_conflict(conflict_id: str, request: ResolveConflictRequest) -> dict[str, Any]:
        try:
            event = app.state.context.sync_engine.resolve_conflict(
                conflict_id,
                request.resolution.strip().upper(),
                request.merged,
            )
        except (FocusCalError, ValueError) as exc:
            _raise_http(exc)
        return {"message": "conflict updated", "event": event.to_dict()}

    @app.post("/api/conflicts/{conflict_id}/auto-resolve")
    def auto_resolve_conflict(conflict_id: str) -> dict[str, Any]:
        try:
            event = app.state.context.sync_engine.auto_resolve_conflict(conflict_id)
        except (FocusCalError, ValueError) as exc:
            _raise_http(exc)
        return {"message": "conflict auto-resolved", "event": event.to_dict()}

    @app.get("/api/events")
    def list_events(user_id: str, calendar_id: str = "default") -> dict[str, Any]:
        events = app.state.context.state_store.list_events(user_id, calendar_id)
        return {"events": [event.to_dict() for event in events]}

    @app.post("/api/events")
    def create_event(request: EventCreateRequest) -> dict[str, Any]:
        try:
            event = app.state.context.sync_engine.create_local_event(
                request.user_id, request.calendar_id, request.event
            )
        except ValueError as exc:
            _raise_http(exc)
        return {"message": "event created", "event": event.to_dict()}

    @app.put("/api/events/{event_id}")
    def update_event(event_id: str, request: EventUpdateRequest) -> dict[str, Any]:
        try:
            event = app.state.context.sync_engine.edit_local_event(event_id, request.changes)
        except (FocusCalError, ValueError) as exc:
            _raise_http(exc)
        return {"message": "event updated", "event": event.to_dict()}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, user_id: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, user_id=user_id)}

    return app


app = create_app()
