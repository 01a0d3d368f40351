from __future__ import annotations

import logging
import threading
import time
import traceback
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Iterable, Iterator, cast

from focuscal.config_manager import ConfigManager
from focuscal.conflicts import (
    ACTION_CONVERGED,
    ACTION_REFRESH,
    ACTION_UNCHANGED,
    ACTION_UPDATE,
    auto_resolution,
    build_conflict,
    compare_versions,
    conflict_matches_remote,
    diff_content,
    classify_conflict,
)
from focuscal.errors import (
    AuthError,
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    DeltaTokenExpiredError,
    DeltaTokenMissingError,
    EventNotFoundError,
    MalformedEventError,
    ProviderError,
    RateLimitError,
    SyncCancelledError,
    SyncInProgressError,
    SyncLeaseLostError,
    TransientProviderError,
)
from focuscal.models import (
    CONFLICT_BOTH_MODIFIED,
    DIRECTION_BIDIRECTIONAL,
    DIRECTION_PULL,
    DIRECTION_PUSH,
    MODE_DELTA,
    MODE_FULL,
    RESOLUTION_MANUAL,
    RESOLUTION_MERGE,
    RESOLUTION_USE_LOCAL,
    RESOLUTION_USE_REMOTE,
    RESOLUTIONS,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    SYNC_DIRECTIONS,
    SYNC_MODES,
    AppConfig,
    BatchSyncResult,
    CalendarEvent,
    DeltaSyncResult,
    SyncConflict,
    SyncResult,
    SyncState,
    content_fingerprint,
    sync_window,
    utc_now,
)
from focuscal.provider_base import BatchItem, CalendarProviderClient, ListRequest, Removal
from focuscal.providers import build_provider
from focuscal.reconciler import apply_change, merged_event
from focuscal.retry import RetryPolicy
from focuscal.state_store import StateStore
from focuscal.token_provider import StoredTokenProvider, TokenProvider


logger = logging.getLogger(__name__)

ProviderFactory = Callable[[AppConfig], CalendarProviderClient]


@dataclass
class _PassContext:
    user_id: str
    calendar_id: str
    config: AppConfig
    state: SyncState | None
    result: SyncResult
    retry: RetryPolicy
    clock: Callable[[], float]
    deadline: float | None = None
    provider: CalendarProviderClient | None = None
    lease_id: str | None = None
    renew: Callable[[str, str, str], bool] | None = None
    cancelled: threading.Event = field(default_factory=threading.Event)

    def checkpoint(self) -> None:
        if self.cancelled.is_set():
            raise SyncCancelledError(f"Sync pass for {self.user_id}/{self.calendar_id} was cancelled by user")
        if self.deadline is not None and self.clock() >= self.deadline:
            raise SyncCancelledError(f"Sync pass for {self.user_id}/{self.calendar_id} exceeded its deadline")

    def renew_lease(self) -> None:
        if self.lease_id is None or self.renew is None:
            return
        if not self.renew(self.user_id, self.calendar_id, self.lease_id):
            raise SyncLeaseLostError(f"Sync pass for {self.user_id}/{self.calendar_id} lost its lease")


def _overwrite_with_remote(local: CalendarEvent, remote: CalendarEvent) -> CalendarEvent:
    updated = local.clone()
    updated.apply_content(remote.content())
    updated.remote_id = remote.remote_id
    updated.etag = remote.etag
    updated.time_zone = remote.time_zone or updated.time_zone
    updated.remote_fingerprint = remote.fingerprint()
    updated.last_modified_remote = remote.last_modified_remote
    updated.locally_modified = False
    updated.remotely_modified = False
    updated.last_synced_at = utc_now()
    return updated


def _error_text(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class SyncEngine:
    """Reconciles the local event cache with a remote calendar provider."""

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        *,
        token_provider: TokenProvider | None = None,
        provider_factory: ProviderFactory | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.token_provider = token_provider
        self._provider_factory = provider_factory
        self._sleep = sleep
        self._clock = clock
        # Entries disappear once no pass holds the lock.
        self._key_locks: weakref.WeakValueDictionary[tuple[str, str], threading.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._key_locks_guard = threading.Lock()
        self._running: dict[tuple[str, str], threading.Event] = {}

    # plumbing

    def _build_provider(self, config: AppConfig) -> CalendarProviderClient:
        if self._provider_factory is not None:
            return self._provider_factory(config)
        token_provider = self.token_provider or StoredTokenProvider(self.state_store, config.provider)
        return build_provider(config.provider, token_provider)

    @contextmanager
    def _exclusive(self, user_id: str, calendar_id: str) -> Iterator[None]:
        with self._key_locks_guard:
            lock = self._key_locks.setdefault((user_id, calendar_id), threading.Lock())
        if not lock.acquire(blocking=False):
            raise SyncInProgressError(f"A sync pass is already running for {user_id}/{calendar_id}")
        try:
            yield
        finally:
            lock.release()

    def _audit(self, user_id: str, calendar_id: str, subject_id: str, action: str, details: dict[str, Any]) -> None:
        self.state_store.record_audit_event(
            user_id=user_id,
            calendar_id=calendar_id,
            subject_id=subject_id,
            action=action,
            details=details,
        )

    # exposed operations

    def trigger_sync(
        self,
        user_id: str,
        calendar_id: str,
        mode: str = MODE_DELTA,
        direction: str = DIRECTION_PULL,
        *,
        trigger: str = "manual",
        timeout_seconds: float | None = None,
    ) -> SyncResult:
        """Run one sync pass, falling back from delta to full when no usable token exists."""
        if mode not in SYNC_MODES:
            raise ValueError(f"Unsupported sync mode: {mode}")
        if direction not in SYNC_DIRECTIONS:
            raise ValueError(f"Unsupported sync direction: {direction}")
        if mode == MODE_DELTA and direction != DIRECTION_PUSH:
            state = self.state_store.get_sync_state(user_id, calendar_id)
            if state is None or not state.delta_token:
                logger.info("No delta token for %s/%s, running a full sync", user_id, calendar_id)
                mode = MODE_FULL
        return self._run_pass(
            user_id,
            calendar_id,
            mode=mode,
            direction=direction,
            trigger=trigger,
            timeout_seconds=timeout_seconds,
            allow_fallback=True,
        )

    def perform_full_sync(
        self,
        user_id: str,
        calendar_id: str,
        *,
        trigger: str = "manual",
        timeout_seconds: float | None = None,
    ) -> SyncResult:
        return self._run_pass(
            user_id,
            calendar_id,
            mode=MODE_FULL,
            direction=DIRECTION_PULL,
            trigger=trigger,
            timeout_seconds=timeout_seconds,
        )

    def perform_delta_sync(
        self,
        user_id: str,
        calendar_id: str,
        *,
        trigger: str = "manual",
        timeout_seconds: float | None = None,
    ) -> DeltaSyncResult:
        state = self.state_store.get_sync_state(user_id, calendar_id)
        if state is None or not state.delta_token:
            raise DeltaTokenMissingError(f"No delta token stored for {user_id}/{calendar_id}; run a full sync first")
        result = self._run_pass(
            user_id,
            calendar_id,
            mode=MODE_DELTA,
            direction=DIRECTION_PULL,
            trigger=trigger,
            timeout_seconds=timeout_seconds,
            allow_fallback=False,
        )
        return cast(DeltaSyncResult, result)

    def batch_sync(self, user_ids: Iterable[str], calendar_id: str, *, trigger: str = "batch") -> BatchSyncResult:
        """Full-sync many users, never sending more than the provider's batch cap per call."""
        config = self.config_manager.load()
        provider = self._build_provider(config)
        retry = RetryPolicy(config.retry, sleep=self._sleep)
        cap = max(1, min(config.sync.batch_size, provider.max_batch_size))
        unique_users = list(dict.fromkeys(str(u).strip() for u in user_ids if str(u or "").strip()))
        window_start, window_end = sync_window(utc_now(), config.sync.window_days)

        batch = BatchSyncResult(calendar_id=calendar_id)
        for offset in range(0, len(unique_users), cap):
            chunk = unique_users[offset : offset + cap]
            requests_ = [ListRequest(user, calendar_id, window_start, window_end) for user in chunk]
            by_user = self._list_chunk(provider, retry, requests_, batch)
            for user in chunk:
                try:
                    batch.results[user] = self._run_pass(
                        user,
                        calendar_id,
                        mode=MODE_FULL,
                        direction=DIRECTION_PULL,
                        trigger=trigger,
                        timeout_seconds=None,
                        prefetched=by_user[user],
                        provider=provider,
                    )
                except (AuthError, SyncInProgressError) as exc:
                    batch.results[user] = SyncResult(
                        status=STATUS_FAILED,
                        mode=MODE_FULL,
                        user_id=user,
                        calendar_id=calendar_id,
                        trigger=trigger,
                        message=_error_text(exc),
                    )
        return batch

    def _list_chunk(
        self,
        provider: CalendarProviderClient,
        retry: RetryPolicy,
        requests_: list[ListRequest],
        batch: BatchSyncResult,
    ) -> dict[str, BatchItem]:
        """One batch call per attempt; retries re-issue only the throttled or transient sub-requests."""
        settled: dict[str, BatchItem] = {}
        pending = list(requests_)

        def attempt() -> None:
            nonlocal pending
            batch.batch_calls += 1
            batch.batch_sizes.append(len(pending))
            items = {item.user_id: item for item in provider.batch_list_events(pending)}
            again: list[ListRequest] = []
            errors: list[ProviderError] = []
            for request in pending:
                item = items.get(request.user_id) or BatchItem(
                    user_id=request.user_id,
                    error=ProviderError(f"Batch response missing for user {request.user_id}"),
                )
                settled[request.user_id] = item
                if isinstance(item.error, (RateLimitError, TransientProviderError)):
                    again.append(request)
                    errors.append(item.error)
            pending = again
            throttled = [exc for exc in errors if isinstance(exc, RateLimitError)]
            if throttled:
                raise max(throttled, key=lambda exc: exc.retry_after or 0.0)
            if errors:
                raise errors[0]

        try:
            retry.call(attempt, description=f"batch listing of {len(requests_)} users")
        except ProviderError as exc:
            logger.warning("Batch listing for %d users failed: %s", len(pending), exc)
            for request in pending:
                settled.setdefault(request.user_id, BatchItem(user_id=request.user_id, error=exc))
        return settled

    def list_conflicts(self, user_id: str, calendar_id: str | None = None) -> list[SyncConflict]:
        return self.state_store.list_open_conflicts(user_id, calendar_id)

    def get_sync_status(self, user_id: str, calendar_id: str) -> SyncState | None:
        return self.state_store.get_sync_state(user_id, calendar_id)

    def disable_sync(self, user_id: str, calendar_id: str) -> bool:
        with self._exclusive(user_id, calendar_id):
            removed = self.state_store.delete_sync_state(user_id, calendar_id)
        if removed:
            self._audit(user_id, calendar_id, "sync", "sync_disabled", {})
        return removed

    def cancel_sync(self, user_id: str, calendar_id: str) -> bool:
        """Stop the running pass for a key, in this process or another one.

        The state is marked FAILED and its lease revoked, so the owning pass
        stops at its next checkpoint without moving the delta token.
        """
        with self._key_locks_guard:
            signal = self._running.get((user_id, calendar_id))
        if signal is not None:
            signal.set()
        cancelled = self.state_store.cancel_sync_pass(user_id, calendar_id)
        if cancelled or signal is not None:
            logger.info("Cancelled sync pass for %s/%s", user_id, calendar_id)
            self._audit(user_id, calendar_id, "sync", "sync_cancelled", {})
            return True
        return False

    def auto_resolve_conflict(self, conflict_id: str) -> CalendarEvent:
        """Resolve with the conflict's recommended resolution."""
        conflict = self.state_store.get_conflict(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(f"Conflict not found: {conflict_id}")
        resolution = conflict.recommended_resolution
        if resolution not in (RESOLUTION_USE_LOCAL, RESOLUTION_USE_REMOTE):
            resolution = RESOLUTION_USE_LOCAL
        return self.resolve_conflict(conflict_id, resolution)

    def resolve_conflict(
        self,
        conflict_id: str,
        resolution: str,
        merged_payload: dict[str, Any] | None = None,
    ) -> CalendarEvent:
        if resolution not in RESOLUTIONS:
            raise ValueError(f"Unsupported resolution: {resolution}")
        conflict = self.state_store.get_conflict(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(f"Conflict not found: {conflict_id}")
        if not conflict.is_open:
            raise ConflictAlreadyResolvedError(f"Conflict {conflict_id} is already resolved")

        config = self.config_manager.load()
        with self._exclusive(conflict.user_id, conflict.calendar_id):
            state = self.state_store.get_sync_state(conflict.user_id, conflict.calendar_id)
            if state is not None and state.status == STATUS_IN_PROGRESS and state.started_at is not None:
                age = (utc_now() - state.started_at).total_seconds()
                if age < config.sync.lock_ttl_seconds:
                    raise SyncInProgressError(
                        f"A sync pass is running for {conflict.user_id}/{conflict.calendar_id}"
                    )
            local = self.state_store.find_event(conflict.event_id)
            if local is None:
                raise EventNotFoundError(f"Event not found for conflict {conflict_id}")
            if resolution == RESOLUTION_MANUAL:
                conflict.resolution = RESOLUTION_MANUAL
                self.state_store.save_conflict(conflict)
                self._audit(conflict.user_id, conflict.calendar_id, conflict.id, "conflict_deferred", {})
                return local
            provider = None
            if resolution in (RESOLUTION_USE_LOCAL, RESOLUTION_MERGE):
                provider = self._build_provider(config)
            retry = RetryPolicy(config.retry, sleep=self._sleep)
            return self._apply_resolution(provider, retry, conflict, resolution, merged_payload, local)

    def create_local_event(self, user_id: str, calendar_id: str, payload: dict[str, Any]) -> CalendarEvent:
        outcome = apply_change(current_event=CalendarEvent(user_id=user_id, calendar_id=calendar_id), change=payload)
        if outcome.reason.startswith("invalid"):
            raise ValueError(outcome.reason)
        event = outcome.event
        if event.start is None or event.end is None:
            raise ValueError("start and end are required")
        event.locally_modified = True
        event.last_modified_local = utc_now()
        stored = self.state_store.insert_event(event)
        self._audit(user_id, calendar_id, stored.id, "local_event_created", {"subject": stored.subject})
        return stored

    def edit_local_event(self, event_id: str, changes: dict[str, Any]) -> CalendarEvent:
        local = self.state_store.find_event(event_id)
        if local is None:
            raise EventNotFoundError(f"Event not found: {event_id}")
        outcome = apply_change(current_event=local, change=changes)
        if outcome.reason.startswith("invalid"):
            raise ValueError(outcome.reason)
        if not outcome.applied:
            return local
        event = outcome.event
        event.locally_modified = True
        event.last_modified_local = utc_now()

        conflict = self.state_store.find_open_conflict(event.id)
        if conflict is not None and conflict.remote_version is not None:
            fields = diff_content(event.content(), conflict.remote_version)
            if fields:
                conflict.fields = fields
                conflict.type = classify_conflict(fields)
                conflict.local_version = event.content()
            else:
                # The edit made both sides identical.
                event.etag = conflict.remote_etag
                event.remote_fingerprint = content_fingerprint(conflict.remote_version)
                event.locally_modified = False
                event.remotely_modified = False
                conflict.resolution = RESOLUTION_USE_REMOTE
                conflict.resolved_at = utc_now()
            self.state_store.save_conflict(conflict)
        elif conflict is not None:
            conflict.local_version = event.content()
            self.state_store.save_conflict(conflict)

        self.state_store.save_event(event)
        self._audit(
            event.user_id,
            event.calendar_id,
            event.id,
            "local_event_edited",
            {"fields": sorted(k for k in changes if k not in outcome.blocked_fields)},
        )
        return event

    # pass orchestration

    def _run_pass(
        self,
        user_id: str,
        calendar_id: str,
        *,
        mode: str,
        direction: str,
        trigger: str,
        timeout_seconds: float | None,
        allow_fallback: bool = True,
        prefetched: BatchItem | None = None,
        provider: CalendarProviderClient | None = None,
    ) -> SyncResult:
        config = self.config_manager.load()
        started = self._clock()
        key = (user_id, calendar_id)
        with self._exclusive(user_id, calendar_id):
            lease_id = self.state_store.begin_sync_pass(
                user_id, calendar_id, lease_seconds=config.sync.lock_ttl_seconds
            )
            if lease_id is None:
                raise SyncInProgressError(f"A sync pass is already running for {user_id}/{calendar_id}")
            state = self.state_store.get_sync_state(user_id, calendar_id)
            result_cls = DeltaSyncResult if mode == MODE_DELTA else SyncResult
            result = result_cls(
                status=STATUS_IN_PROGRESS,
                mode=mode,
                user_id=user_id,
                calendar_id=calendar_id,
                trigger=trigger,
            )
            timeout = timeout_seconds if timeout_seconds is not None else (config.sync.timeout_seconds or None)
            ctx = _PassContext(
                user_id=user_id,
                calendar_id=calendar_id,
                config=config,
                state=state,
                result=result,
                retry=RetryPolicy(config.retry, sleep=self._sleep),
                clock=self._clock,
                deadline=(started + timeout) if timeout else None,
                lease_id=lease_id,
                renew=self.state_store.renew_sync_lease,
            )
            with self._key_locks_guard:
                self._running[key] = ctx.cancelled
            try:
                return self._execute_pass(
                    ctx,
                    direction=direction,
                    started=started,
                    allow_fallback=allow_fallback,
                    prefetched=prefetched,
                    provider=provider,
                )
            finally:
                with self._key_locks_guard:
                    self._running.pop(key, None)

    def _execute_pass(
        self,
        ctx: _PassContext,
        *,
        direction: str,
        started: float,
        allow_fallback: bool,
        prefetched: BatchItem | None,
        provider: CalendarProviderClient | None,
    ) -> SyncResult:
        user_id, calendar_id = ctx.user_id, ctx.calendar_id
        logger.info("Starting %s sync (%s) for %s/%s", ctx.result.mode, direction, user_id, calendar_id)

        new_token: str | None = None
        try:
            ctx.provider = provider or self._build_provider(ctx.config)
            if direction != DIRECTION_PUSH:
                if prefetched is not None:
                    self._apply_prefetched(ctx, prefetched)
                elif ctx.result.mode == MODE_DELTA:
                    try:
                        new_token = self._delta_pass(ctx)
                    except DeltaTokenExpiredError as exc:
                        if not allow_fallback:
                            raise
                        logger.warning("Delta token for %s/%s expired, running a full sync", user_id, calendar_id)
                        self._audit(user_id, calendar_id, "sync", "delta_token_expired", {"error": str(exc)})
                        ctx.result.mode = MODE_FULL
                        new_token = self._full_pass(ctx)
                else:
                    new_token = self._full_pass(ctx)
            if direction in (DIRECTION_PUSH, DIRECTION_BIDIRECTIONAL):
                self._push_pass(ctx)
            ctx.checkpoint()
        except AuthError as exc:
            self._fail_pass(ctx, exc, started)
            raise
        except Exception as exc:
            self._fail_pass(ctx, exc, started)
            return ctx.result

        result = ctx.result
        result.status = STATUS_COMPLETED
        result.duration_ms = int((self._clock() - started) * 1000)
        result.message = (
            f"created={result.created} updated={result.updated} deleted={result.deleted} "
            f"conflicted={result.conflicted} failed={result.failed} pushed={result.pushed}"
        )
        if isinstance(result, DeltaSyncResult):
            result.new_delta_token = new_token
        try:
            self.state_store.finish_sync_pass(
                user_id,
                calendar_id,
                status=STATUS_COMPLETED,
                result=result,
                delta_token=new_token,
                full_sync=result.mode == MODE_FULL and direction != DIRECTION_PUSH,
                lease_id=ctx.lease_id,
            )
        except SyncLeaseLostError as exc:
            self._fail_pass(ctx, exc, started)
            return ctx.result
        self.state_store.record_sync_run(result)
        logger.info("Finished %s sync for %s/%s: %s", result.mode, user_id, calendar_id, result.message)
        return result

    def _fail_pass(self, ctx: _PassContext, exc: Exception, started: float) -> None:
        result = ctx.result
        result.status = STATUS_FAILED
        result.duration_ms = int((self._clock() - started) * 1000)
        result.message = _error_text(exc)
        if isinstance(result, DeltaSyncResult):
            result.new_delta_token = None
        logger.warning("Sync pass for %s/%s failed: %s", ctx.user_id, ctx.calendar_id, result.message)
        try:
            self.state_store.finish_sync_pass(
                ctx.user_id,
                ctx.calendar_id,
                status=STATUS_FAILED,
                result=result,
                error=result.message,
                lease_id=ctx.lease_id,
            )
        except SyncLeaseLostError:
            # The state now belongs to a newer pass or was cancelled.
            logger.warning("Sync state for %s/%s is no longer owned by this pass", ctx.user_id, ctx.calendar_id)
        self.state_store.record_sync_run(result)
        self._audit(
            ctx.user_id,
            ctx.calendar_id,
            "sync",
            "run_error",
            {
                "trigger": result.trigger,
                "mode": result.mode,
                "error": result.message,
                "traceback": traceback.format_exc(limit=5),
            },
        )

    def _full_pass(self, ctx: _PassContext) -> str | None:
        window_start, window_end = sync_window(utc_now(), ctx.config.sync.window_days)
        seen: set[str] = set()
        cursor: str | None = None
        while True:
            ctx.checkpoint()
            ctx.renew_lease()
            page = ctx.retry.call(
                partial(
                    ctx.provider.list_events_page,
                    ctx.user_id,
                    ctx.calendar_id,
                    window_start,
                    window_end,
                    cursor,
                ),
                description=f"event listing for {ctx.user_id}/{ctx.calendar_id}",
            )
            self._apply_listing(ctx, page.events, page.malformed, seen)
            if not page.next_cursor:
                delta_token = page.delta_token
                break
            cursor = page.next_cursor
        if ctx.config.sync.prune_missing:
            self._prune_missing(ctx, seen, window_start, window_end)
        return delta_token

    def _apply_prefetched(self, ctx: _PassContext, item: BatchItem) -> None:
        if item.error is not None:
            raise item.error
        window_start, window_end = sync_window(utc_now(), ctx.config.sync.window_days)
        seen: set[str] = set()
        self._apply_listing(ctx, item.events, item.malformed, seen)
        if ctx.config.sync.prune_missing:
            self._prune_missing(ctx, seen, window_start, window_end)

    def _apply_listing(
        self,
        ctx: _PassContext,
        events: list[CalendarEvent],
        malformed: list[MalformedEventError],
        seen: set[str],
    ) -> None:
        for exc in malformed:
            if exc.remote_id:
                seen.add(exc.remote_id)
        self._apply_malformed(ctx, malformed)
        for remote in events:
            seen.add(str(remote.remote_id))
            self._guarded(ctx, str(remote.remote_id), self._apply_upsert, ctx, remote)

    def _delta_pass(self, ctx: _PassContext) -> str:
        cursor = ctx.state.delta_token if ctx.state is not None else None
        if not cursor:
            raise DeltaTokenMissingError(f"No delta token stored for {ctx.user_id}/{ctx.calendar_id}")
        while True:
            ctx.checkpoint()
            ctx.renew_lease()
            page = ctx.retry.call(
                partial(ctx.provider.get_delta_page, ctx.user_id, ctx.calendar_id, cursor),
                description=f"delta page for {ctx.user_id}/{ctx.calendar_id}",
            )
            self._apply_malformed(ctx, page.malformed)
            for remote in page.upserts:
                self._guarded(ctx, str(remote.remote_id), self._apply_upsert, ctx, remote)
            for removal in page.removals:
                self._guarded(ctx, removal.remote_id, self._apply_removal, ctx, removal)
            if not page.next_cursor:
                if not page.delta_token:
                    raise ProviderError("Delta feed ended without a new delta token")
                return page.delta_token
            cursor = page.next_cursor

    def _prune_missing(self, ctx: _PassContext, seen: set[str], window_start: Any, window_end: Any) -> None:
        for local in self.state_store.list_events(ctx.user_id, ctx.calendar_id):
            if not local.remote_id or local.remote_id in seen or local.start is None:
                continue
            if window_start <= local.start < window_end:
                removal = Removal(remote_id=local.remote_id, reason="missing_from_listing")
                self._guarded(ctx, local.remote_id, self._apply_removal, ctx, removal)

    def _guarded(self, ctx: _PassContext, remote_id: str, func: Callable[..., None], *args: Any) -> None:
        ctx.checkpoint()
        try:
            func(*args)
        except (AuthError, SyncCancelledError):
            raise
        except Exception as exc:
            message = _error_text(exc)
            logger.warning("Event %s failed during sync of %s/%s: %s", remote_id, ctx.user_id, ctx.calendar_id, message)
            ctx.result.record_error(remote_id, message)
            self._audit(ctx.user_id, ctx.calendar_id, remote_id, "event_failed", {"error": message})

    def _apply_malformed(self, ctx: _PassContext, malformed: list[MalformedEventError]) -> None:
        for exc in malformed:
            logger.warning("Skipping malformed event from %s: %s", ctx.user_id, exc)
            ctx.result.record_error(exc.remote_id, _error_text(exc))

    # per-event steps

    def _note_updated(self, ctx: _PassContext, remote_id: str) -> None:
        if isinstance(ctx.result, DeltaSyncResult):
            ctx.result.updated_events.append(remote_id)

    def _apply_upsert(self, ctx: _PassContext, remote: CalendarEvent) -> None:
        remote_id = str(remote.remote_id)
        local = self.state_store.find_by_remote_id(ctx.user_id, ctx.calendar_id, remote_id)
        if local is None:
            created = _overwrite_with_remote(
                CalendarEvent(user_id=ctx.user_id, calendar_id=ctx.calendar_id), remote
            )
            self.state_store.insert_event(created)
            ctx.result.created += 1
            self._note_updated(ctx, remote_id)
            return

        open_conflict = self.state_store.find_open_conflict(local.id)
        if open_conflict is not None:
            self._refresh_open_conflict(ctx, local, remote, open_conflict)
            return

        outcome = compare_versions(local, remote)
        if outcome.action == ACTION_UNCHANGED:
            ctx.result.unchanged += 1
        elif outcome.action == ACTION_REFRESH:
            refreshed = local.with_updates(
                etag=remote.etag,
                remote_fingerprint=remote.fingerprint(),
                last_modified_remote=remote.last_modified_remote,
                last_synced_at=utc_now(),
            )
            self.state_store.save_event(refreshed)
            ctx.result.unchanged += 1
        elif outcome.action in (ACTION_UPDATE, ACTION_CONVERGED):
            self.state_store.save_event(_overwrite_with_remote(local, remote))
            ctx.result.updated += 1
            self._note_updated(ctx, remote_id)
        else:
            self._raise_conflict(ctx, local, remote, outcome.fields, str(outcome.conflict_type))

    def _refresh_open_conflict(
        self,
        ctx: _PassContext,
        local: CalendarEvent,
        remote: CalendarEvent,
        conflict: SyncConflict,
    ) -> None:
        if conflict_matches_remote(conflict, remote):
            ctx.result.unchanged += 1
            return
        fields = diff_content(local.content(), remote.content())
        if not fields:
            self.state_store.save_event(_overwrite_with_remote(local, remote))
            conflict.resolution = RESOLUTION_USE_REMOTE
            conflict.resolved_at = utc_now()
            self.state_store.save_conflict(conflict)
            self._audit(ctx.user_id, ctx.calendar_id, conflict.id, "conflict_converged", {"event_id": local.id})
            ctx.result.updated += 1
            self._note_updated(ctx, str(remote.remote_id))
            return
        self._raise_conflict(ctx, local, remote, fields, classify_conflict(fields), existing=conflict)

    def _raise_conflict(
        self,
        ctx: _PassContext,
        local: CalendarEvent,
        remote: CalendarEvent | None,
        fields: list[str],
        conflict_type: str,
        existing: SyncConflict | None = None,
    ) -> None:
        conflict = build_conflict(
            local,
            remote,
            fields=fields,
            conflict_type=conflict_type,
            last_sync_time=ctx.state.last_sync_time if ctx.state is not None else None,
            policy=ctx.config.conflicts,
            existing=existing,
        )
        self.state_store.save_conflict(conflict)

        resolution = auto_resolution(conflict, ctx.config.conflicts)
        if resolution is not None:
            self._apply_resolution(ctx.provider, ctx.retry, conflict, resolution, None, local)
            ctx.result.auto_resolved += 1
            return

        if not local.remotely_modified:
            self.state_store.save_event(local.with_updates(remotely_modified=True))
        ctx.result.conflicted += 1
        ctx.result.conflict_ids.append(conflict.id)
        self._audit(
            ctx.user_id,
            ctx.calendar_id,
            conflict.id,
            "conflict_refreshed" if existing is not None else "conflict_detected",
            {
                "event_id": local.id,
                "type": conflict.type,
                "fields": conflict.fields,
                "recommended_resolution": conflict.recommended_resolution,
            },
        )
        logger.info("Conflict %s (%s) on event %s", conflict.id, conflict.type, local.id)

    def _apply_removal(self, ctx: _PassContext, removal: Removal) -> None:
        local = self.state_store.find_by_remote_id(ctx.user_id, ctx.calendar_id, removal.remote_id)
        if local is None:
            return
        if local.locally_modified:
            existing = self.state_store.find_open_conflict(local.id)
            if existing is not None and existing.remote_deleted:
                ctx.result.unchanged += 1
                return
            self._raise_conflict(ctx, local, None, [], CONFLICT_BOTH_MODIFIED, existing=existing)
            return
        self.state_store.delete_event(local.id)
        ctx.result.deleted += 1
        if isinstance(ctx.result, DeltaSyncResult):
            ctx.result.deleted_events.append(removal.remote_id)
        self._audit(
            ctx.user_id,
            ctx.calendar_id,
            removal.remote_id,
            "remote_delete_applied",
            {"event_id": local.id, "reason": removal.reason},
        )

    def _push_pass(self, ctx: _PassContext) -> None:
        for local in self.state_store.list_events(ctx.user_id, ctx.calendar_id):
            if local.remote_id and not local.locally_modified:
                continue
            if self.state_store.find_open_conflict(local.id) is not None:
                continue
            self._guarded(ctx, local.remote_id or local.id, self._push_event, ctx, local)

    def _push_event(self, ctx: _PassContext, local: CalendarEvent) -> None:
        ctx.renew_lease()
        if local.remote_id:
            call = partial(ctx.provider.update_event, ctx.user_id, ctx.calendar_id, local)
        else:
            call = partial(ctx.provider.create_event, ctx.user_id, ctx.calendar_id, local)
        remote = ctx.retry.call(call, description=f"push of event {local.id}")
        self.state_store.save_event(_overwrite_with_remote(local, remote))
        ctx.result.pushed += 1

    def _apply_resolution(
        self,
        provider: CalendarProviderClient | None,
        retry: RetryPolicy,
        conflict: SyncConflict,
        resolution: str,
        merged_payload: dict[str, Any] | None,
        local: CalendarEvent,
    ) -> CalendarEvent:
        if resolution == RESOLUTION_USE_REMOTE:
            if conflict.remote_version is None:
                self.state_store.delete_event(local.id)
                stored = local
            else:
                stored = local.clone()
                stored.apply_content(conflict.remote_version)
                stored.etag = conflict.remote_etag
                stored.remote_fingerprint = content_fingerprint(conflict.remote_version)
                stored.locally_modified = False
                stored.remotely_modified = False
                stored.last_synced_at = utc_now()
                self.state_store.save_event(stored)
        else:
            if provider is None:
                raise ValueError(f"{resolution} requires a provider")
            if resolution == RESOLUTION_MERGE:
                candidate = merged_event(conflict, local, merged_payload)
            else:
                candidate = local.clone()
                candidate.apply_content(conflict.local_version)
            if conflict.remote_version is None:
                candidate.remote_id = None
                call = partial(provider.create_event, conflict.user_id, conflict.calendar_id, candidate)
            else:
                call = partial(provider.update_event, conflict.user_id, conflict.calendar_id, candidate)
            remote = retry.call(call, description=f"{resolution} push for conflict {conflict.id}")
            stored = _overwrite_with_remote(candidate, remote)
            self.state_store.save_event(stored)

        conflict.resolution = resolution
        conflict.resolved_at = utc_now()
        self.state_store.save_conflict(conflict)
        self._audit(
            conflict.user_id,
            conflict.calendar_id,
            conflict.id,
            "conflict_resolved",
            {"event_id": conflict.event_id, "resolution": resolution, "type": conflict.type},
        )
        logger.info("Conflict %s resolved with %s", conflict.id, resolution)
        return stored
