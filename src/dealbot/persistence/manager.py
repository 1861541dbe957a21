"""
Persistence manager: single writer per deal over the log, snapshot and index.

The event log is the source of truth. The snapshot (``state.json``) and the
relational index are projections that are rewritten from the fold and can be
regenerated at any time. Appends for one deal are serialized by a per-deal
lock so log order, fold order and broadcast order all agree.
"""

from __future__ import annotations

import asyncio
import inspect
from datetime import datetime
from typing import Any, Awaitable, Callable

from dealbot.config import Settings, get_settings
from dealbot.exceptions import DealNotFoundError, PersistenceWriteError, RunNotFoundError
from dealbot.logging import get_logger
from dealbot.persistence.index import RelationalIndex
from dealbot.persistence.log_store import LogStore
from dealbot.reducer import reduce_state, replay
from dealbot.state import DealInput, DealState, initial_state
from dealbot.types import (
    DealEvent,
    EventType,
    PersonaRecord,
    RunRecord,
    RunStatus,
    generate_id,
    utc_now,
    utc_now_iso,
)

logger = get_logger(__name__)

EventListener = Callable[[DealEvent], Awaitable[None] | None]


class PersistenceManager:
    """Owns every durable write for deals."""

    def __init__(
        self,
        settings: Settings | None = None,
        log_store: LogStore | None = None,
        index: RelationalIndex | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            settings: Settings to use. Defaults to the cached settings.
            log_store: Authoritative store. Defaults to one under DATA_DIR.
            index: Relational index. Defaults to SQLite at the configured
                path when INDEX_ENABLED, otherwise no index.
        """
        self.settings = settings or get_settings()
        self.store = log_store or LogStore(self.settings.DATA_DIR)
        if index is None and self.settings.INDEX_ENABLED:
            index = RelationalIndex(self.settings.index_path)
        self.index = index

        self._locks: dict[str, asyncio.Lock] = {}
        self._states: dict[str, DealState] = {}
        self._listeners: list[EventListener] = []

    async def init(self) -> None:
        """Open the index. An unavailable index is logged and disabled."""
        if self.index is None:
            return
        try:
            await self.index.init()
        except Exception as e:
            logger.warning("Relational index unavailable; continuing on log only", error=str(e))
            self.index = None

    async def close(self) -> None:
        if self.index is not None:
            await self.index.close()

    def add_listener(self, listener: EventListener) -> None:
        """Register a callback invoked with every appended event, in order."""
        self._listeners.append(listener)

    def lock(self, deal_id: str) -> asyncio.Lock:
        if deal_id not in self._locks:
            self._locks[deal_id] = asyncio.Lock()
        return self._locks[deal_id]

    # ------------------------------------------------------------------
    # Deals
    # ------------------------------------------------------------------

    async def create_deal(self, deal_input: DealInput) -> str:
        """Persist a new deal and seed its snapshot.

        Returns:
            The new deal ID.
        """
        deal_id = generate_id("deal")
        self.store.save_deal(deal_id, {
            "deal_id": deal_id,
            "status": "active",
            "created_at": utc_now_iso(),
            "deal_input": deal_input.model_dump(mode="json"),
        })
        state = initial_state(deal_input)
        self._states[deal_id] = state
        self._write_snapshot(deal_id, state)
        logger.info("Deal created", deal_id=deal_id, name=deal_input.name)
        return deal_id

    def deal_exists(self, deal_id: str) -> bool:
        return self.store.deal_exists(deal_id)

    def load_deal_input(self, deal_id: str) -> DealInput:
        """Load the static input of a deal.

        Raises:
            DealNotFoundError: If the deal was never created.
        """
        record = self.store.load_deal(deal_id)
        if record is None:
            raise DealNotFoundError("Deal not found", {"deal_id": deal_id})
        return DealInput.model_validate(record["deal_input"])

    def archive_deal(self, deal_id: str) -> None:
        """Mark a deal archived. Deals are never deleted."""
        record = self.store.load_deal(deal_id)
        if record is None:
            raise DealNotFoundError("Deal not found", {"deal_id": deal_id})
        record["status"] = "archived"
        self.store.save_deal(deal_id, record)

    def list_deals(self) -> list[str]:
        return self.store.list_deal_ids()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def list_runs(self, deal_id: str) -> list[RunRecord]:
        return self.store.load_runs(deal_id)

    def latest_run(self, deal_id: str) -> RunRecord | None:
        runs = self.store.load_runs(deal_id)
        return runs[-1] if runs else None

    def active_run(self, deal_id: str) -> RunRecord | None:
        run = self.latest_run(deal_id)
        return run if run is not None and run.is_active else None

    def get_run(self, deal_id: str, run_id: str) -> RunRecord:
        for run in self.store.load_runs(deal_id):
            if run.run_id == run_id:
                return run
        raise RunNotFoundError("Run not found", {"deal_id": deal_id, "run_id": run_id})

    async def start_run(self, deal_id: str) -> RunRecord:
        """Start a new run, archiving the previous run's log and snapshot.

        A still-running previous run is marked cancelled first, so at most
        one run is ever active.

        Raises:
            DealNotFoundError: If the deal was never created.
        """
        deal_input = self.load_deal_input(deal_id)
        async with self.lock(deal_id):
            runs = self.store.load_runs(deal_id)
            if runs:
                previous = runs[-1]
                if previous.is_active:
                    previous.status = RunStatus.CANCELLED
                    previous.completed_at = utc_now_iso()
                    previous.error = "superseded by a new run"
                self.store.archive_active(deal_id, previous.seq)

            run = RunRecord.create(deal_id, seq=len(runs) + 1)
            runs.append(run)
            self.store.save_runs(deal_id, runs)

            state = initial_state(deal_input)
            self._states[deal_id] = state
            self._write_snapshot(deal_id, state)
            for record in runs[-2:]:
                await self._index_call("upsert_run", record)

        logger.info("Run started", deal_id=deal_id, run_id=run.run_id, seq=run.seq)
        return run

    async def _finish_run(self, deal_id: str, run_id: str, **fields: Any) -> RunRecord:
        async with self.lock(deal_id):
            runs = self.store.load_runs(deal_id)
            for run in runs:
                if run.run_id == run_id:
                    break
            else:
                raise RunNotFoundError("Run not found", {"deal_id": deal_id, "run_id": run_id})

            for key, value in fields.items():
                setattr(run, key, value)
            run.completed_at = utc_now_iso()
            started = datetime.fromisoformat(run.started_at)
            run.duration_ms = int((utc_now() - started).total_seconds() * 1000)
            self.store.save_runs(deal_id, runs)
            await self._index_call("upsert_run", run)
            # the log refolds on the next read
            self._states.pop(deal_id, None)
        return run

    async def complete_run(
        self,
        deal_id: str,
        run_id: str,
        decision: str | None = None,
        avg_score: int | None = None,
        weighted_score: float | None = None,
    ) -> RunRecord:
        run = await self._finish_run(
            deal_id,
            run_id,
            status=RunStatus.COMPLETE,
            decision=decision,
            avg_score=avg_score,
            weighted_score=weighted_score,
        )
        logger.info(
            "Run completed",
            deal_id=deal_id,
            run_id=run_id,
            decision=decision,
            avg_score=avg_score,
            duration_ms=run.duration_ms,
        )
        return run

    async def fail_run(self, deal_id: str, run_id: str, error: str) -> RunRecord:
        logger.error("Run failed", deal_id=deal_id, run_id=run_id, error=error)
        return await self._finish_run(deal_id, run_id, status=RunStatus.ERROR, error=error)

    async def cancel_run(self, deal_id: str, run_id: str) -> RunRecord:
        logger.info("Run cancelled", deal_id=deal_id, run_id=run_id)
        return await self._finish_run(deal_id, run_id, status=RunStatus.CANCELLED)

    async def reopen_run(self, deal_id: str, run_id: str) -> RunRecord:
        """Return an errored run to running so it can be resumed."""
        async with self.lock(deal_id):
            runs = self.store.load_runs(deal_id)
            run = next((r for r in runs if r.run_id == run_id), None)
            if run is None:
                raise RunNotFoundError("Run not found", {"deal_id": deal_id, "run_id": run_id})
            run.status = RunStatus.RUNNING
            run.completed_at = None
            run.error = None
            self.store.save_runs(deal_id, runs)
            await self._index_call("upsert_run", run)
        return run

    # ------------------------------------------------------------------
    # Events and state
    # ------------------------------------------------------------------

    async def append(
        self,
        deal_id: str,
        type: EventType,
        payload: dict[str, Any] | None = None,
        public_payload: dict[str, Any] | None = None,
    ) -> DealEvent:
        """Durably record an event and update every projection.

        The log write must succeed. Snapshot and index failures are logged
        and leave the log authoritative.

        Raises:
            DealNotFoundError: If the deal was never created.
            PersistenceWriteError: If the log append fails after retries.
        """
        async with self.lock(deal_id):
            state = self._state_for(deal_id)
            run = self.active_run(deal_id)
            event = DealEvent.create(
                deal_id=deal_id,
                type=type,
                payload=payload,
                run_id=run.run_id if run else None,
                public_payload=public_payload,
            )

            try:
                self.store.append_event(event)
            except OSError as e:
                raise PersistenceWriteError(
                    "Failed to append event",
                    {"deal_id": deal_id, "path": str(self.store.events_path(deal_id)),
                     "event_type": type.value},
                ) from e

            state = reduce_state(state, event)
            self._states[deal_id] = state
            self._write_snapshot(deal_id, state)
            await self._index_call("project", event)
            await self._notify(event)

        return event

    def _state_for(self, deal_id: str) -> DealState:
        if deal_id not in self._states:
            self._states[deal_id] = self.replay(deal_id)
        return self._states[deal_id]

    async def snapshot(self, deal_id: str) -> DealState | None:
        """Current canonical state, or None for an unknown deal."""
        if not self.deal_exists(deal_id):
            return None
        async with self.lock(deal_id):
            return self._state_for(deal_id)

    def events(self, deal_id: str) -> list[DealEvent]:
        return self.store.read_events(deal_id)

    def replay(self, deal_id: str, upto: int | None = None) -> DealState:
        """Fold the active log (or its first ``upto`` events) from scratch."""
        deal_input = self.load_deal_input(deal_id)
        events = self.store.read_events(deal_id)
        if upto is not None:
            events = events[:upto]
        return replay(initial_state(deal_input), events)

    async def rebuild_snapshot(self, deal_id: str) -> DealState:
        """Discard the cached state and rewrite the snapshot from the log."""
        async with self.lock(deal_id):
            state = self.replay(deal_id)
            self._states[deal_id] = state
            self._write_snapshot(deal_id, state)
        return state

    async def verify_snapshot(self, deal_id: str) -> bool:
        """Check that ``state.json`` equals a fresh replay of the log."""
        async with self.lock(deal_id):
            on_disk = self.store.read_snapshot(deal_id)
            replayed = self.replay(deal_id).model_dump(mode="json")
        matches = on_disk == replayed
        if not matches:
            logger.warning("Snapshot diverges from log replay", deal_id=deal_id)
        return matches

    def get_archived_snapshot(self, deal_id: str, run_marker: str) -> DealState | None:
        """State of a superseded run, from its archived snapshot or log.

        Args:
            deal_id: The deal.
            run_marker: Archive name (``run_001``) or run sequence number.
        """
        archive = self.store.archive_dir(deal_id, run_marker)
        if not archive.exists():
            return None
        deal_input = self.load_deal_input(deal_id)
        events_path = archive / "events.jsonl"
        if events_path.exists():
            return replay(initial_state(deal_input), self.store.iter_events(deal_id, events_path))
        data = self.store.read_archived_snapshot(deal_id, run_marker)
        return DealState.model_validate(data) if data else None

    def _write_snapshot(self, deal_id: str, state: DealState) -> None:
        try:
            self.store.write_snapshot(deal_id, state.model_dump(mode="json"))
        except OSError as e:
            logger.warning("Snapshot write failed; log remains authoritative",
                           deal_id=deal_id, error=str(e))

    async def _notify(self, event: DealEvent) -> None:
        for listener in self._listeners:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("Event listener failed", event_type=event.type.value, error=str(e))

    # ------------------------------------------------------------------
    # Markers and persona records
    # ------------------------------------------------------------------

    async def write_marker(
        self, deal_id: str, run_id: str, stage_id: str, status: str, **extra: Any
    ) -> None:
        """Commit a unit as terminal. Markers are the only resume signal."""
        self.store.write_marker(deal_id, run_id, stage_id, {
            "stage_id": stage_id,
            "status": status,
            "completed_at": utc_now_iso(),
            **extra,
        })

    def read_markers(self, deal_id: str, run_id: str) -> dict[str, dict[str, Any]]:
        return self.store.read_markers(deal_id, run_id)

    async def save_persona(self, deal_id: str, run_id: str, record: PersonaRecord) -> None:
        self.store.save_persona(deal_id, run_id, record)
        await self._index_call("upsert_persona", deal_id, run_id, record)

    def load_personas(self, deal_id: str, run_id: str) -> list[PersonaRecord]:
        return self.store.load_personas(deal_id, run_id)

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    async def _index_call(self, method: str, *args: Any) -> None:
        if self.index is None:
            return
        try:
            await getattr(self.index, method)(*args)
        except Exception as e:
            logger.warning("Index update failed; log remains authoritative",
                           method=method, error=str(e))

    async def rebuild_index(self, deal_id: str) -> int:
        """Regenerate a deal's projections from archived and active logs.

        Returns:
            Number of events replayed, or 0 without an index.
        """
        if self.index is None:
            return 0
        self.load_deal_input(deal_id)
        async with self.lock(deal_id):
            events: list[DealEvent] = []
            for name in self.store.list_archives(deal_id):
                path = self.store.archive_dir(deal_id, name) / "events.jsonl"
                events.extend(self.store.iter_events(deal_id, path))
            events.extend(self.store.read_events(deal_id))

            runs = self.store.load_runs(deal_id)
            personas = [
                (run.run_id, record)
                for run in runs
                for record in self.store.load_personas(deal_id, run.run_id)
            ]
            return await self.index.rebuild(deal_id, events, runs, personas)
