"""
Deal evaluation pipeline.

Drives a run through its units:

1. ``evidence``   seed search, intel scan and company profile
2. ``analyst_i``  one per specialization, run concurrently
3. ``associate``  synthesis into hypotheses, with unknown resolution alongside
4. ``partner``    rubric scores and the gated decision, then run completion

Each unit ends by writing a marker, the commit point used for resumption.
A unit whose reasoning output cannot be validated is recorded as degraded
and the run continues.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Sequence

from dealbot.broadcast import LiveStreamBroadcaster
from dealbot.config import Settings, get_settings
from dealbot.contracts import (
    ANALYST_CONTRACT,
    ASSOCIATE_CONTRACT,
    PARTNER_CONTRACT,
    Contract,
    enforce_partner_output,
    rubric_average,
)
from dealbot.coordinator.evidence import EvidenceGatherer
from dealbot.coordinator.stages import (
    ASSOCIATE_UNIT,
    EVIDENCE_UNIT,
    ORCHESTRATOR_NODE,
    PARTNER_UNIT,
    build_analyst_input,
    build_associate_input,
    build_partner_input,
    collect_unknowns,
    decision_payloads,
    degraded_gate,
    evidence_payloads,
    plan_units,
)
from dealbot.exceptions import DealNotFoundError, ProviderTimeoutError
from dealbot.gate import ValidationResult, produce_validated
from dealbot.logging import get_logger, log_context
from dealbot.persistence.manager import PersistenceManager
from dealbot.profiles import FundProfile, resolve_fund_profile, weighted_score
from dealbot.providers.base import EvidenceProvider, NotificationSink, ReasoningRunner
from dealbot.state import DealInput, DealState
from dealbot.types import (
    EventType,
    PersonaRecord,
    PersonaStatus,
    PersonaType,
    RunRecord,
    RunStatus,
    utc_now_iso,
)

logger = get_logger(__name__)


@dataclass
class PipelineResult:
    """Summary of a pipeline invocation."""

    deal_id: str
    run_id: str
    status: RunStatus
    decision: str | None = None
    avg_score: int | None = None
    weighted_score: float | None = None
    units_run: list[str] = field(default_factory=list)
    degraded: list[str] = field(default_factory=list)

    @classmethod
    def from_run(cls, run: RunRecord, units_run: list[str] | None = None,
                 degraded: list[str] | None = None) -> PipelineResult:
        return cls(
            deal_id=run.deal_id,
            run_id=run.run_id,
            status=run.status,
            decision=run.decision,
            avg_score=run.avg_score,
            weighted_score=run.weighted_score,
            units_run=units_run or [],
            degraded=degraded or [],
        )


class DealPipeline:
    """Orchestrates deal runs over injected collaborators."""

    def __init__(
        self,
        persistence: PersistenceManager,
        runner: ReasoningRunner,
        providers: Sequence[EvidenceProvider] = (),
        broadcaster: LiveStreamBroadcaster | None = None,
        notifier: NotificationSink | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            persistence: Persistence manager for the deals.
            runner: Reasoning runner hosting the personas.
            providers: Evidence providers.
            broadcaster: Receives every appended event, if given.
            notifier: Receives a summary when a run completes, if given.
            settings: Application settings (cached settings if None).
        """
        self.settings = settings or get_settings()
        self.persistence = persistence
        self.runner = runner
        self.notifier = notifier
        self.broadcaster = broadcaster
        if broadcaster is not None:
            persistence.add_listener(broadcaster.broadcast)

        self._provider_semaphore = asyncio.Semaphore(self.settings.PROVIDER_CONCURRENCY)
        self.gatherer = EvidenceGatherer(providers, self.settings, self._provider_semaphore)

        # Deals currently driven by this process, and pending cancellations.
        self._active: set[str] = set()
        self._cancel_requested: set[str] = set()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def create_deal(self, deal_input: DealInput) -> str:
        return await self.persistence.create_deal(deal_input)

    def is_active(self, deal_id: str) -> bool:
        """Whether this process is currently executing units for ``deal_id``."""
        return deal_id in self._active

    async def rerun(self, deal_id: str) -> PipelineResult | None:
        """Archive the previous run and drive a fresh one to completion."""
        return await self.run_pipeline(deal_id, start_new=True)

    async def run_pipeline(self, deal_id: str, start_new: bool = False) -> PipelineResult | None:
        """Drive the deal's run to a terminal status.

        Idempotent: a complete run is left as is, an interrupted or errored
        run resumes from its first unit without a marker, and a deal already
        being driven in this process is skipped.

        Args:
            deal_id: The deal to evaluate.
            start_new: Start a fresh run even if one already exists.

        Returns:
            Run summary, or None if another invocation is driving the deal.

        Raises:
            DealNotFoundError: If the deal was never created.
        """
        deal_input = self.persistence.load_deal_input(deal_id)

        if deal_id in self._active:
            logger.info("Deal already running in this process; skipping", deal_id=deal_id)
            return None
        self._active.add(deal_id)

        try:
            run = self.persistence.latest_run(deal_id)
            if start_new or run is None:
                run = await self.persistence.start_run(deal_id)
            elif run.status in (RunStatus.COMPLETE, RunStatus.CANCELLED):
                return PipelineResult.from_run(run)
            elif run.status == RunStatus.ERROR:
                run = await self.persistence.reopen_run(deal_id, run.run_id)
                logger.info("Resuming errored run", deal_id=deal_id, run_id=run.run_id)

            with log_context(deal_id=deal_id, run_id=run.run_id):
                return await self._drive(deal_id, deal_input, run)
        finally:
            self._active.discard(deal_id)

    async def cancel(self, deal_id: str) -> bool:
        """Request cancellation of the deal's active run.

        A run driven in this process stops at the next stage boundary.
        A run with no live driver is cancelled immediately.

        Returns:
            True if there was an active run to cancel.
        """
        run = self.persistence.active_run(deal_id)
        if run is None:
            return False
        if deal_id in self._active:
            self._cancel_requested.add(deal_id)
        else:
            await self.persistence.cancel_run(deal_id, run.run_id)
        return True

    async def run_next_unit(self, deal_id: str) -> str | None:
        """Execute exactly one incomplete unit of the active run.

        Returns:
            The unit executed, or None if the deal is being driven elsewhere
            in this process, has no active run, or has nothing left to do.
        """
        if deal_id in self._active:
            return None
        self._active.add(deal_id)
        try:
            run = self.persistence.active_run(deal_id)
            if run is None:
                return None
            deal_input = self.persistence.load_deal_input(deal_id)
            with log_context(deal_id=deal_id, run_id=run.run_id):
                pending = self.pending_units(deal_id, run, deal_input)
                if not pending:
                    await self._finalize(deal_id, run, deal_input)
                    return None
                unit = pending[0]
                await self._execute_unit(deal_id, run, deal_input, unit)
                return unit
        finally:
            self._active.discard(deal_id)

    def pending_units(
        self, deal_id: str, run: RunRecord, deal_input: DealInput | None = None
    ) -> list[str]:
        """Units of ``run`` without a marker, in execution order."""
        deal_input = deal_input or self.persistence.load_deal_input(deal_id)
        markers = self.persistence.read_markers(deal_id, run.run_id)
        done = {
            unit for unit, marker in markers.items()
            if PersonaStatus(marker.get("status", PersonaStatus.ERROR.value)).is_terminal
        }
        units = plan_units(len(self._specializations(deal_input)))
        return [unit for unit in units if unit not in done]

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    async def _drive(self, deal_id: str, deal_input: DealInput, run: RunRecord) -> PipelineResult:
        units_run: list[str] = []
        degraded: list[str] = []

        try:
            pending = self.pending_units(deal_id, run, deal_input)
            logger.info("Driving run", pending=pending)

            if EVIDENCE_UNIT in pending:
                await self._execute_unit(deal_id, run, deal_input, EVIDENCE_UNIT)
                units_run.append(EVIDENCE_UNIT)
                if await self._cancelled(deal_id, run):
                    return self._result(deal_id, run, units_run, degraded)

            analyst_units = [u for u in pending if u.startswith("analyst_")]
            if analyst_units:
                outcomes = await asyncio.gather(
                    *(self._execute_unit(deal_id, run, deal_input, u) for u in analyst_units),
                    return_exceptions=True,
                )
                for unit, outcome in zip(analyst_units, outcomes):
                    if isinstance(outcome, BaseException):
                        raise outcome
                    units_run.append(unit)
                    if outcome == PersonaStatus.DEGRADED:
                        degraded.append(unit)
                if await self._cancelled(deal_id, run):
                    return self._result(deal_id, run, units_run, degraded)

            for unit in (ASSOCIATE_UNIT, PARTNER_UNIT):
                if unit not in pending:
                    continue
                status = await self._execute_unit(deal_id, run, deal_input, unit)
                units_run.append(unit)
                if status == PersonaStatus.DEGRADED:
                    degraded.append(unit)
                if unit == ASSOCIATE_UNIT and await self._cancelled(deal_id, run):
                    return self._result(deal_id, run, units_run, degraded)

            if PARTNER_UNIT not in pending:
                await self._finalize(deal_id, run, deal_input)

        except Exception as e:
            logger.exception("Pipeline failed", error=str(e))
            await self._emit(deal_id, EventType.ERROR, {"node": ORCHESTRATOR_NODE, "error": str(e)},
                             swallow=True)
            await self.persistence.fail_run(deal_id, run.run_id, str(e))

        return self._result(deal_id, run, units_run, degraded)

    def _result(self, deal_id: str, run: RunRecord, units_run: list[str],
                degraded: list[str]) -> PipelineResult:
        current = self.persistence.get_run(deal_id, run.run_id)
        return PipelineResult.from_run(current, units_run, degraded)

    async def _cancelled(self, deal_id: str, run: RunRecord) -> bool:
        if deal_id not in self._cancel_requested:
            return False
        self._cancel_requested.discard(deal_id)
        await self._emit(deal_id, EventType.LIVE_UPDATE,
                         {"phase": "cancelled", "message": "Run cancelled"})
        await self.persistence.cancel_run(deal_id, run.run_id)
        return True

    async def _execute_unit(
        self, deal_id: str, run: RunRecord, deal_input: DealInput, unit: str
    ) -> PersonaStatus:
        profile = resolve_fund_profile(deal_input.firm_type, deal_input.aum)

        if unit == EVIDENCE_UNIT:
            status = await self._run_evidence(deal_id, deal_input)
        elif unit.startswith("analyst_"):
            index = int(unit.rsplit("_", 1)[-1]) - 1
            specialization = self._specializations(deal_input)[index]
            status = await self._run_analyst(deal_id, run, unit, specialization, profile)
        elif unit == ASSOCIATE_UNIT:
            status = await self._run_associate(deal_id, run, profile)
        elif unit == PARTNER_UNIT:
            status = await self._run_partner(deal_id, run, profile)
            await self._finalize(deal_id, run, deal_input, profile)
        else:
            raise ValueError(f"Unknown unit: {unit}")

        await self.persistence.write_marker(deal_id, run.run_id, unit, status.value)
        return status

    # ------------------------------------------------------------------
    # Units
    # ------------------------------------------------------------------

    async def _run_evidence(self, deal_id: str, deal_input: DealInput) -> PersonaStatus:
        await self._emit(deal_id, EventType.NODE_STARTED, {"node_id": ORCHESTRATOR_NODE})
        await self._emit(deal_id, EventType.LIVE_UPDATE, {
            "phase": "evidence_seed",
            "message": f"Gathering evidence for {deal_input.name}",
        })

        seed = await self.gatherer.gather_seed(deal_input)

        if seed.profile:
            await self._emit(deal_id, EventType.COMPANY_PROFILE_ADDED, {"profile": seed.profile})
        full, public = evidence_payloads(seed.items)
        await self._emit(deal_id, EventType.EVIDENCE_ADDED, full, public)
        await self._emit(deal_id, EventType.LIVE_UPDATE, {
            "phase": "evidence_done",
            "message": f"Gathered {len(seed.items)} evidence items",
            "intel_categories": seed.categories_with_data,
            "fallback": seed.used_fallback,
        })
        return PersonaStatus.DONE

    async def _run_analyst(
        self,
        deal_id: str,
        run: RunRecord,
        persona_id: str,
        specialization: str,
        profile: FundProfile,
    ) -> PersonaStatus:
        state = await self._state(deal_id)
        stage_input = build_analyst_input(state, specialization, profile)
        record, result = await self._run_persona(
            deal_id, run, persona_id, PersonaType.ANALYST, ANALYST_CONTRACT,
            stage_input, specialization,
        )
        if result.ok:
            await self._emit(deal_id, EventType.MSG_SENT, {
                "from": persona_id,
                "to": ASSOCIATE_UNIT,
                "specialization": specialization,
                "output": record.output,
            })
        await self._emit(deal_id, EventType.NODE_DONE, {
            "node_id": persona_id,
            "status": record.status.value,
        })
        return record.status

    async def _run_associate(
        self, deal_id: str, run: RunRecord, profile: FundProfile
    ) -> PersonaStatus:
        analyst_outputs = {
            p.persona_id: p.output
            for p in self.persistence.load_personas(deal_id, run.run_id)
            if p.persona_type == PersonaType.ANALYST and p.output is not None
        }
        state = await self._state(deal_id)
        stage_input = build_associate_input(state, analyst_outputs, profile)
        unknowns = collect_unknowns(analyst_outputs, self.settings.MAX_UNKNOWNS_TO_RESOLVE)

        (record, result), resolved = await asyncio.gather(
            self._run_persona(
                deal_id, run, ASSOCIATE_UNIT, PersonaType.ASSOCIATE,
                ASSOCIATE_CONTRACT, stage_input,
            ),
            self.gatherer.resolve_unknowns(unknowns),
        )

        if resolved:
            full, public = evidence_payloads(resolved)
            await self._emit(deal_id, EventType.EVIDENCE_ADDED, full, public)

        if result.ok:
            output = record.output or {}
            await self._emit(deal_id, EventType.MSG_SENT, {
                "from": ASSOCIATE_UNIT,
                "to": PARTNER_UNIT,
                "output": output,
            })
            await self._emit(deal_id, EventType.STATE_PATCH, {
                "hypotheses": output.get("hypotheses", []),
                "patch_summary": "Associate hypotheses added",
            })
        await self._emit(deal_id, EventType.NODE_DONE, {
            "node_id": ASSOCIATE_UNIT,
            "status": record.status.value,
        })
        return record.status

    async def _run_partner(
        self, deal_id: str, run: RunRecord, profile: FundProfile
    ) -> PersonaStatus:
        associate = next(
            (p for p in self.persistence.load_personas(deal_id, run.run_id)
             if p.persona_id == ASSOCIATE_UNIT),
            None,
        )
        state = await self._state(deal_id)
        stage_input = build_partner_input(state, associate.output if associate else None, profile)

        record, result = await self._run_persona(
            deal_id, run, PARTNER_UNIT, PersonaType.PARTNER, PARTNER_CONTRACT, stage_input,
        )

        if result.ok:
            enforced = enforce_partner_output(result.unwrap())
            record.output = enforced.model_dump(mode="json")
            await self.persistence.save_persona(deal_id, run.run_id, record)
            await self._emit(deal_id, EventType.MSG_SENT, {
                "from": PARTNER_UNIT,
                "to": ORCHESTRATOR_NODE,
                "output": record.output,
            })
            await self._emit(deal_id, EventType.STATE_PATCH, {
                "rubric": record.output["rubric"],
                "patch_summary": "Partner rubric scores",
            })
            gate = enforced.decision_gate
        else:
            gate = degraded_gate()

        full, public = decision_payloads(gate)
        await self._emit(deal_id, EventType.DECISION_UPDATED, full, public)
        await self._emit(deal_id, EventType.NODE_DONE, {
            "node_id": PARTNER_UNIT,
            "status": record.status.value,
        })
        return record.status

    async def _finalize(
        self,
        deal_id: str,
        run: RunRecord,
        deal_input: DealInput,
        profile: FundProfile | None = None,
    ) -> None:
        current = self.persistence.get_run(deal_id, run.run_id)
        if current.status != RunStatus.RUNNING:
            return
        profile = profile or resolve_fund_profile(deal_input.firm_type, deal_input.aum)
        state = await self._state(deal_id)
        avg = rubric_average(state.rubric)
        weighted = weighted_score(state.rubric, profile)
        decision = state.decision_gate.decision.value

        await self._emit(deal_id, EventType.NODE_DONE, {
            "node_id": ORCHESTRATOR_NODE,
            "decision": decision,
            "avg_score": avg,
        })
        await self.persistence.complete_run(
            deal_id, run.run_id, decision=decision, avg_score=avg, weighted_score=weighted,
        )
        await self._notify_completion(deal_input, decision, avg)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _run_persona(
        self,
        deal_id: str,
        run: RunRecord,
        persona_id: str,
        persona_type: PersonaType,
        contract: Contract,
        stage_input: dict[str, Any],
        specialization: str | None = None,
    ) -> tuple[PersonaRecord, ValidationResult[Any]]:
        record = PersonaRecord(
            persona_id=persona_id,
            persona_type=persona_type,
            specialization=specialization,
            status=PersonaStatus.RUNNING,
            started_at=utc_now_iso(),
        )
        await self.persistence.save_persona(deal_id, run.run_id, record)
        await self._emit(deal_id, EventType.NODE_STARTED, {
            "node_id": persona_id,
            "role": persona_type.value,
            "specialization": specialization,
        })

        async def producer(repair_context: str | None = None) -> Any:
            try:
                return await asyncio.wait_for(
                    self.runner.invoke(persona_id, stage_input, repair_context),
                    timeout=self.settings.LONG_TIMEOUT_S,
                )
            except asyncio.TimeoutError as e:
                raise ProviderTimeoutError(
                    "Reasoning call timed out",
                    {"provider": "reasoning", "agent_id": persona_id,
                     "timeout_s": self.settings.LONG_TIMEOUT_S},
                ) from e

        loop = asyncio.get_running_loop()
        started = loop.time()
        with log_context(persona=persona_id):
            result = await produce_validated(
                contract, producer, max_retries=self.settings.VALIDATION_MAX_RETRIES,
            )

        record.latency_ms = int((loop.time() - started) * 1000)
        record.retry_count = result.retry_count
        record.validation_ok = result.ok
        record.completed_at = utc_now_iso()
        if result.ok:
            record.status = PersonaStatus.DONE
            record.output = result.unwrap().model_dump(mode="json")
        else:
            record.status = PersonaStatus.DEGRADED
            record.error = result.errors
            logger.warning("Persona degraded", persona=persona_id, attempts=result.attempts)
            await self._emit(deal_id, EventType.ERROR, {
                "node_id": persona_id,
                "schema": contract.name,
                "errors": result.errors,
                "attempts": result.attempts,
            })
        await self.persistence.save_persona(deal_id, run.run_id, record)
        return record, result

    async def _emit(
        self,
        deal_id: str,
        type: EventType,
        payload: dict[str, Any],
        public_payload: dict[str, Any] | None = None,
        swallow: bool = False,
    ) -> None:
        try:
            await self.persistence.append(deal_id, type, payload, public_payload)
        except Exception as e:
            if not swallow:
                raise
            logger.error("Failed to record event", event_type=type.value, error=str(e))

    async def _state(self, deal_id: str) -> DealState:
        state = await self.persistence.snapshot(deal_id)
        if state is None:
            raise DealNotFoundError("Deal not found", {"deal_id": deal_id})
        return state

    def _specializations(self, deal_input: DealInput) -> list[str]:
        return deal_input.analyst_specializations(self.settings.DEFAULT_ANALYSTS)

    async def _notify_completion(self, deal_input: DealInput, decision: str, avg: int) -> None:
        if self.notifier is None:
            return
        subject = f"Deal evaluation complete: {deal_input.name}"
        body = f"Decision: {decision}\nAverage rubric score: {avg}/100"
        try:
            await asyncio.wait_for(
                self.notifier.notify(subject, body), timeout=self.settings.SHORT_TIMEOUT_S
            )
        except Exception as e:
            logger.warning("Completion notification failed", error=str(e))


__all__ = ["DealPipeline", "PipelineResult"]
