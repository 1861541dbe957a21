"""
Tests for the deal evaluation pipeline.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from conftest import (
    FakeRunner,
    FakeSearchProvider,
    RecordingSink,
    make_analyst_output,
    make_partner_output,
)
from dealbot.broadcast import LiveStreamBroadcaster, SubscriberRegistry
from dealbot.config import Settings
from dealbot.coordinator import DealPipeline
from dealbot.coordinator.stages import DEGRADED_GATING_QUESTIONS
from dealbot.exceptions import DealNotFoundError
from dealbot.persistence import PersistenceManager
from dealbot.state import DealInput
from dealbot.types import Decision, EventType, PersonaStatus, RunStatus

ALL_UNITS = {"evidence", "analyst_1", "analyst_2", "associate", "partner"}


class FakeNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = fail

    async def notify(self, subject: str, body: str) -> None:
        if self.fail:
            raise RuntimeError("webhook down")
        self.sent.append((subject, body))


@pytest.fixture
def make_pipeline(
    persistence: PersistenceManager, mock_settings: Settings
) -> Callable[..., DealPipeline]:
    def factory(runner: Any, providers: tuple = (), **kwargs: Any) -> DealPipeline:
        kwargs.setdefault("settings", mock_settings)
        return DealPipeline(persistence, runner, providers=providers, **kwargs)

    return factory


class TestFullRun:
    """Test an uninterrupted run with well-behaved collaborators."""

    @pytest.mark.asyncio
    async def test_run_completes(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        runner: FakeRunner,
        search_provider: FakeSearchProvider,
        deal_input: DealInput,
    ) -> None:
        pipeline = make_pipeline(runner, (search_provider,))
        deal_id = await pipeline.create_deal(deal_input)

        result = await pipeline.run_pipeline(deal_id)

        assert result is not None
        assert result.status == RunStatus.COMPLETE
        assert result.decision == "PROCEED"
        assert result.avg_score == 60
        assert result.weighted_score == 61.8
        assert result.degraded == []
        assert set(persistence.read_markers(deal_id, result.run_id)) == ALL_UNITS
        assert sorted(runner.agent_ids) == ["analyst_1", "analyst_2", "associate", "partner"]

        personas = persistence.load_personas(deal_id, result.run_id)
        assert {p.persona_id: p.status for p in personas} == {
            "analyst_1": PersonaStatus.DONE,
            "analyst_2": PersonaStatus.DONE,
            "associate": PersonaStatus.DONE,
            "partner": PersonaStatus.DONE,
        }
        assert all(p.latency_ms is not None for p in personas)

        run = persistence.get_run(deal_id, result.run_id)
        assert run.status == RunStatus.COMPLETE
        assert run.duration_ms is not None

    @pytest.mark.asyncio
    async def test_state_after_run(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        runner: FakeRunner,
        search_provider: FakeSearchProvider,
        deal_input: DealInput,
    ) -> None:
        pipeline = make_pipeline(runner, (search_provider,))
        deal_id = await pipeline.create_deal(deal_input)
        await pipeline.run_pipeline(deal_id)

        state = await persistence.snapshot(deal_id)
        assert state.company_profile == {"name": "Acme Robotics", "employees": 42}
        assert len(state.evidence) > 0
        assert len({e.evidence_id for e in state.evidence}) == len(state.evidence)
        assert [h.id for h in state.hypotheses] == ["h1", "h2"]
        assert state.rubric["market"].score == 80
        assert state.decision_gate.decision == Decision.PROCEED
        assert state.decision_gate.gating_questions == ["Churn?", "Pricing power?", "Hiring plan?"]
        assert await persistence.verify_snapshot(deal_id)

    @pytest.mark.asyncio
    async def test_event_sequence(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        runner: FakeRunner,
        search_provider: FakeSearchProvider,
        deal_input: DealInput,
    ) -> None:
        pipeline = make_pipeline(runner, (search_provider,))
        deal_id = await pipeline.create_deal(deal_input)
        result = await pipeline.run_pipeline(deal_id)

        events = persistence.events(deal_id)
        assert events[0].type == EventType.NODE_STARTED
        assert events[0].payload["node_id"] == "orchestrator"
        assert events[-1].type == EventType.NODE_DONE
        assert events[-1].payload["node_id"] == "orchestrator"
        assert all(e.run_id == result.run_id for e in events)

        types = [e.type for e in events]
        assert EventType.COMPANY_PROFILE_ADDED in types
        assert types.count(EventType.DECISION_UPDATED) == 1
        assert types.index(EventType.DECISION_UPDATED) > types.index(EventType.STATE_PATCH)
        done_nodes = [e.payload["node_id"] for e in events if e.type == EventType.NODE_DONE]
        assert done_nodes[-3:] == ["associate", "partner", "orchestrator"]

    @pytest.mark.asyncio
    async def test_stage_inputs(
        self,
        make_pipeline: Callable[..., DealPipeline],
        runner: FakeRunner,
        search_provider: FakeSearchProvider,
        deal_input: DealInput,
    ) -> None:
        pipeline = make_pipeline(runner, (search_provider,))
        deal_id = await pipeline.create_deal(deal_input)
        await pipeline.run_pipeline(deal_id)

        analyst_1 = runner.calls_for("analyst_1")[0][1]
        analyst_2 = runner.calls_for("analyst_2")[0][1]
        assert analyst_1["specialization"] == "market"
        assert analyst_2["specialization"] == "team"
        assert analyst_1["investor_profile"]["firm_type"] == "early_vc"
        assert analyst_1["deal_config"] == {"stage": "seed", "geo": "US", "sector": "robotics"}
        assert analyst_1["evidence"]

        associate = runner.calls_for("associate")[0][1]
        assert set(associate["analyst_outputs"]) == {"analyst_1", "analyst_2"}

        partner = runner.calls_for("partner")[0][1]
        assert [h["id"] for h in partner["hypotheses"]] == ["h1", "h2"]
        assert all(c[2] is None for c in runner.calls)

    @pytest.mark.asyncio
    async def test_unknowns_resolved_into_evidence(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        runner: FakeRunner,
        search_provider: FakeSearchProvider,
        deal_input: DealInput,
    ) -> None:
        pipeline = make_pipeline(runner, (search_provider,))
        deal_id = await pipeline.create_deal(deal_input)
        await pipeline.run_pipeline(deal_id)

        queries = [q for q, _ in search_provider.queries]
        assert "What is the market churn?" in queries
        state = await persistence.snapshot(deal_id)
        assert any("What is the market churn?" in (e.title or "") for e in state.evidence)

    @pytest.mark.asyncio
    async def test_default_analysts_used(
        self,
        make_pipeline: Callable[..., DealPipeline],
        runner: FakeRunner,
    ) -> None:
        pipeline = make_pipeline(runner)
        deal_id = await pipeline.create_deal(DealInput(name="Bare Co"))
        result = await pipeline.run_pipeline(deal_id)

        assert result.status == RunStatus.COMPLETE
        assert runner.calls_for("analyst_1")[0][1]["specialization"] == "market"
        assert runner.calls_for("analyst_2")[0][1]["specialization"] == "competition"
        assert runner.calls_for("analyst_3") == []


class TestDegradation:
    """Test that persona failures degrade rather than abort."""

    @pytest.mark.asyncio
    async def test_invalid_analyst_degraded(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        deal_input: DealInput,
    ) -> None:
        runner = FakeRunner({"analyst_1": [{"facts": "not a list"}]})
        pipeline = make_pipeline(runner)
        deal_id = await pipeline.create_deal(deal_input)

        result = await pipeline.run_pipeline(deal_id)

        assert result.status == RunStatus.COMPLETE
        assert result.degraded == ["analyst_1"]
        calls = runner.calls_for("analyst_1")
        assert len(calls) == 2
        assert calls[0][2] is None
        assert "AnalystOutput" in calls[1][2]

        personas = {p.persona_id: p for p in persistence.load_personas(deal_id, result.run_id)}
        assert personas["analyst_1"].status == PersonaStatus.DEGRADED
        assert personas["analyst_1"].retry_count == 1
        assert personas["analyst_1"].output is None
        assert personas["analyst_1"].error

        associate_input = runner.calls_for("associate")[0][1]
        assert set(associate_input["analyst_outputs"]) == {"analyst_2"}

        errors = [e for e in persistence.events(deal_id) if e.type == EventType.ERROR]
        assert [e.payload["node_id"] for e in errors] == ["analyst_1"]

    @pytest.mark.asyncio
    async def test_runner_exception_degrades(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        deal_input: DealInput,
    ) -> None:
        def explode(agent_id: str, stage_input: dict, repair: str | None) -> Any:
            raise ConnectionError("network lost")

        runner = FakeRunner({"associate": explode})
        pipeline = make_pipeline(runner)
        deal_id = await pipeline.create_deal(deal_input)

        result = await pipeline.run_pipeline(deal_id)

        assert result.status == RunStatus.COMPLETE
        assert result.degraded == ["associate"]
        assert len(runner.calls_for("partner")) == 1
        state = await persistence.snapshot(deal_id)
        assert state.hypotheses == []

    @pytest.mark.asyncio
    async def test_invalid_partner_records_degraded_gate(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        deal_input: DealInput,
    ) -> None:
        runner = FakeRunner({"partner": [{"rubric": "???"}]})
        pipeline = make_pipeline(runner)
        deal_id = await pipeline.create_deal(deal_input)

        result = await pipeline.run_pipeline(deal_id)

        assert result.status == RunStatus.COMPLETE
        assert result.decision == "PROCEED_IF"
        assert result.avg_score == 0
        state = await persistence.snapshot(deal_id)
        assert state.decision_gate.gating_questions == DEGRADED_GATING_QUESTIONS
        assert state.decision_gate.evidence_checklist[0].type.value == "ASSUMPTION"

    @pytest.mark.asyncio
    async def test_non_finite_partner_score_degrades_persona(
        self,
        make_pipeline: Callable[..., DealPipeline],
        deal_input: DealInput,
    ) -> None:
        """A NaN score degrades the partner; the run still completes."""
        bad = make_partner_output()
        bad["rubric"]["moat"]["score"] = float("nan")
        runner = FakeRunner({"partner": [bad]})
        pipeline = make_pipeline(runner)
        deal_id = await pipeline.create_deal(deal_input)

        result = await pipeline.run_pipeline(deal_id)

        assert result.status == RunStatus.COMPLETE
        assert "partner" in result.degraded
        assert result.decision == "PROCEED_IF"
        assert len(runner.calls_for("partner")) == 2

    @pytest.mark.asyncio
    async def test_partner_timeout_degrades(
        self,
        make_pipeline: Callable[..., DealPipeline],
        mock_settings: Settings,
        deal_input: DealInput,
    ) -> None:
        async def hang(agent_id: str, stage_input: dict, repair: str | None) -> Any:
            await asyncio.sleep(30)

        runner = FakeRunner({"partner": hang})
        fast = mock_settings.model_copy(update={"LONG_TIMEOUT_S": 0.05})
        pipeline = make_pipeline(runner, settings=fast)
        deal_id = await pipeline.create_deal(deal_input)

        result = await pipeline.run_pipeline(deal_id)

        assert result.status == RunStatus.COMPLETE
        assert "partner" in result.degraded
        assert len(runner.calls_for("partner")) == 2
        partner = next(
            p for p in pipeline.persistence.load_personas(deal_id, result.run_id)
            if p.persona_id == "partner"
        )
        assert "ProviderTimeoutError" in partner.error

    @pytest.mark.asyncio
    async def test_unsupported_evidence_weakens_decision(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        deal_input: DealInput,
    ) -> None:
        output = make_partner_output("PROCEED")
        output["decision_gate"]["evidence_checklist"] = [
            {"q": 1, "item": "Claimed retention", "type": "EVIDENCE", "evidence_ids": []},
            {"q": 2, "item": "Claimed pricing", "type": "EVIDENCE", "evidence_ids": []},
        ]
        runner = FakeRunner({"partner": [output]})
        pipeline = make_pipeline(runner)
        deal_id = await pipeline.create_deal(deal_input)

        result = await pipeline.run_pipeline(deal_id)

        assert result.decision == "PROCEED_IF"
        state = await persistence.snapshot(deal_id)
        assert {i.type.value for i in state.decision_gate.evidence_checklist} == {"ASSUMPTION"}


class TestEvidenceGathering:
    """Test bounded, failure-tolerant evidence lookups."""

    @pytest.mark.asyncio
    async def test_no_providers_uses_fallback(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        runner: FakeRunner,
        deal_input: DealInput,
    ) -> None:
        pipeline = make_pipeline(runner)
        deal_id = await pipeline.create_deal(deal_input)
        await pipeline.run_pipeline(deal_id)

        state = await persistence.snapshot(deal_id)
        assert [e.title for e in state.evidence] == ["Basic info"]
        assert state.evidence[0].source == "system"

    @pytest.mark.asyncio
    async def test_failing_provider_uses_fallback(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        runner: FakeRunner,
        deal_input: DealInput,
    ) -> None:
        pipeline = make_pipeline(runner, (FakeSearchProvider(fail=True),))
        deal_id = await pipeline.create_deal(deal_input)
        result = await pipeline.run_pipeline(deal_id)

        assert result.status == RunStatus.COMPLETE
        state = await persistence.snapshot(deal_id)
        assert [e.title for e in state.evidence] == ["Basic info"]

    @pytest.mark.asyncio
    async def test_hanging_provider_times_out(
        self,
        make_pipeline: Callable[..., DealPipeline],
        mock_settings: Settings,
        runner: FakeRunner,
        deal_input: DealInput,
    ) -> None:
        fast = mock_settings.model_copy(update={"SHORT_TIMEOUT_S": 0.05})
        pipeline = make_pipeline(runner, (FakeSearchProvider(delay=30),), settings=fast)
        deal_id = await pipeline.create_deal(deal_input)

        result = await asyncio.wait_for(pipeline.run_pipeline(deal_id), timeout=10)
        assert result.status == RunStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_provider_concurrency_capped(
        self,
        make_pipeline: Callable[..., DealPipeline],
        runner: FakeRunner,
        deal_input: DealInput,
    ) -> None:
        provider = FakeSearchProvider(delay=0.02)
        pipeline = make_pipeline(runner, (provider,))
        deal_id = await pipeline.create_deal(deal_input)
        await pipeline.run_pipeline(deal_id)

        assert len(provider.queries) >= 5
        assert provider.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_intel_categories_scanned(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        runner: FakeRunner,
        search_provider: FakeSearchProvider,
        deal_input: DealInput,
    ) -> None:
        pipeline = make_pipeline(runner, (search_provider,))
        deal_id = await pipeline.create_deal(deal_input)
        await pipeline.run_pipeline(deal_id)

        categories = {o.category for _, o in search_provider.queries if o and o.category}
        assert categories == {"funding", "team", "competitors", "news"}
        updates = [e for e in persistence.events(deal_id) if e.type == EventType.LIVE_UPDATE]
        assert any(set(u.payload.get("intel_categories") or []) == categories for u in updates)


class TestLifecycle:
    """Test idempotence, resumption, cancellation and reruns."""

    @pytest.mark.asyncio
    async def test_complete_run_is_noop(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        runner: FakeRunner,
        deal_input: DealInput,
    ) -> None:
        pipeline = make_pipeline(runner)
        deal_id = await pipeline.create_deal(deal_input)
        first = await pipeline.run_pipeline(deal_id)
        calls = len(runner.calls)
        events = len(persistence.events(deal_id))

        second = await pipeline.run_pipeline(deal_id)

        assert second.run_id == first.run_id
        assert second.status == RunStatus.COMPLETE
        assert len(runner.calls) == calls
        assert len(persistence.events(deal_id)) == events

    @pytest.mark.asyncio
    async def test_unknown_deal_raises_before_any_stage(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        runner: FakeRunner,
    ) -> None:
        pipeline = make_pipeline(runner)
        with pytest.raises(DealNotFoundError):
            await pipeline.run_pipeline("deal_missing")
        assert runner.calls == []
        assert persistence.list_runs("deal_missing") == []

    @pytest.mark.asyncio
    async def test_errored_run_resumes_from_first_incomplete_unit(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        runner: FakeRunner,
        deal_input: DealInput,
    ) -> None:
        pipeline = make_pipeline(runner)
        deal_id = await pipeline.create_deal(deal_input)
        run = await persistence.start_run(deal_id)
        for _ in range(3):
            await pipeline.run_next_unit(deal_id)
        await persistence.fail_run(deal_id, run.run_id, "process died")

        result = await pipeline.run_pipeline(deal_id)

        assert result.run_id == run.run_id
        assert result.status == RunStatus.COMPLETE
        assert result.units_run == ["associate", "partner"]
        assert len(runner.calls_for("analyst_1")) == 1
        assert len(runner.calls_for("analyst_2")) == 1

    @pytest.mark.asyncio
    async def test_new_process_resumes_running_run(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        runner: FakeRunner,
        deal_input: DealInput,
    ) -> None:
        first = make_pipeline(runner)
        deal_id = await first.create_deal(deal_input)
        await persistence.start_run(deal_id)
        await first.run_next_unit(deal_id)

        second = make_pipeline(runner)
        result = await second.run_pipeline(deal_id)

        assert result.status == RunStatus.COMPLETE
        assert "evidence" not in result.units_run
        starts = [
            e for e in persistence.events(deal_id)
            if e.type == EventType.NODE_STARTED and e.payload["node_id"] == "orchestrator"
        ]
        assert len(starts) == 1

    @pytest.mark.asyncio
    async def test_unexpected_failure_marks_run_error(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        runner: FakeRunner,
        deal_input: DealInput,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        pipeline = make_pipeline(runner)
        deal_id = await pipeline.create_deal(deal_input)

        async def broken(deal_input: DealInput) -> Any:
            raise RuntimeError("gatherer bug")

        monkeypatch.setattr(pipeline.gatherer, "gather_seed", broken)
        result = await pipeline.run_pipeline(deal_id)

        assert result.status == RunStatus.ERROR
        run = persistence.get_run(deal_id, result.run_id)
        assert run.error == "gatherer bug"
        assert persistence.events(deal_id)[-1].type == EventType.ERROR
        assert not pipeline.is_active(deal_id)

    @pytest.mark.asyncio
    async def test_cancel_at_stage_boundary(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        deal_input: DealInput,
    ) -> None:
        runner = FakeRunner()
        pipeline = make_pipeline(runner)
        deal_id = await pipeline.create_deal(deal_input)

        async def cancel_then_answer(agent_id: str, stage_input: dict, repair: str | None) -> Any:
            await pipeline.cancel(deal_id)
            return make_analyst_output()

        runner.responses["analyst"] = cancel_then_answer
        result = await pipeline.run_pipeline(deal_id)

        assert result.status == RunStatus.CANCELLED
        assert runner.calls_for("associate") == []
        assert runner.calls_for("partner") == []
        markers = persistence.read_markers(deal_id, result.run_id)
        assert {"analyst_1", "analyst_2"} <= set(markers)

        again = await pipeline.run_pipeline(deal_id)
        assert again.status == RunStatus.CANCELLED
        assert runner.calls_for("associate") == []

    @pytest.mark.asyncio
    async def test_cancel_without_live_driver(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        runner: FakeRunner,
        deal_input: DealInput,
    ) -> None:
        pipeline = make_pipeline(runner)
        deal_id = await pipeline.create_deal(deal_input)
        assert not await pipeline.cancel(deal_id)

        run = await persistence.start_run(deal_id)
        assert await pipeline.cancel(deal_id)
        assert persistence.get_run(deal_id, run.run_id).status == RunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_rerun_archives_previous(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        runner: FakeRunner,
        deal_input: DealInput,
    ) -> None:
        pipeline = make_pipeline(runner)
        deal_id = await pipeline.create_deal(deal_input)
        first = await pipeline.run_pipeline(deal_id)

        second = await pipeline.rerun(deal_id)

        assert second.run_id != first.run_id
        assert second.status == RunStatus.COMPLETE
        assert [r.seq for r in persistence.list_runs(deal_id)] == [1, 2]
        assert persistence.store.list_archives(deal_id) == ["run_001"]
        assert len(runner.calls_for("partner")) == 2
        archived = persistence.get_archived_snapshot(deal_id, "run_001")
        assert archived.decision_gate.decision == Decision.PROCEED

    @pytest.mark.asyncio
    async def test_concurrent_invocations_drive_once(
        self,
        make_pipeline: Callable[..., DealPipeline],
        runner: FakeRunner,
        deal_input: DealInput,
    ) -> None:
        pipeline = make_pipeline(runner)
        deal_id = await pipeline.create_deal(deal_input)

        results = await asyncio.gather(pipeline.run_pipeline(deal_id), pipeline.run_pipeline(deal_id))

        assert sum(r is None for r in results) == 1
        assert len(runner.calls_for("partner")) == 1


class TestCollaborators:
    """Test broadcasting and notification from a run."""

    @pytest.mark.asyncio
    async def test_subscriber_sees_trimmed_stream(
        self,
        make_pipeline: Callable[..., DealPipeline],
        persistence: PersistenceManager,
        runner: FakeRunner,
        search_provider: FakeSearchProvider,
        deal_input: DealInput,
    ) -> None:
        broadcaster = LiveStreamBroadcaster(SubscriberRegistry())
        pipeline = make_pipeline(runner, (search_provider,), broadcaster=broadcaster)
        deal_id = await pipeline.create_deal(deal_input)
        sink = RecordingSink()
        broadcaster.subscribe(deal_id, sink)

        await pipeline.run_pipeline(deal_id)

        logged = persistence.events(deal_id)
        assert sink.types == [e.type.value for e in logged]
        evidence_messages = [m for m in sink.messages if m["type"] == "EVIDENCE_ADDED"]
        assert evidence_messages
        for message in evidence_messages:
            assert "items" not in message["payload"]
            assert message["payload"]["evidence_items_count"] > 0
        decision = next(m for m in sink.messages if m["type"] == "DECISION_UPDATED")
        assert set(decision["payload"]) == {"decision", "gating_questions"}

    @pytest.mark.asyncio
    async def test_completion_notification(
        self,
        make_pipeline: Callable[..., DealPipeline],
        runner: FakeRunner,
        deal_input: DealInput,
    ) -> None:
        notifier = FakeNotifier()
        pipeline = make_pipeline(runner, notifier=notifier)
        deal_id = await pipeline.create_deal(deal_input)
        await pipeline.run_pipeline(deal_id)

        assert len(notifier.sent) == 1
        subject, body = notifier.sent[0]
        assert "Acme Robotics" in subject
        assert "PROCEED" in body

    @pytest.mark.asyncio
    async def test_notification_failure_ignored(
        self,
        make_pipeline: Callable[..., DealPipeline],
        runner: FakeRunner,
        deal_input: DealInput,
    ) -> None:
        pipeline = make_pipeline(runner, notifier=FakeNotifier(fail=True))
        deal_id = await pipeline.create_deal(deal_input)
        result = await pipeline.run_pipeline(deal_id)
        assert result.status == RunStatus.COMPLETE
