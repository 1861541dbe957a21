"""
Pure state reducer.

``reduce_state`` folds one event into a DealState and returns a new state.
It performs no I/O, reads no clock and draws no randomness, so replaying a
log always reproduces the same state.
"""

from __future__ import annotations

from typing import Any, Iterable

from dealbot.state import DealState, DecisionGate, EvidenceItem, Hypothesis, RubricDimension
from dealbot.types import RUBRIC_DIMENSIONS, DealEvent, EventType


def _upsert_evidence(
    existing: list[EvidenceItem], items: list[dict[str, Any]]
) -> list[EvidenceItem]:
    merged = list(existing)
    position = {item.evidence_id: i for i, item in enumerate(merged)}
    for raw in items:
        item = EvidenceItem.model_validate(raw)
        idx = position.get(item.evidence_id)
        if idx is None:
            position[item.evidence_id] = len(merged)
            merged.append(item)
        else:
            # Re-ingestion refreshes content but keeps position and source.
            merged[idx] = merged[idx].model_copy(
                update={"snippet": item.snippet, "title": item.title, "url": item.url}
            )
    return merged


def _merge_rubric(
    current: dict[str, RubricDimension], patch: dict[str, Any]
) -> dict[str, RubricDimension]:
    merged = dict(current)
    for dim, value in patch.items():
        if dim in RUBRIC_DIMENSIONS and value is not None:
            merged[dim] = RubricDimension.model_validate(value)
    return merged


def _merge_decision(current: DecisionGate, payload: dict[str, Any]) -> DecisionGate:
    return DecisionGate.model_validate({
        "decision": payload.get("decision") or current.decision,
        "gating_questions": payload.get("gating_questions") or current.gating_questions,
        "evidence_checklist": (
            payload["evidence_checklist"]
            if payload.get("evidence_checklist") is not None
            else [item.model_dump() for item in current.evidence_checklist]
        ),
    })


def reduce_state(state: DealState, event: DealEvent) -> DealState:
    """Apply one event to ``state``.

    Args:
        state: Current state. Not modified.
        event: Event to fold in.

    Returns:
        The next state. Audit-only event types return ``state`` itself.
    """
    payload = event.payload

    if event.type == EventType.EVIDENCE_ADDED:
        items = payload.get("items") or []
        if not items:
            return state
        return state.model_copy(update={"evidence": _upsert_evidence(state.evidence, items)})

    if event.type == EventType.COMPANY_PROFILE_ADDED:
        if not payload.get("profile"):
            return state
        return state.model_copy(update={"company_profile": payload.get("profile")})

    if event.type == EventType.DECISION_UPDATED:
        return state.model_copy(
            update={"decision_gate": _merge_decision(state.decision_gate, payload)}
        )

    if event.type == EventType.STATE_PATCH:
        update: dict[str, Any] = {}
        if payload.get("hypotheses") is not None:
            update["hypotheses"] = [Hypothesis.model_validate(h) for h in payload["hypotheses"]]
        if isinstance(payload.get("rubric"), dict):
            update["rubric"] = _merge_rubric(state.rubric, payload["rubric"])
        return state.model_copy(update=update) if update else state

    return state


def replay(initial: DealState, events: Iterable[DealEvent]) -> DealState:
    """Fold ``events`` over ``initial`` in order."""
    state = initial
    for event in events:
        state = reduce_state(state, event)
    return state
