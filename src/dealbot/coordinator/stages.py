"""
Stage plan and stage input builders.

A run is a fixed sequence of units: ``evidence``, one ``analyst_i`` per
specialization, ``associate`` and ``partner``. Inputs handed to reasoning
units are built from the current DealState only, so a resumed run rebuilds
exactly what an uninterrupted run would have seen.
"""

from __future__ import annotations

from typing import Any

from dealbot.profiles import FundProfile
from dealbot.state import ChecklistItem, DealState, DecisionGate, EvidenceItem
from dealbot.types import ChecklistType, Decision

EVIDENCE_UNIT = "evidence"
ASSOCIATE_UNIT = "associate"
PARTNER_UNIT = "partner"
ORCHESTRATOR_NODE = "orchestrator"

MAX_PROMPT_EVIDENCE = 25
MAX_SNIPPET_CHARS = 400

DEGRADED_GATING_QUESTIONS = [
    "Validation failed, manual review needed",
    "Verify all data sources",
    "Reassess after fix",
]


def analyst_id(index: int) -> str:
    """Persona ID of the ``index``-th analyst, counting from zero."""
    return f"analyst_{index + 1}"


def plan_units(analyst_count: int) -> list[str]:
    """Ordered unit IDs for a run with ``analyst_count`` analysts."""
    return [
        EVIDENCE_UNIT,
        *(analyst_id(i) for i in range(analyst_count)),
        ASSOCIATE_UNIT,
        PARTNER_UNIT,
    ]


def compact_evidence(evidence: list[EvidenceItem]) -> list[dict[str, Any]]:
    """Bounded evidence digest for reasoning inputs."""
    return [
        {
            "id": item.evidence_id,
            "source": item.source,
            "title": item.title,
            "text": item.snippet[:MAX_SNIPPET_CHARS],
        }
        for item in evidence[:MAX_PROMPT_EVIDENCE]
    ]


def _deal_context(state: DealState, profile: FundProfile) -> dict[str, Any]:
    deal = state.deal_input
    return {
        "deal_input": deal.model_dump(mode="json", exclude={"persona_config"}),
        "deal_config": deal.persona_config.deal_config,
        "fund_config": deal.fund_config,
        "investor_profile": profile.to_dict(),
        "company_profile": state.company_profile,
        "evidence": compact_evidence(state.evidence),
    }


def build_analyst_input(
    state: DealState, specialization: str, profile: FundProfile
) -> dict[str, Any]:
    return {
        **_deal_context(state, profile),
        "role": "analyst",
        "specialization": specialization,
    }


def build_associate_input(
    state: DealState,
    analyst_outputs: dict[str, dict[str, Any]],
    profile: FundProfile,
) -> dict[str, Any]:
    return {
        **_deal_context(state, profile),
        "role": "associate",
        "analyst_outputs": analyst_outputs,
    }


def build_partner_input(
    state: DealState,
    associate_output: dict[str, Any] | None,
    profile: FundProfile,
) -> dict[str, Any]:
    return {
        **_deal_context(state, profile),
        "role": "partner",
        "hypotheses": [h.model_dump(mode="json") for h in state.hypotheses],
        "associate_output": associate_output,
    }


def collect_unknowns(analyst_outputs: dict[str, dict[str, Any]], limit: int) -> list[str]:
    """First ``limit`` distinct unknown questions across analysts, in analyst order."""
    questions: list[str] = []
    for persona_id in sorted(analyst_outputs, key=_analyst_order):
        for unknown in analyst_outputs[persona_id].get("unknowns") or []:
            question = (unknown.get("question") or "").strip()
            if question and question not in questions:
                questions.append(question)
    return questions[:limit]


def _analyst_order(persona_id: str) -> int:
    try:
        return int(persona_id.rsplit("_", 1)[-1])
    except ValueError:
        return 0


def degraded_gate() -> DecisionGate:
    """Gate recorded when the partner cannot produce a valid output."""
    return DecisionGate(
        decision=Decision.PROCEED_IF,
        gating_questions=list(DEGRADED_GATING_QUESTIONS),
        evidence_checklist=[
            ChecklistItem(
                q=1,
                item="Partner output failed validation; decision requires manual review",
                type=ChecklistType.ASSUMPTION,
                evidence_ids=[],
            )
        ],
    )


def evidence_payloads(
    items: list[EvidenceItem],
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Full and trimmed payloads for an EVIDENCE_ADDED event."""
    last_id = items[-1].evidence_id if items else None
    full = {
        "items": [item.model_dump(mode="json") for item in items],
        "evidence_items_count": len(items),
        "last_evidence_id": last_id,
    }
    public = {"evidence_items_count": len(items), "last_evidence_id": last_id}
    return full, public


def decision_payloads(gate: DecisionGate) -> tuple[dict[str, Any], dict[str, Any]]:
    """Full and trimmed payloads for a DECISION_UPDATED event."""
    full = gate.model_dump(mode="json")
    public = {"decision": full["decision"], "gating_questions": full["gating_questions"]}
    return full, public
