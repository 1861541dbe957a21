"""
Stage output contracts, coercion and evidence enforcement.

Reasoning units return loosely-shaped JSON. Each contract pairs a strict
pydantic model with a coercer that normalizes the common near-misses
(decision aliases, over-long lists, out-of-range numbers) before validation.
Validation itself lives in ``dealbot.gate``.
"""

from __future__ import annotations

import copy
import math
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Any, Callable, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from dealbot.state import DecisionGate, Hypothesis, NonEmptyStr, RubricDimension
from dealbot.types import RUBRIC_DIMENSIONS, ChecklistType, Decision

MAX_FACTS = 12
MAX_CONTRADICTIONS = 8
MAX_UNKNOWNS = 8
MAX_HYPOTHESES = 6
MAX_CHECKLIST = 15
MAX_REASONS = 4
GATING_QUESTION_COUNT = 3
GATING_QUESTION_FILLER = "Additional due diligence required"

DECISION_ALIASES: dict[str, Decision] = {
    "KILL": Decision.KILL,
    "PASS": Decision.KILL,
    "NO": Decision.KILL,
    "REJECT": Decision.KILL,
    "PROCEED": Decision.PROCEED,
    "YES": Decision.PROCEED,
    "STRONG_YES": Decision.PROCEED,
    "APPROVE": Decision.PROCEED,
    "PROCEED_IF": Decision.PROCEED_IF,
    "CONDITIONAL": Decision.PROCEED_IF,
    "MAYBE": Decision.PROCEED_IF,
}

_DECISION_SEPARATORS = re.compile(r"[\s\-]+")
_DECISION_STRIP = re.compile(r"[^A-Z_]")


# ---------------------------------------------------------------------------
# Analyst
# ---------------------------------------------------------------------------


class _Contract(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Fact(_Contract):
    text: NonEmptyStr
    evidence_ids: list[str]


class Contradiction(_Contract):
    text: NonEmptyStr
    evidence_ids: list[str]


class Unknown(_Contract):
    question: NonEmptyStr
    why: NonEmptyStr


class EvidenceRequest(_Contract):
    query: NonEmptyStr
    reason: NonEmptyStr


class AnalystOutput(_Contract):
    """Findings from one specialist analyst."""

    kind: Literal["analyst"] = "analyst"
    facts: list[Fact] = Field(..., max_length=MAX_FACTS)
    contradictions: list[Contradiction] = Field(..., max_length=MAX_CONTRADICTIONS)
    unknowns: list[Unknown] = Field(..., max_length=MAX_UNKNOWNS)
    evidence_requests: list[EvidenceRequest]


# ---------------------------------------------------------------------------
# Associate
# ---------------------------------------------------------------------------


class HypothesisOut(Hypothesis):
    model_config = ConfigDict(extra="ignore")

    id: NonEmptyStr
    text: NonEmptyStr
    support_evidence_ids: list[str]
    risks: list[str]


class TopUnknown(_Contract):
    question: NonEmptyStr
    why_it_matters: NonEmptyStr


class AnalystRequest(_Contract):
    specialization: NonEmptyStr
    question: NonEmptyStr


class AssociateOutput(_Contract):
    """Synthesis of all analyst findings into testable hypotheses."""

    kind: Literal["associate"] = "associate"
    hypotheses: list[HypothesisOut] = Field(..., max_length=MAX_HYPOTHESES)
    top_unknowns: list[TopUnknown]
    requests_to_analysts: list[AnalystRequest]


# ---------------------------------------------------------------------------
# Partner
# ---------------------------------------------------------------------------


class PartnerRubric(_Contract):
    market: RubricDimension
    moat: RubricDimension
    why_now: RubricDimension
    execution: RubricDimension
    deal_fit: RubricDimension


class PartnerDecisionGate(DecisionGate):
    model_config = ConfigDict(extra="ignore")

    decision: Decision


class PartnerOutput(_Contract):
    """Rubric scores and the gated decision."""

    kind: Literal["partner"] = "partner"
    rubric: PartnerRubric
    decision_gate: PartnerDecisionGate


StageOutput = Annotated[
    Union[AnalystOutput, AssociateOutput, PartnerOutput],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    """Finite int or float. NaN and infinities decode from lenient JSON."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def normalize_decision(value: Any) -> Decision:
    """Map a free-form decision string onto the three canonical values.

    Unknown values map to PROCEED_IF.
    """
    if isinstance(value, Decision):
        return value
    key = _DECISION_SEPARATORS.sub("_", str(value).strip().upper())
    key = _DECISION_STRIP.sub("", key)
    return DECISION_ALIASES.get(key, Decision.PROCEED_IF)


def normalize_gating_questions(questions: list[Any]) -> list[str]:
    """Truncate or pad to exactly three non-blank questions."""
    cleaned = [q for q in questions if isinstance(q, str) and q.strip()]
    cleaned = cleaned[:GATING_QUESTION_COUNT]
    while len(cleaned) < GATING_QUESTION_COUNT:
        cleaned.append(GATING_QUESTION_FILLER)
    return cleaned


def _coerce_checklist_item(item: Any) -> Any:
    if not isinstance(item, dict):
        return item
    out = dict(item)
    out["q"] = max(1, min(3, round(item["q"]))) if _is_number(item.get("q")) else 1
    out["evidence_ids"] = item["evidence_ids"] if isinstance(item.get("evidence_ids"), list) else []
    if isinstance(item.get("type"), str):
        out["type"] = item["type"].strip().upper()
    return out


def coerce_partner_output(raw: Any) -> Any:
    if not isinstance(raw, dict):
        return raw
    out = copy.deepcopy(raw)
    out["kind"] = "partner"

    gate = out.get("decision_gate")
    if isinstance(gate, dict):
        if isinstance(gate.get("decision"), str):
            gate["decision"] = normalize_decision(gate["decision"]).value
        if isinstance(gate.get("gating_questions"), list):
            gate["gating_questions"] = normalize_gating_questions(gate["gating_questions"])
        if isinstance(gate.get("evidence_checklist"), list):
            gate["evidence_checklist"] = [
                _coerce_checklist_item(item) for item in gate["evidence_checklist"][:MAX_CHECKLIST]
            ]

    rubric = out.get("rubric")
    if isinstance(rubric, dict):
        for dim in RUBRIC_DIMENSIONS:
            entry = rubric.get(dim)
            if not isinstance(entry, dict):
                continue
            if isinstance(entry.get("reasons"), list):
                entry["reasons"] = entry["reasons"][:MAX_REASONS]
            if _is_number(entry.get("score")):
                entry["score"] = max(0, min(100, round(entry["score"])))
    return out


def coerce_analyst_output(raw: Any) -> Any:
    if not isinstance(raw, dict):
        return raw
    out = copy.deepcopy(raw)
    out["kind"] = "analyst"
    for key, limit in (
        ("facts", MAX_FACTS),
        ("contradictions", MAX_CONTRADICTIONS),
        ("unknowns", MAX_UNKNOWNS),
    ):
        if isinstance(out.get(key), list):
            out[key] = out[key][:limit]
    return out


def coerce_associate_output(raw: Any) -> Any:
    if not isinstance(raw, dict):
        return raw
    out = copy.deepcopy(raw)
    out["kind"] = "associate"
    if isinstance(out.get("hypotheses"), list):
        out["hypotheses"] = out["hypotheses"][:MAX_HYPOTHESES]
    return out


# ---------------------------------------------------------------------------
# Evidence enforcement and scoring
# ---------------------------------------------------------------------------


def enforce_evidence_rule(gate: DecisionGate) -> DecisionGate:
    """Downgrade unsupported claims and, if needed, the decision.

    Every EVIDENCE item without evidence IDs becomes an ASSUMPTION. When
    assumptions outnumber half the checklist, PROCEED weakens to PROCEED_IF.
    The decision is never strengthened, and applying this twice is the same
    as applying it once.

    Args:
        gate: Decision gate to enforce. Not modified.

    Returns:
        A new gate of the same class.
    """
    checklist = [
        item.model_copy(update={"type": ChecklistType.ASSUMPTION})
        if item.type == ChecklistType.EVIDENCE and not item.evidence_ids
        else item
        for item in gate.evidence_checklist
    ]
    assumptions = sum(1 for item in checklist if item.type == ChecklistType.ASSUMPTION)

    decision = gate.decision
    if decision == Decision.PROCEED and assumptions > len(checklist) / 2:
        decision = Decision.PROCEED_IF

    return gate.model_copy(update={"evidence_checklist": checklist, "decision": decision})


def enforce_partner_output(output: PartnerOutput) -> PartnerOutput:
    """Apply the evidence rule to a validated partner output."""
    return output.model_copy(
        update={"decision_gate": enforce_evidence_rule(output.decision_gate)}
    )


def _score_of(dim: RubricDimension | Mapping[str, Any]) -> int:
    if isinstance(dim, RubricDimension):
        return dim.score
    return int(dim.get("score", 0))


def rubric_average(rubric: Mapping[str, RubricDimension | Mapping[str, Any]]) -> int:
    """Integer mean of the five rubric scores, rounding halves up."""
    total = sum(_score_of(rubric[dim]) for dim in RUBRIC_DIMENSIONS)
    mean = Decimal(total) / Decimal(len(RUBRIC_DIMENSIONS))
    return int(mean.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_validation_errors(error: PydanticValidationError) -> str:
    """Render validation errors as ``- path: message`` lines."""
    lines = []
    for issue in error.errors():
        path = ".".join(str(part) for part in issue["loc"])
        lines.append(f"- {path + ': ' if path else ''}{issue['msg']}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Contract:
    """A named output schema and the coercer applied before validation."""

    name: str
    model: type[BaseModel]
    coerce: Callable[[Any], Any]


ANALYST_CONTRACT = Contract("AnalystOutput", AnalystOutput, coerce_analyst_output)
ASSOCIATE_CONTRACT = Contract("AssociateOutput", AssociateOutput, coerce_associate_output)
PARTNER_CONTRACT = Contract("PartnerOutput", PartnerOutput, coerce_partner_output)

SCHEMAS: dict[str, Contract] = {
    c.name: c for c in (ANALYST_CONTRACT, ASSOCIATE_CONTRACT, PARTNER_CONTRACT)
}
