"""
Deal input and canonical deal state models.

DealState is never mutated in place: the reducer returns new instances and
the persistence layer serializes them as the snapshot document.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dealbot.types import RUBRIC_DIMENSIONS, ChecklistType, Decision

FirmType = Literal["angel", "early_vc", "growth_vc", "late_vc", "pe", "ib"]

PENDING_QUESTION = "Pending..."

NonEmptyStr = Annotated[str, Field(min_length=1)]


class AnalystConfig(BaseModel):
    """One analyst slot in a deal's persona configuration."""

    specialization: str


class PersonaConfig(BaseModel):
    """Which analysts to run and the deal framing they receive."""

    analysts: list[AnalystConfig] = Field(default_factory=list)
    deal_config: dict[str, Any] = Field(
        default_factory=dict, description="Free-form {stage, geo, sector} framing"
    )


class DealInput(BaseModel):
    """Static description of a deal, supplied once at creation."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    domain: str | None = None
    firm_type: FirmType | None = None
    aum: str | None = None
    deal_terms: dict[str, Any] = Field(default_factory=dict)
    fund_config: str | dict[str, Any] = Field(default_factory=dict)
    persona_config: PersonaConfig = Field(default_factory=PersonaConfig)

    def analyst_specializations(self, defaults: list[str]) -> list[str]:
        """Configured specializations, or ``defaults`` when none are set."""
        configured = [a.specialization for a in self.persona_config.analysts if a.specialization]
        return configured or list(defaults)


class EvidenceItem(BaseModel):
    """A retrieved piece of external information with a stable ID."""

    evidence_id: str
    title: str | None = None
    snippet: str = ""
    source: str = "unknown"
    url: str | None = None
    retrieved_at: str | None = None


class Hypothesis(BaseModel):
    id: str
    text: str
    support_evidence_ids: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)


class RubricDimension(BaseModel):
    score: int = Field(default=0, ge=0, le=100)
    reasons: list[str] = Field(default_factory=list, max_length=4)


class ChecklistItem(BaseModel):
    q: int = Field(..., ge=1, le=3)
    item: str = Field(..., min_length=1)
    type: ChecklistType
    evidence_ids: list[str] = Field(default_factory=list)


class DecisionGate(BaseModel):
    decision: Decision = Decision.PROCEED_IF
    gating_questions: list[NonEmptyStr] = Field(
        default_factory=lambda: [PENDING_QUESTION] * 3, min_length=3, max_length=3
    )
    evidence_checklist: list[ChecklistItem] = Field(default_factory=list, max_length=15)


def _empty_rubric() -> dict[str, RubricDimension]:
    return {dim: RubricDimension() for dim in RUBRIC_DIMENSIONS}


class DealState(BaseModel):
    """Canonical state of a deal, derived by folding its event log."""

    deal_input: DealInput
    evidence: list[EvidenceItem] = Field(default_factory=list)
    company_profile: dict[str, Any] | None = None
    hypotheses: list[Hypothesis] = Field(default_factory=list)
    rubric: dict[str, RubricDimension] = Field(default_factory=_empty_rubric)
    decision_gate: DecisionGate = Field(default_factory=DecisionGate)

    @field_validator("rubric")
    @classmethod
    def validate_rubric_dimensions(
        cls, v: dict[str, RubricDimension]
    ) -> dict[str, RubricDimension]:
        """Fill any missing dimension and reject unknown ones."""
        unknown = set(v) - set(RUBRIC_DIMENSIONS)
        if unknown:
            raise ValueError(f"Unknown rubric dimensions: {sorted(unknown)}")
        return {dim: v.get(dim, RubricDimension()) for dim in RUBRIC_DIMENSIONS}

    def evidence_ids(self) -> set[str]:
        return {e.evidence_id for e in self.evidence}


def initial_state(deal_input: DealInput) -> DealState:
    """Fresh state for a new run of ``deal_input``."""
    return DealState(deal_input=deal_input)
