"""
Investor profiles keyed by firm type.

A profile frames how the partner should read a deal (risk appetite, return
target, deal breakers) and weights the rubric dimensions when computing a
weighted score for the run summary.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from dealbot.state import RubricDimension
from dealbot.types import RUBRIC_DIMENSIONS

DEFAULT_FIRM_TYPE = "early_vc"


@dataclass(frozen=True)
class FundProfile:
    firm_type: str
    risk_appetite: str
    return_target: str
    return_horizon: str
    evaluation_lens: str
    key_metrics: tuple[str, ...] = ()
    deal_breakers: tuple[str, ...] = ()
    scoring_weights: Mapping[str, float] = field(default_factory=dict)
    aum: str = "Not specified"

    def to_dict(self) -> dict[str, Any]:
        return {
            "firm_type": self.firm_type,
            "aum": self.aum,
            "risk_appetite": self.risk_appetite,
            "return_target": self.return_target,
            "return_horizon": self.return_horizon,
            "evaluation_lens": self.evaluation_lens,
            "key_metrics": list(self.key_metrics),
            "deal_breakers": list(self.deal_breakers),
            "scoring_weights": dict(self.scoring_weights),
        }


FUND_PROFILES: dict[str, FundProfile] = {
    "angel": FundProfile(
        firm_type="angel",
        risk_appetite="aggressive",
        return_target="50-100x on winners",
        return_horizon="7-10 years",
        evaluation_lens="Back extraordinary founders early; conviction in the team outweighs metrics.",
        key_metrics=("founder domain expertise", "vision clarity", "market timing", "TAM potential"),
        deal_breakers=("weak founder conviction", "small TAM", "undifferentiated crowded market"),
        scoring_weights={"market": 1.0, "moat": 0.7, "why_now": 1.3, "execution": 1.5, "deal_fit": 0.5},
    ),
    "early_vc": FundProfile(
        firm_type="early_vc",
        risk_appetite="aggressive",
        return_target="10-30x fund returns",
        return_horizon="5-7 years to exit",
        evaluation_lens="Find future category leaders with product-market fit or a clear path to it.",
        key_metrics=("TAM/SAM/SOM", "team completeness", "PMF signals", "growth rate", "burn multiple"),
        deal_breakers=("TAM under $5B", "incomplete founding team", "no PMF signals"),
        scoring_weights={"market": 1.3, "moat": 1.0, "why_now": 1.2, "execution": 1.2, "deal_fit": 0.8},
    ),
    "growth_vc": FundProfile(
        firm_type="growth_vc",
        risk_appetite="moderate",
        return_target="5-10x on invested capital",
        return_horizon="3-5 years to exit",
        evaluation_lens="Scale proven business models; revenue must be real and unit economics trending positive.",
        key_metrics=("ARR", "revenue growth", "net retention", "gross margin", "CAC/LTV"),
        deal_breakers=("declining growth", "negative unit economics at scale", "customer concentration"),
        scoring_weights={"market": 1.2, "moat": 1.3, "why_now": 0.8, "execution": 1.2, "deal_fit": 1.0},
    ),
    "late_vc": FundProfile(
        firm_type="late_vc",
        risk_appetite="moderate",
        return_target="3-5x on invested capital",
        return_horizon="2-4 years to exit/IPO",
        evaluation_lens="Pre-IPO leaders with durable advantages and valuation discipline.",
        key_metrics=("revenue scale", "profitability trajectory", "market share", "IPO readiness"),
        deal_breakers=("overvalued vs comparables", "weak finance function", "no exit path in 3y"),
        scoring_weights={"market": 1.0, "moat": 1.5, "why_now": 0.7, "execution": 1.3, "deal_fit": 1.2},
    ),
    "pe": FundProfile(
        firm_type="pe",
        risk_appetite="conservative",
        return_target="2-3x MOIC, 20-25% IRR",
        return_horizon="3-5 year hold period",
        evaluation_lens="Operational value creation on stable cash flows with downside protection.",
        key_metrics=("EBITDA", "margin expansion potential", "free cash flow", "debt capacity"),
        deal_breakers=("negative EBITDA with no path", "key-person dependency", "weak cash conversion"),
        scoring_weights={"market": 0.8, "moat": 1.5, "why_now": 0.6, "execution": 1.5, "deal_fit": 1.3},
    ),
    "ib": FundProfile(
        firm_type="ib",
        risk_appetite="conservative",
        return_target="Maximize transaction value",
        return_horizon="6-18 month transaction timeline",
        evaluation_lens="Assess as an M&A target or IPO candidate against comparable transactions.",
        key_metrics=("revenue multiple vs comps", "strategic acquirer fit", "recurring revenue %"),
        deal_breakers=("no strategic acquirer interest", "messy cap table", "unresolved litigation"),
        scoring_weights={"market": 1.0, "moat": 1.3, "why_now": 1.0, "execution": 1.0, "deal_fit": 1.5},
    ),
}


def resolve_fund_profile(firm_type: str | None = None, aum: str | None = None) -> FundProfile:
    """Look up a profile, falling back to early-stage VC for unknown types."""
    base = FUND_PROFILES.get(firm_type or DEFAULT_FIRM_TYPE, FUND_PROFILES[DEFAULT_FIRM_TYPE])
    return replace(base, aum=aum or "Not specified")


def weighted_score(
    rubric: Mapping[str, RubricDimension], profile: FundProfile
) -> float:
    """Weight-normalized rubric score, rounded to one decimal."""
    total_weight = sum(profile.scoring_weights.get(dim, 1.0) for dim in RUBRIC_DIMENSIONS)
    weighted = sum(
        rubric[dim].score * profile.scoring_weights.get(dim, 1.0) for dim in RUBRIC_DIMENSIONS
    )
    return round(weighted / total_weight, 1) if total_weight else 0.0
