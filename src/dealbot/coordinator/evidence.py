"""
Evidence gathering through bounded, time-limited provider calls.

Every provider call goes through a shared semaphore (the per-pipeline
provider concurrency cap) and the short timeout. A call that times out or
misbehaves yields an empty result; gathering never fails a stage.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Sequence

from dealbot.config import Settings
from dealbot.logging import get_logger
from dealbot.providers.base import EvidenceProvider, SearchOptions, SearchResult, evidence_id_for
from dealbot.state import DealInput, EvidenceItem
from dealbot.types import utc_now_iso

logger = get_logger(__name__)

RESOLUTION_RESULTS_PER_QUESTION = 3


@dataclass
class SeedResult:
    """Evidence collected for the first stage of a run."""

    items: list[EvidenceItem] = field(default_factory=list)
    profile: dict[str, Any] | None = None
    categories_with_data: list[str] = field(default_factory=list)
    used_fallback: bool = False


def fallback_evidence(deal_input: DealInput) -> EvidenceItem:
    """Placeholder item recorded when no provider returns anything."""
    return EvidenceItem(
        evidence_id=evidence_id_for("system", None, deal_input.name),
        title="Basic info",
        snippet=(
            f'No specific results found for "{deal_input.name}". '
            "Continuing with general knowledge."
        ),
        source="system",
        retrieved_at=utc_now_iso(),
    )


def merge_unique(*groups: Sequence[EvidenceItem]) -> list[EvidenceItem]:
    """Concatenate groups, keeping the first occurrence of each evidence ID."""
    seen: set[str] = set()
    merged: list[EvidenceItem] = []
    for group in groups:
        for item in group:
            if item.evidence_id not in seen:
                seen.add(item.evidence_id)
                merged.append(item)
    return merged


class EvidenceGatherer:
    """Runs evidence lookups for a pipeline."""

    def __init__(
        self,
        providers: Sequence[EvidenceProvider],
        settings: Settings,
        semaphore: asyncio.Semaphore,
    ) -> None:
        """Initialize the gatherer.

        Args:
            providers: Evidence providers, queried in order.
            settings: Supplies the short timeout and evidence limits.
            semaphore: Shared provider concurrency cap.
        """
        self.providers = list(providers)
        self.settings = settings
        self.semaphore = semaphore

    async def lookup(
        self,
        provider: EvidenceProvider,
        query: str,
        options: SearchOptions | None = None,
    ) -> SearchResult:
        """One bounded call. Timeouts and provider errors yield an empty result."""
        name = getattr(provider, "name", type(provider).__name__)
        async with self.semaphore:
            try:
                return await asyncio.wait_for(
                    provider.search(query, options),
                    timeout=self.settings.SHORT_TIMEOUT_S,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Evidence lookup timed out",
                    provider=name,
                    query=query,
                    timeout_s=self.settings.SHORT_TIMEOUT_S,
                )
            except Exception as e:
                logger.error("Evidence lookup failed", provider=name, query=query, error=str(e))
        return SearchResult.empty(name)

    async def gather_seed(self, deal_input: DealInput) -> SeedResult:
        """Seed search plus the intel category scan, run concurrently.

        Seed results are capped at MAX_EVIDENCE_SEED. Intel items follow them.
        If nothing at all is found, a single fallback item is returned.
        """
        if not self.providers:
            return SeedResult(items=[fallback_evidence(deal_input)], used_fallback=True)

        subject = " ".join(p for p in (deal_input.name, deal_input.domain) if p)
        seed_calls = [
            self.lookup(
                provider,
                f"{subject} company overview",
                SearchOptions(max_results=self.settings.MAX_EVIDENCE_SEED, include_profile=True),
            )
            for provider in self.providers
        ]
        categories = list(self.settings.INTEL_CATEGORIES)
        intel_calls = [
            self.lookup(
                self.providers[0],
                f"{deal_input.name} {category}",
                SearchOptions(max_results=RESOLUTION_RESULTS_PER_QUESTION, category=category),
            )
            for category in categories
        ]

        results = await asyncio.gather(*seed_calls, *intel_calls)
        seed_results = results[: len(seed_calls)]
        intel_results = results[len(seed_calls):]

        seed_items = merge_unique(*(r.items for r in seed_results))[: self.settings.MAX_EVIDENCE_SEED]
        items = merge_unique(seed_items, *(r.items for r in intel_results))
        profile = next((r.profile for r in seed_results if r.profile), None)
        with_data = [c for c, r in zip(categories, intel_results) if r.items]

        logger.info(
            "Evidence seed gathered",
            seed_items=len(seed_items),
            total_items=len(items),
            intel_categories=f"{len(with_data)}/{len(categories)}",
            has_profile=profile is not None,
        )

        if not items:
            return SeedResult(
                items=[fallback_evidence(deal_input)],
                profile=profile,
                used_fallback=True,
            )
        return SeedResult(items=items, profile=profile, categories_with_data=with_data)

    async def resolve_unknowns(self, questions: Sequence[str]) -> list[EvidenceItem]:
        """Search for answers to analyst unknowns, concurrently."""
        if not self.providers or not questions:
            return []
        questions = list(questions)[: self.settings.MAX_UNKNOWNS_TO_RESOLVE]
        results = await asyncio.gather(*(
            self.lookup(
                self.providers[0],
                question,
                SearchOptions(max_results=RESOLUTION_RESULTS_PER_QUESTION),
            )
            for question in questions
        ))
        items = merge_unique(*(r.items for r in results))
        logger.info(
            "Unknowns resolved",
            questions=len(questions),
            resolved=sum(1 for r in results if r.items),
            new_items=len(items),
        )
        return items
