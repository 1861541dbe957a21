"""
Interfaces for the external collaborators of the pipeline.

Evidence providers, reasoning runners and notification sinks are hosted
elsewhere. The pipeline only depends on these protocols, so tests and
alternative backends plug in without touching orchestration code.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Protocol

from dealbot.state import EvidenceItem


def evidence_id_for(source: str, url: str | None, text: str = "") -> str:
    """Stable evidence ID, so re-ingesting the same item updates it in place."""
    key = f"{source}|{url or text}".encode()
    return f"ev_{hashlib.sha256(key).hexdigest()[:16]}"


@dataclass
class SearchOptions:
    """Per-call knobs for an evidence lookup."""

    max_results: int = 5
    category: str | None = None
    include_profile: bool = False


@dataclass
class SearchResult:
    """Normalized output of one evidence lookup."""

    items: list[EvidenceItem] = field(default_factory=list)
    answer: str | None = None
    profile: dict[str, Any] | None = None
    provider: str = ""

    @classmethod
    def empty(cls, provider: str = "") -> SearchResult:
        return cls(provider=provider)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "answer": self.answer,
            "profile": self.profile,
            "items": [item.model_dump(mode="json") for item in self.items],
        }


class EvidenceProvider(Protocol):
    """Looks up external evidence. Must not raise: failures yield empty results."""

    name: str

    async def search(self, query: str, options: SearchOptions | None = None) -> SearchResult:
        ...


class ReasoningRunner(Protocol):
    """Invokes a hosted reasoning unit and returns its raw (parsed JSON) output."""

    async def invoke(
        self,
        agent_id: str,
        stage_input: dict[str, Any],
        repair_context: str | None = None,
    ) -> Any:
        """Run one persona.

        Args:
            agent_id: Persona identifier (``analyst_1``, ``associate``, ``partner``).
            stage_input: Structured input built from the current deal state.
            repair_context: Directive describing why the previous output
                failed validation, on a repair attempt.

        Returns:
            The persona's output, typically a dict decoded from JSON.
        """
        ...


class NotificationSink(Protocol):
    """Delivers a human-readable notification, e.g. run completion."""

    async def notify(self, subject: str, body: str) -> None:
        ...
