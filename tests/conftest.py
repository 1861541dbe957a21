"""
Pytest configuration and fixtures for dealbot tests.
"""

from __future__ import annotations

import asyncio
import copy
import os
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Generator
from unittest.mock import patch

import pytest

from dealbot.config import Settings, clear_settings_cache
from dealbot.persistence import PersistenceManager
from dealbot.providers.base import SearchOptions, SearchResult
from dealbot.state import AnalystConfig, DealInput, EvidenceItem, PersonaConfig


# ---------------------------------------------------------------------------
# Canned persona outputs
# ---------------------------------------------------------------------------


def make_analyst_output(specialization: str = "market") -> dict[str, Any]:
    return {
        "facts": [{"text": f"{specialization} is growing", "evidence_ids": ["ev_seed_1"]}],
        "contradictions": [],
        "unknowns": [{"question": f"What is the {specialization} churn?", "why": "Retention"}],
        "evidence_requests": [],
    }


def make_associate_output() -> dict[str, Any]:
    return {
        "hypotheses": [
            {
                "id": "h1",
                "text": "Strong demand in a growing market",
                "support_evidence_ids": ["ev_seed_1"],
                "risks": ["Competition"],
            },
            {
                "id": "h2",
                "text": "Team can execute",
                "support_evidence_ids": [],
                "risks": [],
            },
        ],
        "top_unknowns": [{"question": "Churn?", "why_it_matters": "Drives LTV"}],
        "requests_to_analysts": [],
    }


def make_partner_output(decision: str = "PROCEED") -> dict[str, Any]:
    return {
        "rubric": {
            "market": {"score": 80, "reasons": ["Large TAM"]},
            "moat": {"score": 60, "reasons": ["Some IP"]},
            "why_now": {"score": 70, "reasons": ["Timing"]},
            "execution": {"score": 50, "reasons": ["Early team"]},
            "deal_fit": {"score": 40, "reasons": ["Stage fit"]},
        },
        "decision_gate": {
            "decision": decision,
            "gating_questions": ["Churn?", "Pricing power?", "Hiring plan?"],
            "evidence_checklist": [
                {"q": 1, "item": "Retention data", "type": "EVIDENCE", "evidence_ids": ["ev_seed_1"]},
            ],
        },
    }


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeRunner:
    """ReasoningRunner returning canned outputs and recording every call.

    ``responses`` maps an agent ID (or the prefix ``analyst``) to either a
    list of outputs consumed in order (the last one repeats), or a callable
    taking ``(agent_id, stage_input, repair_context)``.
    """

    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses: dict[str, Any] = {
            "analyst": [make_analyst_output()],
            "associate": [make_associate_output()],
            "partner": [make_partner_output()],
        }
        self.responses.update(responses or {})
        self.calls: list[tuple[str, dict[str, Any], str | None]] = []

    def calls_for(self, agent_id: str) -> list[tuple[str, dict[str, Any], str | None]]:
        return [c for c in self.calls if c[0] == agent_id]

    @property
    def agent_ids(self) -> list[str]:
        return [c[0] for c in self.calls]

    async def invoke(
        self,
        agent_id: str,
        stage_input: dict[str, Any],
        repair_context: str | None = None,
    ) -> Any:
        self.calls.append((agent_id, stage_input, repair_context))
        key = agent_id if agent_id in self.responses else agent_id.split("_")[0]
        response = self.responses[key]
        if callable(response):
            result = response(agent_id, stage_input, repair_context)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        index = min(len(self.calls_for(agent_id)) - 1, len(response) - 1)
        return copy.deepcopy(response[index])


class FakeSearchProvider:
    """EvidenceProvider returning deterministic items and tracking concurrency."""

    def __init__(
        self,
        name: str = "fake",
        items_per_call: int = 2,
        profile: dict[str, Any] | None = None,
        delay: float = 0.0,
        fail: bool = False,
    ) -> None:
        self.name = name
        self.items_per_call = items_per_call
        self.profile = profile
        self.delay = delay
        self.fail = fail
        self.queries: list[tuple[str, SearchOptions | None]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def search(self, query: str, options: SearchOptions | None = None) -> SearchResult:
        self.queries.append((query, options))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail:
                raise RuntimeError("provider exploded")
            items = [
                EvidenceItem(
                    evidence_id=f"ev_{self.name}_{abs(hash(query)) % 10_000}_{i}",
                    title=f"{query} #{i}",
                    snippet=f"Result {i} for {query}",
                    source=self.name,
                    url=f"https://example.com/{i}",
                )
                for i in range(self.items_per_call)
            ]
            wants_profile = options is not None and options.include_profile
            return SearchResult(
                items=items,
                profile=self.profile if wants_profile else None,
                provider=self.name,
            )
        finally:
            self.in_flight -= 1


class RecordingSink:
    """SubscriberSink that keeps every message it receives."""

    def __init__(self, fail: bool = False) -> None:
        self.messages: list[dict[str, Any]] = []
        self.fail = fail
        self._callbacks: list[Callable[[], None]] = []

    def write(self, event: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("client went away")
        self.messages.append(event)

    def on_close(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    def close(self) -> None:
        for callback in self._callbacks:
            callback()

    @property
    def types(self) -> list[str]:
        return [m["type"] for m in self.messages]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def mock_env_vars() -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing."""
    env_vars = {
        "DATA_DIR": "test_data",
        "INDEX_ENABLED": "true",
        "LOG_LEVEL": "DEBUG",
        "SHORT_TIMEOUT_S": "0.5",
        "LONG_TIMEOUT_S": "2.0",
        "PROVIDER_CONCURRENCY": "2",
        "VALIDATION_MAX_RETRIES": "1",
        "DEFAULT_ANALYSTS": '["market", "competition"]',
        "STALL_AFTER_SECONDS": "0",
        "REASONING_API_KEY": "rk-test-fake-reasoning-key",
        "SEARCH_API_KEY": None,
    }

    # Filter out None values
    active_vars = {k: v for k, v in env_vars.items() if v is not None}

    with patch.dict(os.environ, active_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str], temp_dir: Path) -> Generator[Settings, None, None]:
    """Provide a Settings instance storing data under temp_dir."""
    with patch.dict(os.environ, {"DATA_DIR": str(temp_dir / "data")}):
        clear_settings_cache()
        from dealbot.config import get_settings

        settings = get_settings()
        settings.ensure_directories()
        yield settings
        clear_settings_cache()


@pytest.fixture
def deal_input() -> DealInput:
    """Provide a two-analyst deal."""
    return DealInput(
        name="Acme Robotics",
        domain="acme.example",
        firm_type="early_vc",
        aum="$250M",
        persona_config=PersonaConfig(
            analysts=[AnalystConfig(specialization="market"), AnalystConfig(specialization="team")],
            deal_config={"stage": "seed", "geo": "US", "sector": "robotics"},
        ),
    )


@pytest.fixture
async def persistence(mock_settings: Settings) -> AsyncGenerator[PersistenceManager, None]:
    """Provide an initialized persistence manager with the SQLite index."""
    manager = PersistenceManager(settings=mock_settings)
    await manager.init()
    yield manager
    await manager.close()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def search_provider() -> FakeSearchProvider:
    return FakeSearchProvider(profile={"name": "Acme Robotics", "employees": 42})


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
