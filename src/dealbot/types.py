"""
Core types for the deal evaluation core.

This module defines:
- Enums for event types, run and persona statuses, decisions
- The frozen DealEvent record appended to the log
- Mutable RunRecord and PersonaRecord bookkeeping dataclasses
- Helper functions for ID generation and timestamps
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from uuid6 import uuid7

RUBRIC_DIMENSIONS: tuple[str, ...] = ("market", "moat", "why_now", "execution", "deal_fit")


def generate_id(prefix: str = "") -> str:
    """Generate a time-ordered unique ID using UUID7.

    Args:
        prefix: Optional prefix for the ID (e.g., "deal", "run", "ev")

    Returns:
        A unique ID string, optionally prefixed.
    """
    uid = str(uuid7())
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return utc_now().isoformat()


class EventType(str, Enum):
    """Event kinds recorded in a deal's log. Values are the wire names."""

    NODE_STARTED = "NODE_STARTED"
    MSG_SENT = "MSG_SENT"
    NODE_DONE = "NODE_DONE"
    EVIDENCE_ADDED = "EVIDENCE_ADDED"
    COMPANY_PROFILE_ADDED = "COMPANY_PROFILE_ADDED"
    STATE_PATCH = "STATE_PATCH"
    DECISION_UPDATED = "DECISION_UPDATED"
    LIVE_UPDATE = "LIVE_UPDATE"
    ERROR = "ERROR"


class RunStatus(str, Enum):
    """Lifecycle of a single run."""

    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


class PersonaStatus(str, Enum):
    """Lifecycle of one persona unit within a run."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
    DEGRADED = "degraded"

    @property
    def is_terminal(self) -> bool:
        """Done and degraded both let successor stages start."""
        return self in (PersonaStatus.DONE, PersonaStatus.DEGRADED)


class PersonaType(str, Enum):
    """Role a reasoning unit plays in the pipeline."""

    ANALYST = "analyst"
    ASSOCIATE = "associate"
    PARTNER = "partner"


class Decision(str, Enum):
    """Partner go/no-go outcome, from weakest to strongest."""

    KILL = "KILL"
    PROCEED_IF = "PROCEED_IF"
    PROCEED = "PROCEED"


class ChecklistType(str, Enum):
    """Whether a checklist item is backed by evidence or assumed."""

    EVIDENCE = "EVIDENCE"
    ASSUMPTION = "ASSUMPTION"


@dataclass(frozen=True)
class DealEvent:
    """Immutable record of one state-relevant occurrence in a deal.

    ``public_payload`` is the trimmed shape sent to live subscribers. It is
    never written to the log.
    """

    ts: str
    deal_id: str
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    run_id: str | None = None
    public_payload: dict[str, Any] | None = field(default=None, compare=False)

    @classmethod
    def create(
        cls,
        deal_id: str,
        type: EventType,
        payload: dict[str, Any] | None = None,
        run_id: str | None = None,
        public_payload: dict[str, Any] | None = None,
    ) -> DealEvent:
        """Factory method stamping the event with the current time."""
        return cls(
            ts=utc_now_iso(),
            deal_id=deal_id,
            type=type,
            payload=payload or {},
            run_id=run_id,
            public_payload=public_payload,
        )

    def to_dict(self) -> dict[str, Any]:
        """Persisted log record."""
        return {
            "ts": self.ts,
            "deal_id": self.deal_id,
            "run_id": self.run_id,
            "type": self.type.value,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DealEvent:
        return cls(
            ts=data["ts"],
            deal_id=data["deal_id"],
            type=EventType(data["type"]),
            payload=data.get("payload") or {},
            run_id=data.get("run_id"),
        )


@dataclass
class RunRecord:
    """Bookkeeping for one evaluation run of a deal."""

    run_id: str
    deal_id: str
    seq: int
    status: RunStatus = RunStatus.RUNNING
    started_at: str = field(default_factory=utc_now_iso)
    completed_at: str | None = None
    decision: str | None = None
    avg_score: int | None = None
    weighted_score: float | None = None
    duration_ms: int | None = None
    error: str | None = None

    @classmethod
    def create(cls, deal_id: str, seq: int) -> RunRecord:
        return cls(run_id=generate_id("run"), deal_id=deal_id, seq=seq)

    @property
    def is_active(self) -> bool:
        return self.status == RunStatus.RUNNING

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "deal_id": self.deal_id,
            "seq": self.seq,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "decision": self.decision,
            "avg_score": self.avg_score,
            "weighted_score": self.weighted_score,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunRecord:
        return cls(
            run_id=data["run_id"],
            deal_id=data["deal_id"],
            seq=int(data["seq"]),
            status=RunStatus(data.get("status", "running")),
            started_at=data.get("started_at") or utc_now_iso(),
            completed_at=data.get("completed_at"),
            decision=data.get("decision"),
            avg_score=data.get("avg_score"),
            weighted_score=data.get("weighted_score"),
            duration_ms=data.get("duration_ms"),
            error=data.get("error"),
        )


@dataclass
class PersonaRecord:
    """Outcome of one persona unit within a run."""

    persona_id: str
    persona_type: PersonaType
    specialization: str | None = None
    status: PersonaStatus = PersonaStatus.PENDING
    output: dict[str, Any] | None = None
    validation_ok: bool = False
    retry_count: int = 0
    latency_ms: int | None = None
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "persona_id": self.persona_id,
            "persona_type": self.persona_type.value,
            "specialization": self.specialization,
            "status": self.status.value,
            "output": self.output,
            "validation_ok": self.validation_ok,
            "retry_count": self.retry_count,
            "latency_ms": self.latency_ms,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PersonaRecord:
        return cls(
            persona_id=data["persona_id"],
            persona_type=PersonaType(data["persona_type"]),
            specialization=data.get("specialization"),
            status=PersonaStatus(data.get("status", "pending")),
            output=data.get("output"),
            validation_ok=bool(data.get("validation_ok", False)),
            retry_count=int(data.get("retry_count", 0)),
            latency_ms=data.get("latency_ms"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            error=data.get("error"),
        )
