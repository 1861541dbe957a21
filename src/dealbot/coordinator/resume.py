"""
Stall detection and single-step resumption.

Driven by a status check (a dashboard poll, ``dealbot advance``). Only the
persisted stage markers decide what is left to do, so an advance works the
same after a process restart as within one.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from dealbot.config import Settings
from dealbot.coordinator.pipeline import DealPipeline
from dealbot.logging import get_logger
from dealbot.types import RunStatus, utc_now

logger = get_logger(__name__)

AdvanceOutcome = Literal["advanced", "skipped", "completed"]


class ResumeAdvancer:
    """Advances a stalled run by exactly one unit per call."""

    def __init__(self, pipeline: DealPipeline, settings: Settings | None = None) -> None:
        self.pipeline = pipeline
        self.persistence = pipeline.persistence
        self.settings = settings or pipeline.settings

    def is_stalled(self, deal_id: str) -> bool:
        """Whether no event has been recorded for STALL_AFTER_SECONDS."""
        threshold = self.settings.STALL_AFTER_SECONDS
        if threshold <= 0:
            return True
        last_ts = self.persistence.store.last_event_ts(deal_id)
        if last_ts is None:
            return True
        idle = (utc_now() - datetime.fromisoformat(last_ts)).total_seconds()
        return idle >= threshold

    async def advance_if_stalled(self, deal_id: str) -> AdvanceOutcome:
        """Run the next incomplete unit of the deal's current run.

        Args:
            deal_id: The deal to check.

        Returns:
            ``completed`` if the run has nothing left to do, ``advanced`` if
            one unit was executed, ``skipped`` otherwise (no run, cancelled,
            driven elsewhere in this process, or not yet stalled).

        Raises:
            DealNotFoundError: If the deal was never created.
        """
        deal_input = self.persistence.load_deal_input(deal_id)
        run = self.persistence.latest_run(deal_id)

        if run is None or run.status == RunStatus.CANCELLED:
            return "skipped"
        if run.status == RunStatus.COMPLETE:
            return "completed"
        if self.pipeline.is_active(deal_id):
            logger.debug("Deal is being driven in this process", deal_id=deal_id)
            return "skipped"
        if run.status == RunStatus.ERROR:
            run = await self.persistence.reopen_run(deal_id, run.run_id)

        if not self.pipeline.pending_units(deal_id, run, deal_input):
            await self.pipeline.run_next_unit(deal_id)
            return "completed"

        if not self.is_stalled(deal_id):
            return "skipped"

        unit = await self.pipeline.run_next_unit(deal_id)
        if unit is None:
            return "skipped"
        logger.info("Advanced stalled run", deal_id=deal_id, run_id=run.run_id, unit=unit)
        return "advanced"
