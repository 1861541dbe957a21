"""
File-backed authoritative store for deals.

Layout under ``{root}/deals/{deal_id}/``:

- ``deal.json``      static deal input and metadata
- ``events.jsonl``   append-only log of the active run (source of truth)
- ``state.json``     snapshot of the folded state (a rebuildable cache)
- ``runs.json``      run bookkeeping, oldest first
- ``markers/{run_id}/{stage_id}.json``   per-unit commit markers
- ``personas/{run_id}/{persona_id}.json`` per-persona outcome records
- ``archive/run_NNN/``  log and snapshot of superseded runs
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any, Iterator

import orjson
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from dealbot.logging import get_logger
from dealbot.types import DealEvent, PersonaRecord, RunRecord

logger = get_logger(__name__)


def _write_json(path: Path, data: Any) -> None:
    """Write a JSON document atomically via a sibling temp file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "wb") as f:
        f.write(orjson.dumps(data, option=orjson.OPT_INDENT_2))
    os.replace(tmp, path)


def _read_json(path: Path) -> Any | None:
    if not path.exists():
        return None
    with open(path, "rb") as f:
        return orjson.loads(f.read())


class LogStore:
    """Authoritative on-disk store for deals, logs, runs and markers."""

    def __init__(self, root: str | Path) -> None:
        """Initialize the store.

        Args:
            root: Data directory. Deals live under ``root/deals``.
        """
        self.root = Path(root)
        self.deals_dir = self.root / "deals"

    def deal_dir(self, deal_id: str) -> Path:
        return self.deals_dir / deal_id

    def events_path(self, deal_id: str) -> Path:
        return self.deal_dir(deal_id) / "events.jsonl"

    def snapshot_path(self, deal_id: str) -> Path:
        return self.deal_dir(deal_id) / "state.json"

    # ------------------------------------------------------------------
    # Deals
    # ------------------------------------------------------------------

    def save_deal(self, deal_id: str, record: dict[str, Any]) -> None:
        _write_json(self.deal_dir(deal_id) / "deal.json", record)

    def load_deal(self, deal_id: str) -> dict[str, Any] | None:
        return _read_json(self.deal_dir(deal_id) / "deal.json")

    def deal_exists(self, deal_id: str) -> bool:
        return (self.deal_dir(deal_id) / "deal.json").exists()

    def list_deal_ids(self) -> list[str]:
        if not self.deals_dir.exists():
            return []
        return sorted(
            p.name for p in self.deals_dir.iterdir() if (p / "deal.json").exists()
        )

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    @retry(
        retry=retry_if_exception_type(OSError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        reraise=True,
    )
    def append_event(self, event: DealEvent) -> None:
        """Durably append one event as a JSON line.

        Raises:
            OSError: If the write still fails after retries.
        """
        path = self.events_path(event.deal_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        line = orjson.dumps(event.to_dict()) + b"\n"
        with open(path, "ab") as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())

    def iter_events(self, deal_id: str, path: Path | None = None) -> Iterator[DealEvent]:
        """Yield events in log order.

        A final line that fails to decode is treated as a torn write from a
        crash and skipped. Corruption anywhere else raises.
        """
        path = path or self.events_path(deal_id)
        if not path.exists():
            return
        with open(path, "rb") as f:
            lines = [line for line in f.read().split(b"\n") if line.strip()]
        for i, line in enumerate(lines):
            try:
                data = orjson.loads(line)
            except orjson.JSONDecodeError:
                if i == len(lines) - 1:
                    logger.warning("Skipping torn final log line", deal_id=deal_id, path=str(path))
                    return
                raise
            yield DealEvent.from_dict(data)

    def read_events(self, deal_id: str) -> list[DealEvent]:
        return list(self.iter_events(deal_id))

    def last_event_ts(self, deal_id: str) -> str | None:
        events = self.read_events(deal_id)
        return events[-1].ts if events else None

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def write_snapshot(self, deal_id: str, state: dict[str, Any]) -> None:
        _write_json(self.snapshot_path(deal_id), state)

    def read_snapshot(self, deal_id: str) -> dict[str, Any] | None:
        return _read_json(self.snapshot_path(deal_id))

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def load_runs(self, deal_id: str) -> list[RunRecord]:
        data = _read_json(self.deal_dir(deal_id) / "runs.json") or []
        return [RunRecord.from_dict(r) for r in data]

    def save_runs(self, deal_id: str, runs: list[RunRecord]) -> None:
        _write_json(self.deal_dir(deal_id) / "runs.json", [r.to_dict() for r in runs])

    def archive_active(self, deal_id: str, seq: int) -> Path | None:
        """Move the current log and snapshot under ``archive/run_{seq}``.

        Returns:
            The archive directory, or None if there was nothing to archive.
        """
        events = self.events_path(deal_id)
        snapshot = self.snapshot_path(deal_id)
        if not events.exists() and not snapshot.exists():
            return None

        target = self.deal_dir(deal_id) / "archive" / f"run_{seq:03d}"
        target.mkdir(parents=True, exist_ok=True)
        for path in (events, snapshot):
            if path.exists():
                shutil.move(str(path), str(target / path.name))
        logger.info("Archived run artifacts", deal_id=deal_id, archive=str(target))
        return target

    def archive_dir(self, deal_id: str, run_marker: str) -> Path:
        name = run_marker if run_marker.startswith("run_") else f"run_{int(run_marker):03d}"
        return self.deal_dir(deal_id) / "archive" / name

    def read_archived_snapshot(self, deal_id: str, run_marker: str) -> dict[str, Any] | None:
        return _read_json(self.archive_dir(deal_id, run_marker) / "state.json")

    def list_archives(self, deal_id: str) -> list[str]:
        archive = self.deal_dir(deal_id) / "archive"
        if not archive.exists():
            return []
        return sorted(p.name for p in archive.iterdir() if p.is_dir())

    # ------------------------------------------------------------------
    # Markers and persona records
    # ------------------------------------------------------------------

    def write_marker(self, deal_id: str, run_id: str, stage_id: str, data: dict[str, Any]) -> None:
        _write_json(self.deal_dir(deal_id) / "markers" / run_id / f"{stage_id}.json", data)

    def read_markers(self, deal_id: str, run_id: str) -> dict[str, dict[str, Any]]:
        marker_dir = self.deal_dir(deal_id) / "markers" / run_id
        if not marker_dir.exists():
            return {}
        return {
            p.stem: _read_json(p) or {}
            for p in sorted(marker_dir.glob("*.json"))
        }

    def save_persona(self, deal_id: str, run_id: str, record: PersonaRecord) -> None:
        _write_json(
            self.deal_dir(deal_id) / "personas" / run_id / f"{record.persona_id}.json",
            record.to_dict(),
        )

    def load_personas(self, deal_id: str, run_id: str) -> list[PersonaRecord]:
        persona_dir = self.deal_dir(deal_id) / "personas" / run_id
        if not persona_dir.exists():
            return []
        return [
            PersonaRecord.from_dict(_read_json(p))
            for p in sorted(persona_dir.glob("*.json"))
        ]
