"""JSONL telemetry journal for auto-entry and auto-manage runs."""

from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from trade_autopilot.session import et_date_for
from trade_autopilot.utils.logging import get_logger

_ALLOWED_EVENT_TYPES = {
    "auto_entry",
    "auto_entry_run",
    "auto_entry_disabled",
    "auto_manage_run",
}


class TelemetryJournal:
    """Append-only, fire-and-forget event sink; write failures are logged, never raised."""

    def __init__(self, journal_dir: Path) -> None:
        self._journal_dir = journal_dir
        self._journal_dir.mkdir(parents=True, exist_ok=True)
        self._logger = get_logger("trade_autopilot.journal.store")

    def append(self, event_type: str, payload: dict[str, Any]) -> bool:
        """Append one event line to the ET-day JSONL file."""
        if event_type not in _ALLOWED_EVENT_TYPES:
            raise ValueError(f"unsupported_event_type: {event_type}")
        now = datetime.now(timezone.utc)
        record = {
            "timestamp": now.isoformat(),
            "event_type": event_type,
            "payload": payload,
        }
        try:
            file_path = self._journal_dir / f"{et_date_for(now)}.jsonl"
            with file_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")
        except Exception as exc:  # noqa: BLE001 - telemetry must never fail a run.
            self._logger.warning("telemetry_write_failed", event_type=event_type, error=str(exc))
            return False
        return True

    def record_auto_entry(
        self,
        *,
        outcome: str,
        reason: str,
        ticker: str | None,
        trade_id: str | None,
        run_id: str,
        source: str,
    ) -> bool:
        return self.append(
            "auto_entry",
            {
                "outcome": outcome,
                "reason": reason,
                "ticker": ticker,
                "trade_id": trade_id,
                "run_id": run_id,
                "source": source,
            },
        )

    def record_auto_manage(self, summary: dict[str, Any]) -> bool:
        return self.append("auto_manage_run", summary)

    def load_recent(self, limit: int) -> list[dict[str, Any]]:
        """Load recent events from the most recent journal files."""
        if limit <= 0:
            return []

        rows: list[dict[str, Any]] = []
        files = sorted(self._journal_dir.glob("*.jsonl"), reverse=True)
        for file in files:
            lines = file.read_text(encoding="utf-8").splitlines()
            for line in reversed(lines):
                if not line.strip():
                    continue
                try:
                    rows.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
                if len(rows) >= limit:
                    return list(reversed(rows))
        return list(reversed(rows))

    def summarize_day(self, et_date: str) -> dict[str, Any]:
        """Outcome and reason counts of one day's auto-entry events."""
        outcomes: Counter[str] = Counter()
        reasons: Counter[str] = Counter()
        runs: Counter[str] = Counter()
        path = self._journal_dir / f"{et_date}.jsonl"
        if path.exists():
            for line in path.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                event_type = record.get("event_type")
                payload = record.get("payload") or {}
                runs[str(event_type)] += 1
                if event_type == "auto_entry":
                    outcomes[str(payload.get("outcome"))] += 1
                    reasons[str(payload.get("reason"))] += 1
        return {
            "et_date": et_date,
            "events": dict(runs),
            "outcomes": dict(outcomes),
            "reasons": dict(reasons),
        }
