"""JSON-file trade store (last-write-wins, not transactional)."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from trade_autopilot.store.schemas import TradeRecord
from trade_autopilot.utils.logging import get_logger


class TradeStore:
    """Whole-file read/write of trade records under the state directory."""

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir
        self._state_dir.mkdir(parents=True, exist_ok=True)
        self._file = state_dir / "trades.json"
        self._logger = get_logger("trade_autopilot.store.trades")
        # Rows that failed to parse on the last read; written back untouched.
        self._unreadable: list[Any] = []

    @property
    def path(self) -> Path:
        return self._file

    def read_trades(self) -> list[TradeRecord]:
        if not self._file.exists():
            return []
        raw = json.loads(self._file.read_text(encoding="utf-8") or "[]")
        if not isinstance(raw, list):
            raise ValueError(f"trade_store_not_a_list: {self._file}")

        trades: list[TradeRecord] = []
        unreadable: list[Any] = []
        for index, row in enumerate(raw):
            if not isinstance(row, dict):
                self._logger.warning("trade_row_skipped", index=index, kind=type(row).__name__)
                unreadable.append(row)
                continue
            try:
                trades.append(TradeRecord.model_validate(row))
            except ValidationError as exc:
                self._logger.warning(
                    "trade_row_skipped",
                    index=index,
                    trade_id=row.get("id"),
                    fields=[".".join(str(p) for p in err["loc"]) for err in exc.errors()],
                )
                unreadable.append(row)
        self._unreadable = unreadable
        return trades

    def write_trades(self, trades: Iterable[TradeRecord]) -> None:
        payload: list[Any] = [trade.to_dict() for trade in trades]
        payload.extend(self._unreadable)
        serialized = json.dumps(payload, ensure_ascii=True, indent=2)
        tmp = self._file.with_suffix(".json.tmp")
        tmp.write_text(serialized, encoding="utf-8")
        os.replace(tmp, self._file)
