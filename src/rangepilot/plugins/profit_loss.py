"""
Profit/loss bookkeeping from lifecycle events.

Keeps one ledger per instance run, settled in the instance's base currency:
base spent on preparation and top-up purchases against base received from
exit sells. Tokens already held before the run are not valued.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from rangepilot.core.event_bus import Event, EventType


@dataclass
class InstanceLedger:
    instance_id: str
    name: Optional[str] = None
    status: str = "running"  # running | exited
    run: int = 1
    started_at_ms: int = 0
    ended_at_ms: Optional[int] = None
    pair: Optional[str] = None
    principal: Optional[str] = None
    investment_amount: float = 0.0
    entry_price: Optional[float] = None
    base_symbol: Optional[str] = None
    base_spent: float = 0.0
    base_received: float = 0.0
    swaps: List[Dict[str, Any]] = field(default_factory=list)
    position_id: Optional[str] = None
    position_amount0: float = 0.0
    position_amount1: float = 0.0
    position_closed: bool = False
    close_tx_hash: Optional[str] = None
    exit_reason: Optional[str] = None

    @property
    def net_base(self) -> float:
        return self.base_received - self.base_spent

    @property
    def duration_hours(self) -> float:
        end = self.ended_at_ms or int(time.time() * 1000)
        return max(0, end - self.started_at_ms) / 3_600_000

    def to_report(self) -> Dict[str, Any]:
        report = asdict(self)
        report["net_base"] = round(self.net_base, 8)
        report["duration_hours"] = round(self.duration_hours, 4)
        report["return_percent"] = (
            round(self.net_base / self.base_spent * 100, 4) if self.base_spent > 0 and self.status == "exited" else None
        )
        return report


class ProfitLossPlugin:
    name = "profit_loss"
    version = "1.0.0"
    event_types = (
        EventType.STRATEGY_STARTED,
        EventType.POSITION_CREATED,
        EventType.SWAP_EXECUTED,
        EventType.POSITION_CLOSED,
        EventType.STRATEGY_ENDED,
    )

    def __init__(self) -> None:
        self._ledgers: Dict[str, InstanceLedger] = {}
        self._running = False

    def start(self) -> None:
        self._running = True

    def stop(self) -> None:
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def handle_event(self, event: Event) -> None:
        if not self._running:
            return
        handler = {
            EventType.STRATEGY_STARTED: self._on_started,
            EventType.POSITION_CREATED: self._on_position_created,
            EventType.SWAP_EXECUTED: self._on_swap,
            EventType.POSITION_CLOSED: self._on_position_closed,
            EventType.STRATEGY_ENDED: self._on_ended,
        }.get(event.type)
        if handler is not None:
            handler(event.data, event.timestamp_ms)

    # ---- handlers ----

    def _ledger(self, instance_id: str, ts: int) -> InstanceLedger:
        ledger = self._ledgers.get(instance_id)
        if ledger is None:
            ledger = InstanceLedger(instance_id=instance_id, started_at_ms=ts)
            self._ledgers[instance_id] = ledger
        return ledger

    def _on_started(self, data: Dict[str, Any], ts: int) -> None:
        iid = data["instance_id"]
        previous = self._ledgers.get(iid)
        cfg = data.get("config") or {}
        token0 = (data.get("token0") or {}).get("symbol")
        token1 = (data.get("token1") or {}).get("symbol")
        # a restart opens a new run
        self._ledgers[iid] = InstanceLedger(
            instance_id=iid,
            name=cfg.get("name"),
            run=previous.run + 1 if previous else 1,
            started_at_ms=ts,
            pair=f"{token0}/{token1}" if token0 and token1 else None,
            principal=cfg.get("principal"),
            investment_amount=float(cfg.get("amount") or 0.0),
            entry_price=data.get("price"),
        )

    def _on_position_created(self, data: Dict[str, Any], ts: int) -> None:
        ledger = self._ledger(data["instance_id"], ts)
        ledger.position_id = data.get("position_id")
        ledger.position_amount0 = float(data.get("amount0") or 0.0)
        ledger.position_amount1 = float(data.get("amount1") or 0.0)

    def _on_swap(self, data: Dict[str, Any], ts: int) -> None:
        ledger = self._ledger(data["instance_id"], ts)
        ledger.swaps.append({k: data.get(k) for k in ("purpose", "from_token", "to_token", "from_amount", "to_amount", "tx_hash")})
        if data.get("purpose") == "exit":
            ledger.base_symbol = ledger.base_symbol or data.get("to_token")
            ledger.base_received += float(data.get("to_amount") or 0.0)
        else:
            ledger.base_symbol = ledger.base_symbol or data.get("from_token")
            ledger.base_spent += float(data.get("from_amount") or 0.0)

    def _on_position_closed(self, data: Dict[str, Any], ts: int) -> None:
        ledger = self._ledger(data["instance_id"], ts)
        ledger.position_closed = True
        ledger.close_tx_hash = data.get("tx_hash")

    def _on_ended(self, data: Dict[str, Any], ts: int) -> None:
        ledger = self._ledger(data["instance_id"], ts)
        ledger.status = "exited"
        ledger.ended_at_ms = ts
        ledger.exit_reason = data.get("reason")
        result = data.get("exit_result") or {}
        if result.get("base_symbol"):
            ledger.base_symbol = result["base_symbol"]

    # ---- reports ----

    def get_report(self, instance_id: str) -> Optional[Dict[str, Any]]:
        ledger = self._ledgers.get(instance_id)
        return ledger.to_report() if ledger else None

    def get_all_reports(self) -> List[Dict[str, Any]]:
        return [ledger.to_report() for ledger in self._ledgers.values()]

    def get_summary(self) -> Dict[str, Any]:
        exited = [l for l in self._ledgers.values() if l.status == "exited"]
        return {
            "instances": len(self._ledgers),
            "running": len(self._ledgers) - len(exited),
            "exited": len(exited),
            "net_base_total": round(sum(l.net_base for l in exited), 8),
        }

    def remove(self, instance_id: str) -> bool:
        return self._ledgers.pop(instance_id, None) is not None
