from __future__ import annotations

import csv
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from telemetry.logging_utils import get_logger

logger = get_logger(__name__)

METRICS_DIR = Path(os.getenv("METRICS_DIR") or Path(__file__).resolve().parent.parent / "metrics")
CSV_PATH = METRICS_DIR / "stream_turns.csv"
CSV_COLUMNS = [
    "timestamp",
    "component",
    "model_or_tool",
    "outcome",
    "deltas",
    "chars_out",
    "first_delta_ms",
    "latency_ms",
    "conversation_id",
]

_csv_lock = threading.Lock()
_supabase_client: Any = None


def _get_supabase_client() -> Any:
    """Lazily initialize a Supabase client when env vars are present."""
    global _supabase_client
    if _supabase_client is not None:
        return _supabase_client
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not key:
        return None
    from supabase import create_client

    try:
        _supabase_client = create_client(url, key)
    except Exception:
        logger.warning("metrics_supabase_unavailable", exc_info=True)
        _supabase_client = None
    return _supabase_client


def _ensure_csv_header(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        return
    with _csv_lock:
        if path.exists():
            return
        with path.open("w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=CSV_COLUMNS)
            writer.writeheader()


def _coerce_number(value: Any) -> Optional[float]:
    try:
        if value is None or value == "":
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def log_metric(
    component: str,
    model_or_tool: Optional[str],
    *,
    outcome: str = "ok",
    deltas: Optional[int] = None,
    chars_out: Optional[int] = None,
    first_delta_ms: Optional[float] = None,
    latency_ms: Optional[float] = None,
    conversation_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Persist a metric row to CSV and Supabase (best effort) and return it."""
    row = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "component": component,
        "model_or_tool": model_or_tool or "",
        "outcome": outcome,
        "deltas": deltas,
        "chars_out": chars_out,
        "first_delta_ms": round(first_delta_ms, 3) if first_delta_ms is not None else None,
        "latency_ms": round(latency_ms, 3) if latency_ms is not None else None,
        "conversation_id": conversation_id,
    }
    csv_row = {k: ("" if v is None else v) for k, v in row.items()}
    path = CSV_PATH

    try:
        _ensure_csv_header(path)
        with _csv_lock:
            with path.open("a", newline="", encoding="utf-8") as f:
                csv.DictWriter(f, fieldnames=CSV_COLUMNS).writerow(csv_row)
    except OSError:
        logger.warning("metrics_csv_write_failed", extra={"path": str(path)}, exc_info=True)

    client = _get_supabase_client()
    if client is not None:
        try:
            client.table("metrics").insert(row).execute()
        except Exception:
            logger.warning("metrics_supabase_write_failed", exc_info=True)
    return row


@dataclass
class StreamTimer:
    """Tracks one streamed completion from request to terminator."""

    component: str
    model_or_tool: Optional[str]
    conversation_id: Optional[str]
    deltas: int = 0
    chars_out: int = 0
    _start: float = field(default_factory=time.perf_counter)
    _first_delta: Optional[float] = None

    def record_delta(self, fragment: str) -> None:
        if self._first_delta is None:
            self._first_delta = time.perf_counter()
        self.deltas += 1
        self.chars_out += len(fragment)

    def done(self, outcome: str = "ok") -> Dict[str, Any]:
        now = time.perf_counter()
        first_ms = (self._first_delta - self._start) * 1000 if self._first_delta is not None else None
        return log_metric(
            self.component,
            self.model_or_tool,
            outcome=outcome,
            deltas=self.deltas,
            chars_out=self.chars_out,
            first_delta_ms=first_ms,
            latency_ms=(now - self._start) * 1000,
            conversation_id=self.conversation_id,
        )


def start_timer(component: str, model_or_tool: Optional[str], conversation_id: Optional[str] = None) -> StreamTimer:
    return StreamTimer(component=component, model_or_tool=model_or_tool, conversation_id=conversation_id)


def fetch_metrics(limit: int = 500) -> List[Dict[str, Any]]:
    """Return recent metrics from Supabase if available, otherwise from the local CSV."""
    client = _get_supabase_client()
    if client is not None:
        try:
            resp = client.table("metrics").select("*").order("timestamp", desc=True).limit(limit).execute()
            if resp.data:
                return resp.data
        except Exception:
            logger.warning("metrics_supabase_read_failed", exc_info=True)
    if not CSV_PATH.exists():
        return []
    rows: List[Dict[str, Any]] = []
    with CSV_PATH.open("r", newline="", encoding="utf-8") as f:
        for idx, row in enumerate(csv.DictReader(f)):
            if idx >= limit:
                break
            rows.append(row)
    return rows


def summarize_metrics(records: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Average latency and time to first delta per component, plus outcome counts."""
    latency_by_component: Dict[str, List[float]] = {}
    first_by_component: Dict[str, List[float]] = {}
    outcomes: Dict[str, int] = {}
    for row in records:
        component = row.get("component") or "unknown"
        latency = _coerce_number(row.get("latency_ms"))
        if latency is not None:
            latency_by_component.setdefault(component, []).append(latency)
        first = _coerce_number(row.get("first_delta_ms"))
        if first is not None:
            first_by_component.setdefault(component, []).append(first)
        outcome = row.get("outcome") or "unknown"
        outcomes[outcome] = outcomes.get(outcome, 0) + 1
    return {
        "average_latency_ms": {c: round(sum(v) / len(v), 3) for c, v in latency_by_component.items() if v},
        "average_first_delta_ms": {c: round(sum(v) / len(v), 3) for c, v in first_by_component.items() if v},
        "outcomes": outcomes,
        "sample_size": len(records),
    }
