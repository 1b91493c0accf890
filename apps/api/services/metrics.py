"""Lightweight in-memory metrics for flow latency and outcomes."""

from __future__ import annotations

import json
import logging
import os
import threading
from math import floor
from pathlib import Path
from typing import Any, Dict, Iterable, List, MutableMapping, Optional

from apps.api import config

LOGGER = logging.getLogger(__name__)

_LOCK = threading.Lock()
_STORE: MutableMapping[str, Dict[str, Any]] = {}
_EVENT_LOG_PATH: Path | None = None

LOG_ENV = "FORMULAFLOW_METRICS_LOG"
THRESHOLDS_ENV = "FORMULAFLOW_SLO_THRESHOLDS"

# flow 毎の p95 レイテンシ (ms) と成功率
DEFAULT_SLO_THRESHOLDS: Dict[str, Dict[str, float]] = {
    "FormulaGenerated": {"p95": 8_000, "ok_rate": 0.9},
    "DataAnalyzed": {"p95": 30_000, "ok_rate": 0.8},
    "DataQuestionAnswered": {"p95": 10_000, "ok_rate": 0.9},
    "ChartGenerated": {"p95": 15_000, "ok_rate": 0.8},
}


def reset() -> None:
    with _LOCK:
        _STORE.clear()


def record_event(event_name: str, **properties: Any) -> None:
    duration = _coerce_float(properties.get("duration_ms"))
    status = str(properties.get("status") or "").lower()
    with _LOCK:
        bucket = _STORE.setdefault(event_name, {"duration_ms": [], "status": {}})
        if duration is not None:
            bucket["duration_ms"].append(duration)
        if status:
            bucket["status"][status] = bucket["status"].get(status, 0) + 1


def persist_event(payload: Dict[str, Any]) -> None:
    path = get_event_log_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(payload, ensure_ascii=False) + "\n")


def load_event_log(path: Path | str | None = None) -> Iterable[Dict[str, Any]]:
    target = Path(path) if path else get_event_log_path()
    if not target.exists():
        return []
    return _iter_jsonl(target)


def _iter_jsonl(target: Path) -> Iterable[Dict[str, Any]]:
    with target.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                continue


def slo_snapshot() -> Dict[str, Any]:
    """Per-event count, p95 latency and outcome counts with the ok-rate."""
    with _LOCK:
        events = {name: _summarize(m) for name, m in _STORE.items()}
    return {"events": events}


def detect_violations(slo_config: Dict[str, Dict[str, float]]) -> Dict[str, Dict[str, bool]]:
    snapshot = slo_snapshot()["events"]
    report: Dict[str, Dict[str, bool]] = {}
    for name, thresholds in slo_config.items():
        summary = snapshot.get(name, {"count": 0, "p95": 0.0, "ok_rate": 1.0})
        event_report: Dict[str, bool] = {}
        if "p95" in thresholds:
            event_report["p95_exceeded"] = summary["p95"] > thresholds["p95"] if summary["count"] else False
        if "ok_rate" in thresholds:
            event_report["ok_rate_below"] = summary["ok_rate"] < thresholds["ok_rate"] if summary["count"] else False
        report[name] = event_report
    return report


def set_event_log_path(path: Path | str | None) -> None:
    """Pin the event log location; ``None`` goes back to the env/data-dir default."""
    global _EVENT_LOG_PATH
    _EVENT_LOG_PATH = Path(path) if path else None


def get_event_log_path() -> Path:
    if _EVENT_LOG_PATH is not None:
        return _EVENT_LOG_PATH
    override = os.getenv(LOG_ENV)
    if override:
        return Path(override)
    return config.data_dir() / "metrics" / "events.jsonl"


def load_thresholds(raw: Optional[str] = None) -> Dict[str, Dict[str, float]]:
    """Default SLO table, with per-event entries replaced from JSON (``FORMULAFLOW_SLO_THRESHOLDS``)."""
    thresholds = {name: dict(values) for name, values in DEFAULT_SLO_THRESHOLDS.items()}
    raw = raw if raw is not None else os.getenv(THRESHOLDS_ENV)
    if not raw:
        return thresholds
    try:
        overrides = json.loads(raw)
    except json.JSONDecodeError:
        LOGGER.warning("ignoring invalid %s", THRESHOLDS_ENV)
        return thresholds
    if isinstance(overrides, dict):
        for name, values in overrides.items():
            if isinstance(values, dict):
                thresholds[name] = values
    return thresholds


def bootstrap_from_events(events: Iterable[Dict[str, Any]]) -> None:
    reset()
    for event in events:
        name = event.get("event_name")
        if not name:
            continue
        props = {k: v for k, v in event.items() if k != "event_name"}
        record_event(name, **props)


def _summarize(metrics: Dict[str, Any]) -> Dict[str, Any]:
    durations: List[float] = metrics.get("duration_ms", [])
    status: Dict[str, int] = dict(metrics.get("status", {}))
    counted = sum(status.values())
    count = len(durations) or counted
    ok_rate = (status.get("ok", 0) / counted) if counted else 1.0
    return {
        "count": count,
        "p95": _percentile(durations, 0.95) if durations else 0.0,
        "status": status,
        "ok_rate": round(ok_rate, 3),
    }


def _percentile(values: List[float], percentile: float) -> float:
    if not values:
        return 0.0
    percentile = max(0.0, min(1.0, percentile))
    ordered = sorted(values)
    if len(ordered) == 1:
        return ordered[0]
    pos = (len(ordered) - 1) * percentile
    lower_index = floor(pos)
    upper_index = min(lower_index + 1, len(ordered) - 1)
    fraction = pos - lower_index
    interpolated = ordered[lower_index] + (ordered[upper_index] - ordered[lower_index]) * fraction
    return round(interpolated)


def _coerce_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
