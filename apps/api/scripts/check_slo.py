#!/usr/bin/env python3
"""SLO監視: flow イベントログを再生し、閾値違反があれば非0で終了する。

    python -m apps.api.scripts.check_slo [events.jsonl] [--thresholds JSON] [--output report.json]

閾値は API の ``/api/metrics/slo`` と同じ ``metrics.load_thresholds()`` を使う。
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List

ROOT = Path(__file__).resolve().parents[3]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from apps.api.services import metrics

OUTPUT_ENV = "FORMULAFLOW_SLO_OUTPUT"


def _parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Check flow latency/ok-rate SLOs against the event log.")
    parser.add_argument("event_log", nargs="?", help="JSONL event log (defaults to the metrics log path)")
    parser.add_argument("--thresholds", help="JSON object overriding per-event thresholds")
    parser.add_argument("--output", default=os.getenv(OUTPUT_ENV), help=f"write the report here (env {OUTPUT_ENV})")
    return parser.parse_args(argv)


def failing_events(violations: Dict[str, Dict[str, bool]]) -> List[str]:
    return sorted(name for name, checks in violations.items() if any(checks.values()))


def build_report(target: Path, thresholds: Dict[str, Dict[str, float]]) -> Dict[str, Any]:
    events = list(metrics.load_event_log(target))
    metrics.bootstrap_from_events(events)
    violations = metrics.detect_violations(thresholds)
    return {
        "event_log": str(target),
        "events_read": len(events),
        "slo_thresholds": thresholds,
        "snapshot": metrics.slo_snapshot(),
        "violations": violations,
        "failing": failing_events(violations),
    }


def main(argv: List[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    target = Path(args.event_log) if args.event_log else metrics.get_event_log_path()
    report = build_report(target, metrics.load_thresholds(args.thresholds))

    print(json.dumps(report, ensure_ascii=False, indent=2))
    if args.output:
        out = Path(args.output)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(report, ensure_ascii=False, indent=2), encoding="utf-8")

    return 1 if report["failing"] else 0


if __name__ == "__main__":
    sys.exit(main())
