#!/usr/bin/env python3
"""
Run the workflow timeout sweeper.

Loads the org directory from a YAML file (see
``StaticOrgDirectory.from_mapping``) and auto-approves overdue steps,
either once (``--once``) or every ``sweeper.interval_seconds`` until
interrupted.  Safe to run on several hosts at once.

Usage:
    python3 scripts/run_sweeper.py --directory config/directory.example.yaml --once
    APPROVAL_ENGINE_CONFIG=config/engine.yaml python3 scripts/run_sweeper.py --directory org.yaml
"""

import argparse
import signal
import sys
import threading
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Auto-advance overdue approval steps")
    p.add_argument("--directory", type=Path, required=True, help="Org directory YAML")
    p.add_argument("--config", default=None, help="Engine settings YAML (else APPROVAL_ENGINE_CONFIG)")
    p.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    return p.parse_args()


def main() -> int:
    args = _parse_args()

    from approval_batch.sweeper import WorkflowSweeper
    from approval_config import get_settings
    from approval_config.settings import load_yaml_file
    from approval_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
    from approval_kernel.logging_config import configure_logging
    from approval_services.decision_api import build_decision_service
    from approval_services.directory import StaticOrgDirectory
    from approval_services.sinks import LoggingEventSink

    settings = get_settings(args.config)
    configure_logging(level=settings.log_level)

    directory = StaticOrgDirectory.from_mapping(load_yaml_file(args.directory))
    init_engine_from_url(settings.database_url)
    create_tables()

    events = LoggingEventSink()
    decisions = build_decision_service(
        settings, directory, session_factory=get_session_factory(), events=events,
    )
    sweeper = WorkflowSweeper(
        decisions.session_factory,
        decisions.machine,
        decisions.clock,
        batch_size=settings.sweeper.batch_size,
        max_workers=settings.sweeper.max_workers,
        interval_seconds=settings.sweeper.interval_seconds,
        events=events,
    )

    if args.once:
        report = sweeper.tick()
        print(
            f"scanned={report.scanned} advanced={report.advanced} "
            f"lost_races={report.lost_races} failed={report.failed}"
        )
        return 1 if report.failed else 0

    done = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: done.set())
    signal.signal(signal.SIGTERM, lambda *_: done.set())

    sweeper.start()
    print(f"Sweeper running every {settings.sweeper.interval_seconds}s (Ctrl-C to stop)")
    done.wait()
    sweeper.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
