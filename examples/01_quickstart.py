#!/usr/bin/env python3
"""Example: Quickstart — maintenance-safety

Minimal working example: open a session, make tracked changes to a
directory, mark a rollback point and undo everything.

Usage:
    python examples/01_quickstart.py

Requirements:
    pip install maintenance-safety
"""
from __future__ import annotations

import tempfile
from pathlib import Path

import maintenance_safety as ms


def main() -> None:
    print(f"maintenance-safety version: {ms.__version__}")

    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        work = root / "app"
        work.mkdir()
        (work / "app.cfg").write_text("workers=4\n", encoding="utf-8")
        (work / "cache.db").write_bytes(b"\x00" * 1024)

        # Step 1: Build an engine whose state lives in the temp directory
        config = ms.ConfigLoader().load_string(
            f"storage:\n  state_dir: {root / 'state'}\n"
            f"emergency_stop:\n  signal_path: {root / 'stop.signal'}\n"
        )
        engine = ms.SafetyEngine(config)

        # Step 2: Tracked changes, each recorded before it happens
        with engine.begin_session("quickstart") as session:
            session.modify_file(work / "app.cfg", "workers=16\n")
            point_id = session.create_rollback_point("tuned")
            session.delete_file(work / "cache.db")
            session.create_file(work / "NOTES.txt", "cleaned cache\n")
            print(f"Undo stack depth: {session.undo_stack.depth}")

            # Step 3: Undo back to the rollback point
            result = session.rollback_to_point(point_id)
            print(f"\nRolled back to '{point_id}': {len(result.reversed)} operation(s)")
            for step in result.reversed:
                print(f"  [{step.status.value.upper()}] #{step.operation.operation_id} {step.detail}")

            # Step 4: Undo the rest
            result = session.rollback_last(session.undo_stack.depth)
            print(f"\nRemaining rollback success: {result.success}")

        print(f"app.cfg is back to: {(work / 'app.cfg').read_text(encoding='utf-8').strip()}")
        print(f"cache.db restored: {(work / 'cache.db').exists()}")

        # Step 5: The journal keeps the full history
        summary = engine.journal.summary("quickstart")
        print(f"\nJournal records: {summary['total_records']}")
        print(f"Operations: {summary['operation_counts']}")


if __name__ == "__main__":
    main()
