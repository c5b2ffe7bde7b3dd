#!/usr/bin/env python3
"""Example: Emergency stop — maintenance-safety

A multi-step maintenance job is halted by an emergency stop raised
half-way through, then the operator rolls back what was done and clears
the stop.

Usage:
    python examples/02_emergency_stop.py

Requirements:
    pip install maintenance-safety
"""
from __future__ import annotations

import tempfile
from pathlib import Path

import maintenance_safety as ms


def main() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        logs = root / "logs"
        logs.mkdir()
        for day in range(1, 6):
            (logs / f"2024-01-0{day}.log").write_text(f"day {day}\n", encoding="utf-8")

        config = ms.ConfigLoader().load_string(
            f"storage:\n  state_dir: {root / 'state'}\n"
            f"emergency_stop:\n  signal_path: {root / 'stop.signal'}\n"
        )
        engine = ms.SafetyEngine(config)
        session = engine.begin_session("log-rotation")

        def delete(path: Path):  # type: ignore[no-untyped-def]
            def step(s: ms.SafetySession) -> None:
                s.delete_file(path)
                print(f"  deleted {path.name}")
                if path.name.startswith("2024-01-02"):
                    engine.raise_emergency_stop("wrong retention window")

            return step

        print("Rotating logs:")
        steps = [delete(p) for p in sorted(logs.iterdir())]
        try:
            session.run_steps(steps)
        except ms.EmergencyStopped as exc:
            print(f"\nHalted: {exc.reason}")

        status = engine.status()
        print(f"Stop state: {status['stop']['state']}")  # type: ignore[index]

        result = session.rollback_last(session.undo_stack.depth)
        print(f"Rollback while stopped reversed {len(result.reversed)} (stopped={result.stopped})")

        engine.reset_stop()
        result = session.rollback_last(session.undo_stack.depth)
        print(f"Rollback after reset reversed {len(result.reversed)} operation(s)")
        print(f"Logs present: {sorted(p.name for p in logs.iterdir())}")

        session.end()
        engine.close()


if __name__ == "__main__":
    main()
