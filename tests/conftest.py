from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from taskplan.memory.schema import Snapshot  # noqa: E402


def make_snapshot(tasks: List[Dict[str, Any]] | None = None, **state: Any) -> Snapshot:
    """Build a snapshot from camelCase task payloads, filling ids and timestamps."""

    payload_tasks = []
    for index, task in enumerate(tasks or []):
        entry = {
            "id": f"t{index + 1}",
            "createdAt": "2024-05-01T09:00:00.000Z",
            "updatedAt": "2024-05-01T09:00:00.000Z",
        }
        entry.update(task)
        payload_tasks.append(entry)
    return Snapshot.model_validate({"data": {"tasks": payload_tasks}, "state": state})


def skeleton(kind: str, **fields: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"kind": kind, "confidence": 0.9, "source": "human"}
    payload.update(fields)
    return payload


def intent_step(kind: str, **fields: Any) -> Dict[str, Any]:
    return {"kind": "intent", "skeleton": skeleton(kind, **fields)}


def plan_of(*steps: Dict[str, Any], goal: str = "test goal") -> Dict[str, Any]:
    return {"version": 1, "goal": goal, "steps": list(steps)}


@pytest.fixture()
def report_snapshot() -> Snapshot:
    """Two active tasks sharing the word ``Report`` plus one unrelated task."""

    return make_snapshot(
        [
            {"title": "Report A", "status": "todo"},
            {"title": "Report B", "status": "in-progress", "priority": "high"},
            {"title": "Buy milk", "tags": ["home"]},
        ]
    )
