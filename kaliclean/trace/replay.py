from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional


class Replay:
    """
    Reads a run trace back, optionally filtered by event type or operation.
    """

    def __init__(self, path: Path):
        self._path = path

    def iter_events(self) -> Iterable[Dict[str, Any]]:
        if not self._path.exists():
            return
        with self._path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                yield json.loads(line)

    def select(self, *, event_type: Optional[str] = None, op_id: Optional[str] = None) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for e in self.iter_events():
            if event_type and e.get("event_type") != event_type:
                continue
            if op_id and e.get("op_id") != op_id:
                continue
            out.append(e)
        return out

    def final_states(self) -> Dict[str, str]:
        """op_id -> last recorded state."""
        states: Dict[str, str] = {}
        for e in self.iter_events():
            op_id = e.get("op_id")
            state = e.get("state")
            if isinstance(op_id, str) and isinstance(state, str):
                states[op_id] = state
        return states
