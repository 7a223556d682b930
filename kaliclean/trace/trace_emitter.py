from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from .trace_store_jsonl import TraceStoreJSONL


class TraceEmitter:
    """
    Records operation state transitions for one run.

    Events are always kept in memory; they are written to `store` only when
    one is given (no store under --no-log).
    """

    def __init__(self, store: TraceStoreJSONL | None, run_id: str):
        self._store = store
        self._run_id = run_id
        self._events: list[dict[str, Any]] = []

    @property
    def events(self) -> list[dict[str, Any]]:
        return list(self._events)

    def emit(
        self,
        event_type: str,
        *,
        op_id: str | None = None,
        state: str | None = None,
        decision: str | None = None,
        message: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        event: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "run_id": self._run_id,
            "event_type": event_type,
        }
        if op_id is not None:
            event["op_id"] = op_id
        if state is not None:
            event["state"] = state
        if decision is not None:
            event["decision"] = decision
        if message is not None:
            event["message"] = message
        if data is not None:
            event["data"] = data

        self._events.append(event)
        if self._store is None:
            return
        try:
            self._store.append(event)
        except OSError:
            # Trace is auxiliary to the audit log; keep running in memory.
            self._store = None
