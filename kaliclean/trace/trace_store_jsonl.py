from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from kaliclean.audit.logger import append_private


class TraceStoreJSONL:
    """
    Owner-only JSONL file. Write errors propagate; the emitter decides
    whether they matter.
    """

    def __init__(self, path: Path):
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def append(self, event: dict[str, Any]) -> None:
        append_private(self._path, json.dumps(event, ensure_ascii=False, default=str) + "\n")
