"""JSON-lines run event log."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Optional

from ..orchestrator.events import EventChannel, RunEvent


class RunLogger:
    """Appends one JSON object per run event to ``<log_dir>/runs.log``."""

    def __init__(self, log_dir: Path, filename: str = "runs.log") -> None:
        self.logs_dir = Path(log_dir)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.logs_dir / filename
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self, channel: EventChannel) -> "RunLogger":
        self._unsubscribe = channel.subscribe(self)
        return self

    def detach(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def __call__(self, event: RunEvent) -> None:
        with self.path.open("a", encoding="utf-8") as fp:
            fp.write(json.dumps(event.to_dict(), default=str) + "\n")
