"""Human review checkpoints that suspend a run until resolved."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import InvalidGavelResolution
from .variables import NOT_SET


class GavelResolution(str, Enum):
    APPROVE = "approve"
    EDIT_AND_APPROVE = "edit-and-approve"
    SKIP = "skip"


_ALIASES = {
    "approve": GavelResolution.APPROVE,
    "edit-and-approve": GavelResolution.EDIT_AND_APPROVE,
    "edit_and_approve": GavelResolution.EDIT_AND_APPROVE,
    "skip": GavelResolution.SKIP,
}


def parse_resolution(value: Any) -> GavelResolution:
    if isinstance(value, GavelResolution):
        return value
    resolution = _ALIASES.get(str(value).strip().lower()) if value is not None else None
    if resolution is None:
        raise InvalidGavelResolution(
            f"Unknown gavel resolution {value!r}; expected approve, edit-and-approve, or skip"
        )
    return resolution


@dataclass(frozen=True)
class GavelRequest:
    """What the reviewer sees."""

    id: str
    run_id: str
    phase_id: str
    action_id: Optional[str]
    prompt: str
    text: str
    can_skip: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def event_payload(self) -> Dict[str, Any]:
        """Fields for a ``gavel.requested`` event; the event carries the run id itself."""
        payload = self.to_dict()
        del payload["run_id"]
        payload["gavel_id"] = payload.pop("id")
        return payload


@dataclass(frozen=True)
class GavelDecision:
    resolution: GavelResolution
    text: Any

    @property
    def skipped(self) -> bool:
        return self.resolution == GavelResolution.SKIP


class GavelGate:
    """Holds at most one pending review request for a run.

    Callers serialize requests; opening a second one while the first is
    pending is a programming error.
    """

    def __init__(self) -> None:
        self.pending: Optional[GavelRequest] = None
        self._future: Optional[asyncio.Future] = None

    def open(
        self,
        run_id: str,
        phase_id: str,
        action_id: Optional[str],
        prompt: str,
        text: str,
        can_skip: bool = True,
    ) -> GavelRequest:
        if self.pending is not None:
            raise RuntimeError(f"Gavel {self.pending.id} is still pending")
        self.pending = GavelRequest(
            id=uuid.uuid4().hex[:12],
            run_id=run_id,
            phase_id=phase_id,
            action_id=action_id,
            prompt=prompt,
            text=text,
            can_skip=can_skip,
        )
        self._future = asyncio.get_running_loop().create_future()
        return self.pending

    async def wait(self) -> GavelDecision:
        if self._future is None:
            raise RuntimeError("No gavel is pending")
        try:
            return await self._future
        finally:
            self.pending = None
            self._future = None

    def decide(self, resolution: Any, text: Optional[str] = None) -> GavelDecision:
        """Validate a resolution against the pending request without applying it."""
        if self.pending is None:
            raise InvalidGavelResolution("No gavel is pending")
        parsed = parse_resolution(resolution)
        if parsed == GavelResolution.SKIP:
            if not self.pending.can_skip:
                raise InvalidGavelResolution(f"Gavel {self.pending.id} cannot be skipped")
            return GavelDecision(parsed, NOT_SET)
        if parsed == GavelResolution.EDIT_AND_APPROVE:
            if text is None:
                raise InvalidGavelResolution("edit-and-approve requires replacement text")
            return GavelDecision(parsed, text)
        return GavelDecision(parsed, self.pending.text)

    def resolve(self, decision: GavelDecision) -> None:
        if self._future is not None and not self._future.done():
            self._future.set_result(decision)

    def cancel(self) -> None:
        if self._future is not None and not self._future.done():
            self._future.cancel()
