"""Run variables: phase-local and global scopes, plus output routing."""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..state.pipelines import Action, VariableScope

logger = logging.getLogger("council.variables")

DEFAULT_GLOBALS = (
    "instructions",
    "outlineDraft",
    "finalOutline",
    "firstDraft",
    "secondDraft",
    "finalDraft",
    "commentary",
)


class _NotSet:
    """Value of a declared variable that has not been written."""

    _instance: Optional["_NotSet"] = None

    def __new__(cls) -> "_NotSet":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_SET"

    def __deepcopy__(self, memo: Dict[int, Any]) -> "_NotSet":
        return self

    def __copy__(self) -> "_NotSet":
        return self


NOT_SET = _NotSet()


def as_text(value: Any) -> str:
    """Substitution text for a variable value; NOT_SET and None become ''."""
    if value is NOT_SET or value is None:
        return ""
    return value if isinstance(value, str) else str(value)


class VariableStore:
    """Engine-owned variable maps for one run."""

    def __init__(self, initial_globals: Optional[Mapping[str, Any]] = None) -> None:
        self.global_vars: Dict[str, Any] = {name: NOT_SET for name in DEFAULT_GLOBALS}
        self.global_vars.update(initial_globals or {})
        self.phase_local: Dict[str, Any] = {}

    def begin_phase(self, initial: Optional[Mapping[str, Any]] = None) -> None:
        self.phase_local = dict(initial or {})

    def end_phase(self, promote: Sequence[str] = ()) -> List[str]:
        """Promote the named phase-local values to global, then clear the phase scope."""
        promoted = []
        for name in promote:
            if name in self.phase_local:
                self.global_vars[name] = self.phase_local[name]
                promoted.append(name)
        self.phase_local = {}
        return promoted

    def get(self, name: str) -> Any:
        """Phase-local first, then global; NOT_SET when neither has it."""
        if name in self.phase_local:
            return self.phase_local[name]
        return self.global_vars.get(name, NOT_SET)

    def get_scoped(self, name: str, scope: VariableScope) -> Any:
        target = self.phase_local if scope == VariableScope.PHASE else self.global_vars
        return target.get(name, NOT_SET)

    def is_declared(self, name: str) -> bool:
        return name in self.phase_local or name in self.global_vars

    def set(self, name: str, value: Any, scope: VariableScope = VariableScope.GLOBAL) -> None:
        target = self.phase_local if scope == VariableScope.PHASE else self.global_vars
        target[name] = value

    def append(self, name: str, value: str, scope: VariableScope, separator: str = "\n\n") -> None:
        existing = self.get_scoped(name, scope)
        if existing is NOT_SET or existing in ("", None):
            self.set(name, value, scope)
        else:
            self.set(name, f"{as_text(existing)}{separator}{value}", scope)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {
            "phase_local": copy.deepcopy(self.phase_local),
            "global": copy.deepcopy(self.global_vars),
        }

    def to_plain(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot with NOT_SET rendered as None, for export."""

        def _clean(values: Mapping[str, Any]) -> Dict[str, Any]:
            return {k: (None if v is NOT_SET else copy.deepcopy(v)) for k, v in values.items()}

        return {"phase_local": _clean(self.phase_local), "global": _clean(self.global_vars)}


_Write = Tuple[str, VariableScope, str, bool]


class OutputRouter:
    """Routes action outputs into variables.

    Sequential actions write immediately. Async, immediate, and ``on``
    actions stage their writes; staged writes are applied by ``reconcile``
    in action definition order. A name already written by a sequential
    action in the current phase keeps the sequential value and the staged
    write is reported as a conflict.
    """

    def __init__(
        self,
        store: VariableStore,
        on_conflict: Optional[Callable[[str, str, VariableScope], None]] = None,
    ) -> None:
        self.store = store
        self.on_conflict = on_conflict
        self._sequential_writes: set = set()
        self._staged: Dict[str, List[_Write]] = {}

    def begin_phase(self) -> None:
        self._sequential_writes = set()
        self._staged = {}

    def route(self, action: Action, output: str, staged: bool = False) -> None:
        spec = action.output
        if not spec.variable:
            return
        write: _Write = (spec.variable, spec.scope, output, spec.append)
        if staged:
            self._staged.setdefault(action.id, []).append(write)
            return
        self._apply(write)
        self._sequential_writes.add((spec.scope, spec.variable))

    def reconcile(self, definition_order: Sequence[str], only: Optional[Iterable[str]] = None) -> List[str]:
        """Apply staged writes; returns the variable names that conflicted."""
        wanted = set(only) if only is not None else None
        conflicts: List[str] = []
        for action_id in definition_order:
            if wanted is not None and action_id not in wanted:
                continue
            for write in self._staged.pop(action_id, []):
                name, scope, _, _ = write
                if (scope, name) in self._sequential_writes:
                    conflicts.append(name)
                    logger.info("Staged write to %s from %s dropped; sequential value kept", name, action_id)
                    if self.on_conflict:
                        self.on_conflict(action_id, name, scope)
                    continue
                self._apply(write)
        return conflicts

    def has_staged(self, action_id: str) -> bool:
        return action_id in self._staged

    def _apply(self, write: _Write) -> None:
        name, scope, value, append = write
        if append:
            self.store.append(name, value, scope)
        else:
            self.store.set(name, value, scope)
