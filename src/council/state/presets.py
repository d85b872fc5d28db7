"""Preset capability interfaces and the preset manager."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from ..errors import NotFound

logger = logging.getLogger("council.presets")

PRESET_SCOPE = "presets"


class SupportsPresetExport(ABC):
    """Component that contributes a section to an exported preset."""

    preset_key: str = ""

    @abstractmethod
    def export_preset(self) -> Dict[str, Any]:
        """Return this component's preset section as plain data."""


class SupportsPresetApply(ABC):
    """Component that can be reconfigured from a preset section."""

    preset_key: str = ""

    @abstractmethod
    def apply_preset(self, data: Mapping[str, Any], merge: bool = False) -> None:
        """Replace (or merge into) this component's state from a preset section."""


class PresetManager:
    """Collects preset sections from registered components and applies them back.

    Components are applied in registration order, so register the agent
    registry before the hierarchy and the hierarchy before the pipelines.
    """

    def __init__(self, store: Optional[Any] = None) -> None:
        self.store = store
        self._components: List[object] = []

    def register(self, component: object) -> None:
        if not isinstance(component, (SupportsPresetExport, SupportsPresetApply)):
            raise TypeError(
                f"{type(component).__name__} does not declare a preset capability"
            )
        key = getattr(component, "preset_key", "")
        if not key:
            raise ValueError(f"{type(component).__name__} has no preset_key")
        if any(getattr(c, "preset_key", "") == key for c in self._components):
            raise ValueError(f"Duplicate preset key: {key}")
        self._components.append(component)

    def export_all(self, name: str = "preset") -> Dict[str, Any]:
        """Build a preset document from every exporting component."""
        sections: Dict[str, Any] = {}
        for component in self._components:
            if isinstance(component, SupportsPresetExport):
                sections[component.preset_key] = component.export_preset()
        return {
            "name": name,
            "exported_at": datetime.utcnow().isoformat(),
            "sections": sections,
        }

    def apply(self, preset: Mapping[str, Any], merge: bool = False) -> List[str]:
        """Apply matching sections; returns the keys that were applied."""
        sections = preset.get("sections", {})
        applied: List[str] = []
        for component in self._components:
            if not isinstance(component, SupportsPresetApply):
                continue
            section = sections.get(component.preset_key)
            if section is None:
                continue
            component.apply_preset(section, merge=merge)
            applied.append(component.preset_key)
        logger.info("Applied preset %s: %s", preset.get("name", "?"), ", ".join(applied) or "nothing")
        return applied

    def save(self, name: str) -> Dict[str, Any]:
        """Export and persist a preset under ``name``."""
        if self.store is None:
            raise RuntimeError("No persistence store configured")
        preset = self.export_all(name)
        self.store.save(name, preset, PRESET_SCOPE)
        return preset

    def load(self, name: str, merge: bool = False) -> List[str]:
        """Load a persisted preset and apply it."""
        if self.store is None:
            raise RuntimeError("No persistence store configured")
        preset = self.store.load(name, {"scope": PRESET_SCOPE})
        if not preset:
            raise NotFound(f"Preset '{name}' not found")
        return self.apply(preset, merge=merge)
