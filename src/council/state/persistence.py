"""Helpers for atomic JSON file operations and the file-backed persistence store."""

from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


class Persistence:
    """Handles atomic JSON file operations."""

    @staticmethod
    def load_json(file_path: Path) -> Dict[str, Any]:
        """Load JSON from file, return {} if not found or invalid."""
        if not file_path.exists():
            return {}

        try:
            with file_path.open("r", encoding="utf-8") as fp:
                data = json.load(fp)
            return data if isinstance(data, dict) else {}
        except (OSError, json.JSONDecodeError):
            return {}

    @staticmethod
    def save_json(file_path: Path, data: Mapping[str, Any]) -> None:
        """Atomically save JSON to file."""
        Persistence.ensure_dir(file_path.parent)
        tmp_fd, tmp_path = tempfile.mkstemp(dir=file_path.parent, suffix=".tmp")
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as fp:
                json.dump(data, fp, indent=2)
                fp.flush()
                os.fsync(fp.fileno())
            shutil.move(tmp_path, file_path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

    @staticmethod
    def ensure_dir(dir_path: Path) -> None:
        """Create directory if it doesn't exist."""
        dir_path.mkdir(parents=True, exist_ok=True)


_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]+")


class JsonFileStore:
    """Key/value persistence collaborator storing one JSON document per key.

    Keys map to ``<root>/<scope>/<key>.json``. ``load`` returns the stored
    mapping, or ``options["default"]`` (``None`` when absent) for a missing key.
    """

    def __init__(self, root: Path, default_scope: str = "global") -> None:
        self.root = Path(root)
        self.default_scope = default_scope

    def path_for(self, key: str, scope: Optional[str] = None) -> Path:
        safe_key = _SAFE_KEY.sub("_", key).strip("._") or "default"
        safe_scope = _SAFE_KEY.sub("_", scope or self.default_scope)
        return self.root / safe_scope / f"{safe_key}.json"

    def save(self, key: str, data: Mapping[str, Any], scope: Optional[str] = None) -> None:
        Persistence.save_json(self.path_for(key, scope), {"key": key, "data": dict(data)})

    def load(self, key: str, options: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
        options = options or {}
        path = self.path_for(key, options.get("scope"))
        if not path.exists():
            return options.get("default")
        stored = Persistence.load_json(path)
        data = stored.get("data")
        return data if isinstance(data, dict) else options.get("default")

    def delete(self, key: str, scope: Optional[str] = None) -> bool:
        path = self.path_for(key, scope)
        if not path.exists():
            return False
        path.unlink()
        return True
