"""Configuration loader for the Council (global + project with TOML-based defaults)."""

from __future__ import annotations

import os
import platform
import stat
from pathlib import Path
from typing import Any, Dict, Optional

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for Python <3.11
    import tomli as tomllib  # type: ignore


class ConfigLoader:
    """
    Handles configuration loading from multiple sources with priority resolution.

    Priority (highest → lowest):
    1. Command-line arguments (not handled here)
    2. Environment variables (COUNCIL_*)
    3. Project config (.council/config.toml)
    4. Global config (~/.config/council/config.toml)
    5. Built-in defaults
    """

    def __init__(self, global_dir: Optional[Path] = None, project_dir: Optional[Path] = None) -> None:
        self.global_dir = Path(global_dir) if global_dir else self.get_global_config_dir()
        self.project_dir = Path(project_dir) if project_dir else self.get_project_config_dir()

        self.config: Dict[str, Any] = {}
        self.credentials: Dict[str, Any] = {}

        self._load_all()

    # ------------------------------------------------------------------ #
    # Public getters
    # ------------------------------------------------------------------ #
    def get(self, key: str, default: Any = None) -> Any:
        """Get config value by dot-separated key."""
        keys = key.split(".")
        value: Any = self.config
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    def get_float(self, key: str, default: float) -> float:
        """Get a numeric value; env overrides arrive as strings."""
        try:
            return float(self.get(key, default))
        except (TypeError, ValueError):
            return default

    def get_int(self, key: str, default: int) -> int:
        try:
            return int(self.get(key, default))
        except (TypeError, ValueError):
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key, default)
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)

    def get_credential(self, provider: str, key: str) -> Optional[str]:
        """Get credential for a provider section of credentials.toml."""
        return self.credentials.get(provider, {}).get(key)

    @property
    def log_dir(self) -> Path:
        return Path(str(self.get("general.log_dir", self.global_dir / "logs"))).expanduser()

    # ------------------------------------------------------------------ #
    # Load/merge helpers
    # ------------------------------------------------------------------ #
    def _load_all(self) -> None:
        """Load all configuration files with proper priority."""
        self._load_global_config()
        self._load_credentials()

        if self.project_dir:
            self._load_project_config()

        self._apply_env_overrides()

    def _load_global_config(self) -> None:
        """Load global configuration, merged over built-in defaults."""
        self.config = self._get_default_config()
        config_file = self.global_dir / "config.toml"
        if config_file.exists():
            with open(config_file, "rb") as f:
                self._deep_merge(self.config, tomllib.load(f))
        else:
            self._create_default_config()

    def _load_credentials(self) -> None:
        """Load credentials with security checks."""
        creds_file = self.global_dir / "credentials.toml"

        if not creds_file.exists():
            self._create_default_credentials()
            return

        if platform.system() != "Windows":
            st = creds_file.stat()
            # world/group readable bits disallowed
            if st.st_mode & (stat.S_IRWXG | stat.S_IRWXO):
                raise PermissionError(
                    f"Insecure permissions on {creds_file}. Run: chmod 600 {creds_file}"
                )

        with open(creds_file, "rb") as f:
            self.credentials = tomllib.load(f)

    def _load_project_config(self) -> None:
        """Load project-specific config and merge with global."""
        config_file = self.project_dir / "config.toml"
        if config_file.exists():
            with open(config_file, "rb") as f:
                project_config = tomllib.load(f)
                self._deep_merge(self.config, project_config)

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides (COUNCIL_SECTION__KEY)."""
        env_prefix = "COUNCIL_"
        for key, value in os.environ.items():
            if not key.startswith(env_prefix) or key == "COUNCIL_API_KEY":
                continue
            # Double underscore separates sections so keys may keep single underscores.
            config_key = key[len(env_prefix) :].lower().replace("__", ".")
            self._set_nested(self.config, config_key, value)

    # ------------------------------------------------------------------ #
    # Static paths/helpers
    # ------------------------------------------------------------------ #
    @staticmethod
    def get_global_config_dir() -> Path:
        """Get platform-specific global config directory following XDG spec."""
        system = platform.system()
        if system == "Windows":
            base = Path(os.environ.get("APPDATA", "~\\AppData\\Roaming")).expanduser()
        elif system == "Darwin":
            xdg = os.environ.get("XDG_CONFIG_HOME")
            base = Path(xdg) if xdg else Path.home() / ".config"
        else:
            base = Path(os.environ.get("XDG_CONFIG_HOME", "~/.config")).expanduser()
        return base / "council"

    @staticmethod
    def get_project_config_dir() -> Path | None:
        """Find .council directory in current or parent directories."""
        current = Path.cwd()
        for parent in [current] + list(current.parents):
            config_dir = parent / ".council"
            if config_dir.is_dir():
                return config_dir
        return None

    # ------------------------------------------------------------------ #
    # Persistence helpers
    # ------------------------------------------------------------------ #
    def _create_default_config(self) -> None:
        self.global_dir.mkdir(parents=True, exist_ok=True)
        config_file = self.global_dir / "config.toml"
        with open(config_file, "w", encoding="utf-8") as f:
            f.write(self._get_default_config_toml())

    def _create_default_credentials(self) -> None:
        self.global_dir.mkdir(parents=True, exist_ok=True)
        creds_file = self.global_dir / "credentials.toml"
        with open(creds_file, "w", encoding="utf-8") as f:
            f.write("# Add your API credentials here, e.g.\n# [llm]\n# api_key = \"...\"\n")
        if platform.system() != "Windows":
            os.chmod(creds_file, 0o600)

    # ------------------------------------------------------------------ #
    # Default content
    # ------------------------------------------------------------------ #
    def _get_default_config(self) -> Dict[str, Any]:
        """Built-in defaults."""
        return {
            "general": {
                "version": "1.0.0",
                "log_level": "info",
                "log_dir": str(self.global_dir / "logs"),
            },
            "orchestration": {
                "default_mode": "synthesis",
                "allow_concurrent_runs": False,
                "action_timeout_seconds": 60.0,
                "phase_timeout_seconds": 0,
                "pipeline_timeout_seconds": 0,
                "retry_delay_ms": 1000,
                "max_run_history": 10,
            },
            "threads": {
                "max_messages": 100,
                "context_format": "dialogue",
            },
            "injection": {
                "cache_ttl_seconds": 30,
                "cache_max_entries": 128,
            },
            "llm": {
                "base_url": "https://api.openai.com/v1",
                "model": "gpt-4o-mini",
                "timeout_seconds": 60.0,
            },
        }

    def _get_default_config_toml(self) -> str:
        """Default config TOML text for first-run creation."""
        default = self._get_default_config()
        return "\n".join(
            [
                "[general]",
                f'version = "{default["general"]["version"]}"',
                f'log_level = "{default["general"]["log_level"]}"',
                "",
                "[orchestration]",
                f'default_mode = "{default["orchestration"]["default_mode"]}"',
                "allow_concurrent_runs = false",
                "action_timeout_seconds = 60.0",
                "# 0 disables the phase/pipeline budgets",
                "phase_timeout_seconds = 0",
                "pipeline_timeout_seconds = 0",
                "retry_delay_ms = 1000",
                "max_run_history = 10",
                "",
                "[threads]",
                "max_messages = 100",
                'context_format = "dialogue"',
                "",
                "[injection]",
                "cache_ttl_seconds = 30",
                "cache_max_entries = 128",
                "",
                "[llm]",
                f'base_url = "{default["llm"]["base_url"]}"',
                f'model = "{default["llm"]["model"]}"',
                "timeout_seconds = 60.0",
                "",
            ]
        )

    # ------------------------------------------------------------------ #
    # Utility helpers
    # ------------------------------------------------------------------ #
    def _deep_merge(self, base: dict, override: dict) -> None:
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def _set_nested(self, d: dict, path: str, value: Any) -> None:
        keys = path.split(".")
        for key in keys[:-1]:
            d = d.setdefault(key, {})
        d[keys[-1]] = value


Config = ConfigLoader

__all__ = ["ConfigLoader", "Config"]
