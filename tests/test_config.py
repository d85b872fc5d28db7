import os
from pathlib import Path

import pytest

from council.config import ConfigLoader


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("COUNCIL_"):
            monkeypatch.delenv(key, raising=False)


def test_first_run_creates_default_files(tmp_path: Path):
    config = ConfigLoader(global_dir=tmp_path / "global", project_dir=tmp_path / "project")

    assert (tmp_path / "global" / "config.toml").exists()
    creds = tmp_path / "global" / "credentials.toml"
    assert creds.exists()
    assert config.get("orchestration.default_mode") == "synthesis"
    assert config.get_float("orchestration.action_timeout_seconds", 0) == 60.0
    assert config.get("missing.key", "fallback") == "fallback"
    assert config.log_dir == tmp_path / "global" / "logs"

    reloaded = ConfigLoader(global_dir=tmp_path / "global", project_dir=tmp_path / "project")
    assert reloaded.get_int("orchestration.max_run_history", 0) == 10


def test_project_config_and_env_overrides(tmp_path: Path, monkeypatch):
    project = tmp_path / "project"
    project.mkdir()
    (project / "config.toml").write_text('[orchestration]\ndefault_mode = "compilation"\nretry_delay_ms = 5\n')
    monkeypatch.setenv("COUNCIL_ORCHESTRATION__RETRY_DELAY_MS", "7")
    monkeypatch.setenv("COUNCIL_ORCHESTRATION__ALLOW_CONCURRENT_RUNS", "yes")

    config = ConfigLoader(global_dir=tmp_path / "global", project_dir=project)

    assert config.get("orchestration.default_mode") == "compilation"
    assert config.get_int("orchestration.retry_delay_ms", 0) == 7
    assert config.get_bool("orchestration.allow_concurrent_runs") is True
    assert config.get("threads.context_format") == "dialogue"


def test_credentials_are_read_and_permissions_checked(tmp_path: Path):
    global_dir = tmp_path / "global"
    global_dir.mkdir()
    creds = global_dir / "credentials.toml"
    creds.write_text('[llm]\napi_key = "sk-test"\n')
    creds.chmod(0o600)

    config = ConfigLoader(global_dir=global_dir, project_dir=tmp_path / "project")
    assert config.get_credential("llm", "api_key") == "sk-test"
    assert config.get_credential("other", "api_key") is None

    creds.chmod(0o644)
    with pytest.raises(PermissionError):
        ConfigLoader(global_dir=global_dir, project_dir=tmp_path / "project")


def test_bad_numbers_fall_back(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("COUNCIL_THREADS__MAX_MESSAGES", "many")

    config = ConfigLoader(global_dir=tmp_path / "global", project_dir=tmp_path / "project")

    assert config.get_int("threads.max_messages", 100) == 100
