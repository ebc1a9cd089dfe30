from __future__ import annotations

from pathlib import Path

import pytest

from anugrah_server.config import load_config


def test_missing_file_returns_defaults(tmp_path: Path, clean_env):
    cfg = load_config(str(tmp_path / "nope.yaml"))
    assert cfg["gemini"]["model"] == "gemini-2.5-flash"
    assert cfg["server"]["cors_origins"] == ["*"]


def test_file_values_merge_over_defaults(config_file: Path, clean_env):
    cfg = load_config(str(config_file))
    assert cfg["chat"]["greeting"] == "Hello from Anugrah."
    assert cfg["chat"]["max_sessions"] == 4
    # untouched sections keep their defaults
    assert cfg["gemini"]["max_retries"] == 3


def test_env_var_selects_config_file(config_file: Path, clean_env, monkeypatch):
    monkeypatch.setenv("ANUGRAH_CONFIG", str(config_file))
    assert load_config()["chat"]["greeting"] == "Hello from Anugrah."


def test_env_overrides_are_coerced(config_file: Path, clean_env, monkeypatch):
    monkeypatch.setenv("ANUGRAH__GEMINI__MODEL", "gemini-2.5-pro")
    monkeypatch.setenv("ANUGRAH__GEMINI__RETRY_DELAY", "0.5")
    monkeypatch.setenv("ANUGRAH__CHAT__MAX_SESSIONS", "10")
    monkeypatch.setenv("ANUGRAH__NEW__FLAG", "true")

    cfg = load_config(str(config_file))

    assert cfg["gemini"]["model"] == "gemini-2.5-pro"
    assert cfg["gemini"]["retry_delay"] == 0.5
    assert cfg["chat"]["max_sessions"] == 10
    assert cfg["new"]["flag"] is True


def test_invalid_yaml_raises(tmp_path: Path, clean_env):
    p = tmp_path / "bad.yaml"
    p.write_text("chat: [unclosed\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_config(str(p))


def test_non_mapping_yaml_raises(tmp_path: Path, clean_env):
    p = tmp_path / "list.yaml"
    p.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_config(str(p))


def test_repo_config_is_loadable(project_root: Path, clean_env):
    cfg = load_config(str(project_root / "config.yaml"))
    assert "Anugrah" in cfg["chat"]["greeting"]
    assert cfg["gemini"]["model"]
