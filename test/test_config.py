from __future__ import annotations

from pathlib import Path

import pytest
from config import DEFAULTS, ConfigError, load_config


def test_defaults() -> None:
    cfg = load_config(None, environ={})
    assert cfg == DEFAULTS


def test_yaml_file_overlays_defaults(tmp_path: Path) -> None:
    p = tmp_path / "lpu.yaml"
    p.write_text("register_count: 8\ntemperature: 0\nstep_limit: '100'\n", encoding="utf-8")
    cfg = load_config(str(p), environ={})
    assert cfg["register_count"] == 8
    assert cfg["temperature"] == 0.0
    assert cfg["step_limit"] == 100
    assert cfg["text_model"] == DEFAULTS["text_model"]


def test_environment_overrides_file() -> None:
    env = {"LPU_BASE_URL": "http://gpu:9000/v1", "LPU_TEXT_MODEL": "tiny", "LPU_API_KEY": ""}
    cfg = load_config({"text_model": "big"}, environ=env)
    assert cfg["base_url"] == "http://gpu:9000/v1"
    assert cfg["text_model"] == "tiny"
    assert cfg["api_key"] == DEFAULTS["api_key"]


@pytest.mark.parametrize(
    "bad",
    [
        {"register_count": 16},
        {"register_count": "many"},
        {"temperature": 3},
        {"request_timeout": 0},
        {"max_retries": -1},
        {"max_tokens": 0},
        {"step_limit": -5},
        {"no_such_key": 1},
    ],
)
def test_invalid_values(bad: dict) -> None:
    with pytest.raises(ConfigError):
        load_config(bad, environ={})


def test_missing_and_malformed_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "absent.yaml"))
    p = tmp_path / "list.yaml"
    p.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(p))
    q = tmp_path / "broken.yaml"
    q.write_text("a: [1, 2\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(q))


def test_unsupported_input() -> None:
    with pytest.raises(ConfigError):
        load_config(42)  # type: ignore[arg-type]
