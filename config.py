from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

"""Config loader and validator.

Provides `load_config` which accepts either a path to a YAML file,
a dictionary or None and returns a normalized configuration dict
using DEFAULTS for missing values. A few backend keys may be overridden
from the environment (see ENV_OVERRIDES).
"""


SYSTEM_PROMPT = (
    "Output ONLY the answer. No intro. No fluff. No punctuation unless required. "
    "Answer with a single word if appropriate, otherwise a single sentence."
)

DEFAULTS: dict[str, Any] = {
    "register_count": 32,
    "base_url": "http://127.0.0.1:8080/v1",
    "api_key": "sk-no-key-required",
    "text_model": "LFM2-2.6B-Q5_K_M.gguf",
    "embedding_model": "Qwen3-Embedding-0.6B-Q4_1-imat.gguf",
    "system_prompt": SYSTEM_PROMPT,
    "temperature": 0.3,
    "max_tokens": None,
    "request_timeout": 60.0,
    "max_retries": 0,
    "file_root": ".",
    "build_dir": "build",
    "step_limit": None,
    "lenient_log": False,
}

ENV_OVERRIDES: dict[str, str] = {
    "LPU_BASE_URL": "base_url",
    "LPU_API_KEY": "api_key",
    "LPU_TEXT_MODEL": "text_model",
    "LPU_EMBEDDING_MODEL": "embedding_model",
}


class ConfigError(ValueError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def _optional(cfg: dict[str, Any], key: str, conv: type) -> None:
    v = cfg.get(key)
    cfg[key] = None if v is None else conv(v)


def _convert_types(cfg: dict[str, Any]) -> None:
    """Normalize types for configuration values in-place.

    Raises ConfigError on conversion failure.
    """
    try:
        cfg["register_count"] = int(cfg.get("register_count", DEFAULTS["register_count"]))

        for key in ("base_url", "api_key", "text_model", "embedding_model", "system_prompt", "file_root", "build_dir"):
            v = cfg.get(key)
            cfg[key] = str(DEFAULTS[key] if v is None else v)

        cfg["temperature"] = float(cfg.get("temperature", DEFAULTS["temperature"]))
        cfg["request_timeout"] = float(cfg.get("request_timeout", DEFAULTS["request_timeout"]))
        cfg["max_retries"] = int(cfg.get("max_retries", DEFAULTS["max_retries"]))
        _optional(cfg, "max_tokens", int)
        _optional(cfg, "step_limit", int)

        # lenient_log (bool coercion)
        cfg["lenient_log"] = bool(cfg.get("lenient_log", DEFAULTS["lenient_log"]))
    except (TypeError, ValueError) as e:
        msg = f"Bad types in config: {e}"
        raise ConfigError(msg) from e


def _validate_cfg(cfg: dict[str, Any]) -> None:
    """Perform semantic validation on normalized config dict.

    Raises ConfigError on invalid values.
    """
    unknown = sorted(set(cfg) - set(DEFAULTS))
    if unknown:
        msg = f"Unknown config keys: {', '.join(unknown)}"
        raise ConfigError(msg)

    if cfg["register_count"] not in (8, 32):
        msg = f"register_count must be 8 or 32, got {cfg['register_count']}"
        raise ConfigError(msg)

    if not cfg["base_url"]:
        msg = "base_url must not be empty"
        raise ConfigError(msg)

    if not (0.0 <= cfg["temperature"] <= 2.0):
        msg = "temperature must be in range 0..2"
        raise ConfigError(msg)

    if cfg["request_timeout"] <= 0:
        msg = "request_timeout must be positive"
        raise ConfigError(msg)

    if cfg["max_retries"] < 0:
        msg = "max_retries must be non-negative"
        raise ConfigError(msg)

    if cfg["max_tokens"] is not None and cfg["max_tokens"] <= 0:
        msg = "max_tokens must be positive or null"
        raise ConfigError(msg)

    if cfg["step_limit"] is not None and cfg["step_limit"] < 0:
        msg = "step_limit must be non-negative or null"
        raise ConfigError(msg)


def _apply_env(cfg: dict[str, Any], environ: dict[str, str] | None = None) -> None:
    env = os.environ if environ is None else environ
    for var, key in ENV_OVERRIDES.items():
        v = env.get(var)
        if v:
            cfg[key] = v


def load_config(
    path_or_dict: str | dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Load and normalize configuration.

    Accepts:
      - None -> returns DEFAULTS copy
      - dict -> overlay DEFAULTS with provided dict
      - str (path) -> load YAML and overlay DEFAULTS

    Environment overrides are applied last (`environ` defaults to os.environ).
    Returns a normalized dict or raises ConfigError.
    """
    if path_or_dict is None:
        cfg: dict[str, Any] = dict(DEFAULTS)
    elif isinstance(path_or_dict, dict):
        cfg = dict(DEFAULTS)
        cfg.update(path_or_dict)
    elif isinstance(path_or_dict, str):
        p = Path(path_or_dict)
        if not p.exists():
            msg = f"Config file not found: {path_or_dict}"
            raise ConfigError(msg)
        try:
            with p.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            msg = f"Failed to load config file {path_or_dict}: {e}"
            raise ConfigError(msg) from e
        if not isinstance(data, dict):
            msg = f"Config file {path_or_dict} does not contain a mapping"
            raise ConfigError(msg)
        cfg = dict(DEFAULTS)
        cfg.update(data)
    else:
        msg = "Unsupported config input"
        raise ConfigError(msg)

    _apply_env(cfg, environ)

    # convert types and validate semantics
    _convert_types(cfg)
    _validate_cfg(cfg)

    return cfg
