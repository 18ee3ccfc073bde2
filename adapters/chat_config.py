"""Layered configuration for the folder chat client and stub server.

Layers, lowest precedence first:
1. DEFAULTS
2. YAML file (.folder-chat.yaml or an explicit path)
3. FOLDER_CHAT_* environment overrides

After merging, {env:VAR} tokens are resolved against an allowlist so a
config file can reference secrets without containing them. Use
redact_config() / redact_headers() before logging anything.
"""

from __future__ import annotations

import copy
import logging
import os
import re
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger("folder_chat.chat_config")

DEFAULT_CONFIG_PATH = ".folder-chat.yaml"

# Redaction sentinel
REDACTED = "***REDACTED***"

DEFAULTS: Dict[str, Any] = {
    "client": {
        "base_url": "http://127.0.0.1:3001",
        "chat_path": "/chat",
        "api_key": "",
        "stream": True,
        "history_limit": 10,
        "connect_timeout_ms": 5000,
        "read_timeout_ms": 60000,
        "total_timeout_ms": 300000,
    },
    "server": {
        "chunk_size": 16,
        "answer": "",
        "sources": [],
        "progress": [],
    },
}

# Env var → (section, key, type)
_ENV_OVERRIDES = {
    "FOLDER_CHAT_URL": ("client", "base_url", str),
    "FOLDER_CHAT_PATH": ("client", "chat_path", str),
    "FOLDER_CHAT_API_KEY": ("client", "api_key", str),
    "FOLDER_CHAT_STREAM": ("client", "stream", bool),
    "FOLDER_CHAT_HISTORY_LIMIT": ("client", "history_limit", int),
}

_ENV_ALLOWLIST = [
    re.compile(r"^FOLDER_CHAT_"),
    re.compile(r"^ANTHROPIC_API_KEY$"),
]

_INTERP_RE = re.compile(r"\{env:([^}]+)\}")

_SENSITIVE_KEY_RE = re.compile(
    r"(auth|key|secret|token|password|credential|bearer)",
    re.IGNORECASE,
)


# ── Interpolation ─────────────────────────────────────────────────────


def interpolate_value(value: str) -> str:
    """Resolve {env:VAR} tokens. Raises ValueError for disallowed or unset vars."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if not any(p.search(var_name) for p in _ENV_ALLOWLIST):
            raise ValueError(
                f"Environment variable '{var_name}' is not in the allowlist. "
                f"Allowed: ^FOLDER_CHAT_.*, ^ANTHROPIC_API_KEY$"
            )
        val = os.environ.get(var_name)
        if val is None:
            raise ValueError(f"Environment variable '{var_name}' is not set")
        return val

    return _INTERP_RE.sub(_replace, value)


def interpolate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in config.items():
        if isinstance(value, str) and _INTERP_RE.search(value):
            result[key] = interpolate_value(value)
        elif isinstance(value, dict):
            result[key] = interpolate_config(value)
        else:
            result[key] = value
    return result


# ── Layering ──────────────────────────────────────────────────────────


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base. Overlay values win. Inputs are not modified."""
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    overlay: Dict[str, Any] = {}
    for var_name, (section, key, kind) in _ENV_OVERRIDES.items():
        raw = environ.get(var_name)
        if raw is None or raw == "":
            continue
        if kind is bool:
            value: Any = _parse_bool(raw)
        elif kind is int:
            try:
                value = int(raw)
            except ValueError:
                logger.warning("Ignoring %s=%r: not an integer", var_name, raw)
                continue
        else:
            value = raw
        overlay.setdefault(section, {})[key] = value
    return overlay


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load the merged, interpolated config.

    An explicit path must exist; the default path is optional.
    """
    config = copy.deepcopy(DEFAULTS)

    config_path = path or DEFAULT_CONFIG_PATH
    if os.path.exists(config_path):
        with open(config_path) as f:
            file_config = yaml.safe_load(f) or {}
        if not isinstance(file_config, dict):
            raise ValueError(f"Config file must contain a mapping: {config_path}")
        config = deep_merge(config, file_config)
    elif path:
        raise FileNotFoundError(f"Config not found: {path}")

    config = deep_merge(config, env_overrides())
    config = interpolate_config(config)
    logger.debug("Loaded config: %s", redact_config(config))
    return config


# ── Redaction ─────────────────────────────────────────────────────────


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of config safe for logging: sensitive keys masked."""
    result: Dict[str, Any] = {}
    for key, value in config.items():
        if isinstance(value, dict):
            result[key] = redact_config(value)
        elif _SENSITIVE_KEY_RE.search(key) and value:
            result[key] = REDACTED
        else:
            result[key] = value
    return result


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {
        key: REDACTED if _SENSITIVE_KEY_RE.search(key) else value
        for key, value in headers.items()
    }
