from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from ..utils.normalize import normalize_base_url, parse_bool

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://127.0.0.1:8080/api"
DEFAULT_TIMEOUT = 10.0
DEFAULT_STATE_DIR = os.path.join(os.path.expanduser("~"), ".config", "relay-console")

CONFIG_ENV = "RELAY_CONSOLE_CONFIG"


@dataclass
class ConsoleSettings:
    api_url: str = DEFAULT_API_URL
    public_url: str = ""
    sub_password: str = ""
    timeout: float = DEFAULT_TIMEOUT
    verify_tls: bool = True
    state_dir: str = DEFAULT_STATE_DIR


def config_path() -> str:
    return os.environ.get(CONFIG_ENV) or os.path.join(DEFAULT_STATE_DIR, "config.json")


def _clamp_timeout(raw: Any) -> float:
    try:
        v = float(str(raw).strip())
    except (TypeError, ValueError):
        return DEFAULT_TIMEOUT
    if v < 1.0:
        v = 1.0
    if v > 120.0:
        v = 120.0
    return v


def _load_file(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except ValueError:
            logger.warning("ignoring malformed config file path=%s", path)
            return {}
    if not isinstance(data, dict):
        return {}
    return data


def load_settings(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> ConsoleSettings:
    """Read settings from the JSON config file, then overlay RELAY_CONSOLE_* variables."""
    env = os.environ if environ is None else environ
    data = _load_file(path or config_path())

    overrides = {
        "api_url": env.get("RELAY_CONSOLE_API_URL"),
        "public_url": env.get("RELAY_CONSOLE_PUBLIC_URL"),
        "sub_password": env.get("RELAY_CONSOLE_SUB_PASSWORD"),
        "timeout": env.get("RELAY_CONSOLE_TIMEOUT"),
        "verify_tls": env.get("RELAY_CONSOLE_VERIFY_TLS"),
        "state_dir": env.get("RELAY_CONSOLE_STATE_DIR"),
    }
    for key, value in overrides.items():
        if value is not None and str(value).strip() != "":
            data[key] = value

    return ConsoleSettings(
        api_url=normalize_base_url(str(data.get("api_url") or "")) or DEFAULT_API_URL,
        public_url=normalize_base_url(str(data.get("public_url") or ""), default_scheme="https"),
        sub_password=str(data.get("sub_password") or "").strip(),
        timeout=_clamp_timeout(data.get("timeout", DEFAULT_TIMEOUT)),
        verify_tls=parse_bool(data.get("verify_tls"), default=True),
        state_dir=str(data.get("state_dir") or DEFAULT_STATE_DIR).strip(),
    )


def save_settings(settings: ConsoleSettings, path: Optional[str] = None) -> str:
    target = path or config_path()
    parent = os.path.dirname(target)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(target, "w", encoding="utf-8") as f:
        json.dump(asdict(settings), f, ensure_ascii=False, indent=2)
    return target
