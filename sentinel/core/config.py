# sentinel/core/config.py
from __future__ import annotations
import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Literal, Dict, Any

import yaml

log = logging.getLogger(__name__)


@dataclass
class Settings:
    # DB
    db_path: str
    # Analysis oracle
    analysis_api_key: Optional[str]
    analysis_model: str
    analysis_timeout_sec: Optional[float]
    # Assistant oracle
    assistant_model: str
    # Public IP lookup
    ip_lookup_url: str
    ip_lookup_timeout_sec: float
    ip_lookup_cache_ttl: int
    # Verification flow
    scan_delay_ms: int
    # Device history retention
    device_history_cap: int
    device_dedup_window_sec: int
    # Verification history retention (None = unbounded)
    max_verification_results: Optional[int]
    # Credentials
    digest_scheme: Literal["legacy", "scrypt"]
    # Logging
    log_level: str
    # Informational
    cfg_file_used: Optional[str] = None

    @property
    def device_dedup_window_ms(self) -> int:
        return self.device_dedup_window_sec * 1000

_DEFAULTS: Dict[str, Any] = {
    "db": {"path": "data/sentinel.db"},
    "analysis": {
        "api_key": None,  # falls back to OPENAI_API_KEY
        "model": "gpt-4.1",
        "timeout_sec": 120,
    },
    "assistant": {"model": "gpt-4.1-mini"},
    "ip_lookup": {
        "url": "https://api.ipify.org?format=json",
        "timeout_sec": 5,
        "cache_ttl": 300,
    },
    "flow": {"scan_delay_ms": 800},
    "devices": {"history_cap": 50, "dedup_window_sec": 3600},
    "history": {"max_verification_results": None},
    "credentials": {"digest_scheme": "legacy"},
    "logging": {"level": "INFO"},
}

_SEARCH_ORDER = (
    "sentinel.yaml",
    "sentinel.yml",
    "sentinel.dev.yaml",
)

def _merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out

def _resolve_path(s: str, base_dir: Path) -> Optional[Path]:
    """
    Try multiple resolution strategies for a relative path:
    - as given relative to CWD
    - relative to the project root
    Return first existing path; else None.
    """
    p = Path(s)
    if p.is_absolute():
        return p if p.exists() else None
    for c in (Path.cwd() / p, base_dir / p, p):
        if c.exists():
            return c
    return None

def _substitute_env_vars(obj: Any) -> Any:
    """Replace "${VAR_NAME}" strings with the environment value, when set."""
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        var_name = obj[2:-1]
        env_value = os.getenv(var_name)
        if env_value:
            return env_value
        log.debug("Environment variable %s not set, keeping placeholder", var_name)
        return obj
    return obj

def _optional_number(value: Any, cast):
    if value is None or value == "":
        return None
    return cast(value)

def load_settings(path: Optional[str] = None) -> Settings:
    """
    Load YAML settings with sensible overrides:

    Priority:
      1) explicit `path` arg (absolute or relative)
      2) env SENTINEL_CONFIG (absolute or relative; robustly resolved)
      3) search order in project root: sentinel.yaml|yml|sentinel.dev.yaml
    """
    base_dir = Path(__file__).resolve().parent.parent.parent  # project root
    cfg_file_used: Optional[Path] = None

    if path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = _resolve_path(path, base_dir) or candidate
        if not candidate.exists():
            raise FileNotFoundError(f"Config file not found: {candidate}")
        cfg_file_used = candidate
    else:
        env_cfg = os.getenv("SENTINEL_CONFIG")
        if env_cfg:
            candidate = _resolve_path(env_cfg, base_dir)
            if not candidate:
                tried = [str(Path(env_cfg)), str(base_dir / env_cfg), str(Path.cwd() / env_cfg)]
                raise FileNotFoundError("SENTINEL_CONFIG not found. Tried: " + ", ".join(tried))
            cfg_file_used = candidate
        else:
            for name in _SEARCH_ORDER:
                p = base_dir / name
                if p.exists():
                    cfg_file_used = p
                    break

    data: Dict[str, Any] = {}
    if cfg_file_used:
        with open(cfg_file_used, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        data = _substitute_env_vars(data)
        log.info("Loaded config from: %s", str(cfg_file_used))

    cfg = _merge(_DEFAULTS, data)

    # API key: config value unless it is an unsubstituted placeholder, then env
    api_key = (cfg.get("analysis") or {}).get("api_key")
    if not api_key or (api_key.startswith("${") and api_key.endswith("}")):
        api_key = os.getenv("OPENAI_API_KEY") or None

    # Normalize db path; relative paths live under the project root
    db_path = (cfg.get("db") or {}).get("path") or "data/sentinel.db"
    if db_path != ":memory:":
        dbp = Path(db_path)
        if not dbp.is_absolute():
            dbp = base_dir / dbp
        db_path = str(dbp)

    scheme = str((cfg.get("credentials") or {}).get("digest_scheme") or "legacy").lower()
    if scheme not in ("legacy", "scrypt"):
        raise ValueError(f"Unknown credentials.digest_scheme: {scheme}")

    s = Settings(
        db_path=db_path,
        analysis_api_key=api_key,
        analysis_model=str((cfg.get("analysis") or {}).get("model") or "gpt-4.1"),
        analysis_timeout_sec=_optional_number((cfg.get("analysis") or {}).get("timeout_sec"), float),
        assistant_model=str((cfg.get("assistant") or {}).get("model") or "gpt-4.1-mini"),
        ip_lookup_url=str((cfg.get("ip_lookup") or {}).get("url")),
        ip_lookup_timeout_sec=float((cfg.get("ip_lookup") or {}).get("timeout_sec", 5)),
        ip_lookup_cache_ttl=int((cfg.get("ip_lookup") or {}).get("cache_ttl", 300)),
        scan_delay_ms=int((cfg.get("flow") or {}).get("scan_delay_ms", 800)),
        device_history_cap=int((cfg.get("devices") or {}).get("history_cap", 50)),
        device_dedup_window_sec=int((cfg.get("devices") or {}).get("dedup_window_sec", 3600)),
        max_verification_results=_optional_number((cfg.get("history") or {}).get("max_verification_results"), int),
        digest_scheme=scheme,  # type: ignore[arg-type]
        log_level=str((cfg.get("logging") or {}).get("level") or "INFO").upper(),
        cfg_file_used=str(cfg_file_used) if cfg_file_used else None,
    )
    return s
