# circles_node/config.py
import copy
import logging
import os
from typing import Any, Dict, List, Optional

import yaml

log = logging.getLogger(__name__)

CONFIG_FILENAME = "circles_config.yaml"

# -------- Defaults (non-secret) --------
_DEFAULT: Dict[str, Any] = {
    "persistence": {"driver": "memory", "data_dir": "data"},
    "ranking": {
        "cache_max_age_sec": 3600,
        "list_types": ["proposals", "goals"],
    },
    "staleness": {
        # inline=True runs invalidation on the request thread (tests, tiny deployments)
        "inline": False,
        "batch_size": 200,
        "workers": 2,
        "sweep_interval_sec": 300,
        "reminder_hours": 24,
    },
    "authorization": {"moderators": [], "grants": {}},
    "logging": {"level": "INFO"},
    "server": {"host": "0.0.0.0", "port": 8000},
    "cors": {"origins": ["*"]},
}

# -------- ENV overrides --------
_ENV_MAP = {
    ("persistence", "data_dir"): ("CIRCLES_DATA_DIR", str),
    ("persistence", "driver"): ("CIRCLES_PERSISTENCE", str),
    ("logging", "level"): ("CIRCLES_LOG_LEVEL", str),
    ("server", "host"): ("CIRCLES_HOST", str),
    ("server", "port"): ("CIRCLES_PORT", int),
    ("ranking", "cache_max_age_sec"): ("CIRCLES_RANK_CACHE_MAX_AGE", float),
}


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in (overlay or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    for (section, key), (env_name, cast) in _ENV_MAP.items():
        val = os.getenv(env_name)
        if val is None:
            continue
        try:
            casted = cast(val)
        except ValueError:
            log.warning("ignoring %s=%r (expected %s)", env_name, val, cast.__name__)
            continue
        cfg[section] = dict(cfg.get(section) or {})
        cfg[section][key] = casted
    return cfg


def config_path(repo_root: Optional[str] = None) -> str:
    explicit = os.getenv("CIRCLES_CONFIG")
    if explicit:
        return explicit
    return os.path.join(repo_root or os.getcwd(), CONFIG_FILENAME)


def load_config(repo_root: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Loads circles_config.yaml from repo_root (or the file named by
    CIRCLES_CONFIG) over the built-in defaults, then applies ENV
    overrides and finally `overrides` (used by tests).
    A missing or unparsable file leaves the defaults in place.
    """
    path = config_path(repo_root)
    cfg = copy.deepcopy(_DEFAULT)

    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError):
            log.warning("could not read %s; using defaults", path, exc_info=True)
            data = {}
        if isinstance(data, dict):
            cfg = _deep_merge(cfg, data)

    cfg = _apply_env_overrides(cfg)
    if overrides:
        cfg = _deep_merge(cfg, overrides)

    origins = cfg.get("cors", {}).get("origins")
    if isinstance(origins, str):
        cfg["cors"]["origins"] = [origins]

    list_types = cfg.get("ranking", {}).get("list_types")
    if isinstance(list_types, str):
        cfg["ranking"]["list_types"] = [list_types]

    return cfg


def configure_logging(cfg: Dict[str, Any]) -> None:
    level_name = str(cfg.get("logging", {}).get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


# -------- Small helpers used by the app --------
def get_bind_host(cfg: Dict[str, Any]) -> str:
    return str(cfg.get("server", {}).get("host", "0.0.0.0"))


def get_bind_port(cfg: Dict[str, Any]) -> int:
    return int(cfg.get("server", {}).get("port", 8000))


def get_cors_origins(cfg: Dict[str, Any]) -> List[str]:
    return list(cfg.get("cors", {}).get("origins", []))


def get_persistence_driver(cfg: Dict[str, Any]) -> str:
    return str(cfg.get("persistence", {}).get("driver", "memory")).lower()


def get_data_dir(cfg: Dict[str, Any]) -> str:
    return str(cfg.get("persistence", {}).get("data_dir", "data"))


def get_cache_max_age(cfg: Dict[str, Any]) -> float:
    return float(cfg.get("ranking", {}).get("cache_max_age_sec", 3600))


def get_list_types(cfg: Dict[str, Any]) -> List[str]:
    return [str(t) for t in cfg.get("ranking", {}).get("list_types", ["proposals", "goals"])]


def get_staleness_settings(cfg: Dict[str, Any]) -> Dict[str, Any]:
    s = cfg.get("staleness", {}) or {}
    return {
        "inline": bool(s.get("inline", False)),
        "batch_size": int(s.get("batch_size", 200)),
        "workers": int(s.get("workers", 2)),
        "sweep_interval_sec": float(s.get("sweep_interval_sec", 300)),
        "reminder_hours": float(s.get("reminder_hours", 24)),
    }
