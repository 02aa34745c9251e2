import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .models import WhiteLabConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> (dotted config path, converter)
ENV_OVERRIDES = {
    "PAGE_CACHE_FRESH_MS": ("cache.fresh_ttl_s", lambda v: float(v) / 1000.0),
    "PAGE_CACHE_STALE_MS": ("cache.stale_ttl_s", lambda v: float(v) / 1000.0),
    "WHITELAB_DB_PATH": ("storage.db_path", str),
}


def get_config_value(config: Union[WhiteLabConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: WhiteLabConfig model or dict
        path: Dot-separated path like "cache.fresh_ttl_s"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, WhiteLabConfig):
        config = config.model_dump()

    keys = path.split(".")
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def set_dotted(data: Dict[str, Any], path: str, value: Any) -> None:
    """Assign ``value`` at a dotted path, creating intermediate dicts."""
    keys = path.split(".")
    target = data
    for key in keys[:-1]:
        target = target.setdefault(key, {})
    target[keys[-1]] = value


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}
    for name, (path, convert) in ENV_OVERRIDES.items():
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            set_dotted(data, path, convert(raw))
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", name, raw)
    return data


def resolve_config(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
    default_path: Path = DEFAULT_CONFIG_PATH,
    local_path: Path = LOCAL_CONFIG_PATH,
) -> WhiteLabConfig:
    """
    Resolve config: Default < Local < Environment < Overrides
    Returns validated Pydantic WhiteLabConfig model.

    Overrides use dotted keys, e.g. {"cache.fresh_ttl_s": 5}.
    """
    overrides = overrides or {}

    # 1. Load default YAML
    config_data = load_yaml(default_path)

    # 2. Merge local overrides
    config_data = merge_dicts(config_data, load_yaml(local_path))

    # 3. Environment
    config_data = merge_dicts(config_data, env_overrides(environ))

    # 4. Explicit overrides
    for path, value in overrides.items():
        if value is not None:
            set_dotted(config_data, path, value)

    return WhiteLabConfig.from_dict(config_data)
