from pathlib import Path

import pytest
from pydantic import ValidationError

from whitelab_media.config import (
    env_overrides,
    get_config_value,
    load_yaml,
    merge_dicts,
    resolve_config,
    set_dotted,
)
from whitelab_media.models import WhiteLabConfig

REPO_DEFAULT = Path(__file__).resolve().parent.parent / "config" / "default.yaml"


def resolve(tmp_path, overrides=None, environ=None, local=None):
    local_path = tmp_path / "local.yaml"
    if local is not None:
        local_path.write_text(local)
    return resolve_config(
        overrides,
        environ=environ or {},
        default_path=REPO_DEFAULT,
        local_path=local_path,
    )


def test_default_config_loads(tmp_path):
    """Test default.yaml loads without errors."""
    config = resolve(tmp_path)
    assert isinstance(config, WhiteLabConfig)
    assert config.storage.db_path == "content/white-lab.sqlite"
    assert config.worker.poll_interval_s == 1.2
    assert config.worker.invalidate_prefix == "page:"
    assert config.cache.fresh_ttl_s == 30
    assert config.cache.stale_ttl_s == 180
    assert config.media.webp_quality == 82
    assert config.media.video_preset == "veryfast"


def test_missing_files_fall_back_to_model_defaults(tmp_path):
    """Test no YAML at all still yields a valid config."""
    config = resolve_config(
        environ={},
        default_path=tmp_path / "nope.yaml",
        local_path=tmp_path / "nope-local.yaml",
    )
    assert config == WhiteLabConfig()


def test_local_yaml_overrides_default(tmp_path):
    """Test local.yaml is merged over default.yaml."""
    config = resolve(tmp_path, local="cache:\n  fresh_ttl_s: 5\n")
    assert config.cache.fresh_ttl_s == 5
    assert config.cache.stale_ttl_s == 180


def test_env_overrides_cache_ttls(tmp_path):
    """Test PAGE_CACHE_*_MS are read in milliseconds."""
    config = resolve(
        tmp_path,
        environ={"PAGE_CACHE_FRESH_MS": "5000", "PAGE_CACHE_STALE_MS": "60000"},
    )
    assert config.cache.fresh_ttl_s == 5
    assert config.cache.stale_ttl_s == 60


def test_env_overrides_db_path(tmp_path):
    config = resolve(tmp_path, environ={"WHITELAB_DB_PATH": "/data/site.sqlite"})
    assert config.storage.db_path == "/data/site.sqlite"


def test_invalid_env_value_ignored(caplog):
    """Test a non-numeric TTL is skipped with a warning."""
    with caplog.at_level("WARNING"):
        data = env_overrides({"PAGE_CACHE_FRESH_MS": "soon", "PAGE_CACHE_STALE_MS": ""})
    assert data == {}
    assert "PAGE_CACHE_FRESH_MS" in caplog.text


def test_explicit_overrides_win(tmp_path):
    """Test dotted overrides beat environment and YAML."""
    config = resolve(
        tmp_path,
        overrides={"cache.fresh_ttl_s": 1, "media.webp_quality": "90", "storage.db_path": None},
        environ={"PAGE_CACHE_FRESH_MS": "5000"},
        local="cache:\n  fresh_ttl_s: 7\n",
    )
    assert config.cache.fresh_ttl_s == 1
    assert config.media.webp_quality == 90
    assert config.storage.db_path == "content/white-lab.sqlite"


def test_invalid_override_rejected(tmp_path):
    """Test values are validated by the config models."""
    with pytest.raises(ValidationError):
        resolve(tmp_path, overrides={"media.video_preset": "warp-speed"})


def test_missing_yaml_returns_empty_dict():
    """Test graceful handling of missing config files."""
    result = load_yaml(Path("nonexistent.yaml"))
    assert result == {}


def test_merge_dicts_is_recursive():
    base = {"cache": {"fresh_ttl_s": 30, "stale_ttl_s": 180}, "worker": {"poll_interval_s": 1.2}}
    merged = merge_dicts(base, {"cache": {"fresh_ttl_s": 5}})
    assert merged == {"cache": {"fresh_ttl_s": 5, "stale_ttl_s": 180}, "worker": {"poll_interval_s": 1.2}}
    assert base["cache"]["fresh_ttl_s"] == 30


def test_set_dotted_creates_sections():
    data = {}
    set_dotted(data, "media.webp_quality", 75)
    assert data == {"media": {"webp_quality": 75}}


def test_get_config_value_from_model_and_dict():
    """Test dotted lookups on both config shapes."""
    config = WhiteLabConfig()
    assert get_config_value(config, "worker.stalled_minutes") == 30
    assert get_config_value(config.model_dump(), "cache.stale_ttl_s") == 180
    assert get_config_value(config, "cache.nope", default="x") == "x"
