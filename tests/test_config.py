import pytest
from pathlib import Path

from vidcore import config as config_module
from vidcore.config import env_overrides, load_yaml, merge_dicts, resolve_config
from vidcore.models import VidcoreConfig


def test_default_config_loads():
    """Test default.yaml loads without errors."""
    config = resolve_config(environ={})
    assert isinstance(config, VidcoreConfig)
    assert config.queue.max_stall_retries == 3
    assert config.queue.max_attempts == 4
    assert config.workers.video_concurrency == 1
    assert config.workers.email_concurrency == 4
    assert config.extractor.seek_offset_s == 5
    assert config.storage.bucket is None


def test_cli_override_db():
    """Test CLI args override YAML defaults."""
    config = resolve_config({"db": "/tmp/other-queue.db"}, environ={})
    assert config.queue.db_path == "/tmp/other-queue.db"


def test_cli_override_email_concurrency():
    config = resolve_config({"email_concurrency": 8}, environ={})
    assert config.workers.email_concurrency == 8


def test_cli_ignores_unrelated_args():
    config = resolve_config({"command": "worker", "topic": ["video-processing"]}, environ={})
    assert config == resolve_config(environ={})


def test_env_overrides():
    """Test the deployment's environment variables."""
    environ = {
        "AWS_REGION": "eu-west-1",
        "AWS_S3_BUCKET": "videos-prod",
        "AWS_SES_FROM_EMAIL": "noreply@example.com",
        "VIDCORE_DB": "/var/lib/vidcore/queue.db",
    }
    config = resolve_config(environ=environ)
    assert config.storage.region == "eu-west-1"
    assert config.email.region == "eu-west-1"
    assert config.storage.bucket == "videos-prod"
    assert config.email.from_address == "noreply@example.com"
    assert config.queue.db_path == "/var/lib/vidcore/queue.db"


def test_cli_beats_environment():
    config = resolve_config({"bucket": "from-cli"}, environ={"AWS_S3_BUCKET": "from-env"})
    assert config.storage.bucket == "from-cli"


def test_empty_env_values_ignored():
    assert env_overrides({"AWS_S3_BUCKET": ""}) == {}


def test_local_yaml_overrides_default(tmp_path, monkeypatch):
    local = tmp_path / "local.yaml"
    local.write_text("workers:\n  email_concurrency: 2\nqueue:\n  stall_interval_s: 60\n")
    monkeypatch.setattr(config_module, "LOCAL_CONFIG_PATH", local)

    config = resolve_config(environ={})
    assert config.workers.email_concurrency == 2
    assert config.queue.stall_interval_s == 60
    assert config.queue.heartbeat_interval_s == 10


def test_merge_dicts_is_recursive():
    merged = merge_dicts({"queue": {"a": 1, "b": 2}}, {"queue": {"b": 3}})
    assert merged == {"queue": {"a": 1, "b": 3}}


def test_missing_yaml_returns_empty_dict():
    """Test graceful handling of missing config files."""
    result = load_yaml(Path("nonexistent.yaml"))
    assert result == {}


def test_heartbeat_must_beat_stall_interval():
    with pytest.raises(ValueError):
        VidcoreConfig.from_dict({"queue": {"stall_interval_s": 5, "heartbeat_interval_s": 10}})


def test_video_concurrency_fixed_at_one():
    with pytest.raises(ValueError):
        VidcoreConfig.from_dict({"workers": {"video_concurrency": 2}})
