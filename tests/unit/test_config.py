"""Unit tests for configuration management."""

import pytest
from pydantic import ValidationError

from lineage_pipeline.config import (
    ArchiveSettings,
    ChannelSettings,
    ReconstructorSettings,
    Settings,
    StoreSettings,
    get_settings,
    reload_settings,
)


def test_default_settings():
    """Test default settings are loaded correctly."""
    settings = Settings()

    assert settings.app_name == "Data Lineage Pipeline"
    assert settings.app_version == "1.0.0"
    assert settings.port == 8000
    assert settings.embedded_worker is False


def test_channel_defaults():
    """Test channel defaults match the managed queue semantics."""
    channel = ChannelSettings()

    assert channel.backend == "memory"
    assert channel.visibility_timeout == 300.0
    assert channel.max_receive_count == 3
    assert channel.dead_letter_retention_days == 14
    assert channel.record_batch_size == 100
    assert channel.record_batching_window == 60.0


def test_channel_backend_validation():
    """Test invalid channel backends are rejected."""
    assert ChannelSettings(backend="REDIS").backend == "redis"
    with pytest.raises(ValidationError):
        ChannelSettings(backend="sqs")


def test_channel_env_prefix(monkeypatch):
    """Test channel settings read CHANNEL_ variables."""
    monkeypatch.setenv("CHANNEL_MAX_RECEIVE_COUNT", "5")
    monkeypatch.setenv("CHANNEL_VISIBILITY_TIMEOUT", "30")

    channel = ChannelSettings()

    assert channel.max_receive_count == 5
    assert channel.visibility_timeout == 30.0


def test_store_settings():
    """Test store defaults and validation."""
    assert StoreSettings().ttl_days == 90
    with pytest.raises(ValidationError):
        StoreSettings(backend="dynamo")
    with pytest.raises(ValidationError):
        StoreSettings(ttl_days=0)


def test_archive_settings():
    """Test archive backend validation."""
    assert ArchiveSettings().backend == "local"
    assert ArchiveSettings(backend="S3").backend == "s3"
    with pytest.raises(ValidationError):
        ArchiveSettings(backend="gcs")


def test_reconstructor_defaults():
    """Test reconstructor defaults."""
    retrace = ReconstructorSettings()

    assert retrace.processing_timeout == 300.0
    assert retrace.settle_seconds == 960.0
    assert retrace.purge_after_archive is False


def test_lineage_policy_missing_file(tmp_path):
    """Test a missing policy file means no action pruning."""
    retrace = ReconstructorSettings(policy_path=tmp_path / "missing.yaml")

    assert retrace.lineage_actions() is None


def test_lineage_policy_from_yaml(tmp_path):
    """Test lineage actions are read from the YAML policy."""
    policy = tmp_path / "lineage.yaml"
    policy.write_text("lineage:\n  lineage_actions:\n    - extract\n    - join\n")

    retrace = ReconstructorSettings(policy_path=policy)

    assert retrace.lineage_actions() == ["extract", "join"]


def test_lineage_policy_empty_list(tmp_path):
    """Test an empty action list means no action pruning."""
    policy = tmp_path / "lineage.yaml"
    policy.write_text("lineage:\n  lineage_actions: []\n")

    assert ReconstructorSettings(policy_path=policy).lineage_actions() is None


def test_get_settings_cached():
    """Test that get_settings returns cached instance."""
    assert get_settings() is get_settings()


def test_reload_settings():
    """Test that reload_settings creates new instance."""
    settings1 = get_settings()
    settings2 = reload_settings()

    assert settings1 is not settings2
