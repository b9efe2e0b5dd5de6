"""Tests for core configuration classes."""

from __future__ import annotations

import pytest

from bucketsync.core.chunking import MIB
from bucketsync.core.config import ConfigError, EngineConfig, StoreConfig


class TestStoreConfig:
    """Tests for StoreConfig class."""

    def test_defaults(self) -> None:
        """Should default to an S3 store in us-east-1."""
        config = StoreConfig(bucket="backups")
        assert config.type == "s3"
        assert config.region == "us-east-1"
        assert config.access_key is None

    def test_unknown_type_rejected(self) -> None:
        """Should reject unknown store types."""
        with pytest.raises(ConfigError, match="Unknown store type"):
            StoreConfig(type="ftp")

    def test_endpoint_trailing_slash_removed(self) -> None:
        """Should strip trailing slash from the endpoint URL."""
        config = StoreConfig(bucket="b", endpoint_url="https://r2.example.com/")
        assert config.endpoint_url == "https://r2.example.com"

    def test_location_aws(self) -> None:
        """AWS buckets should render as s3:// URLs."""
        assert StoreConfig(bucket="b").location == "s3://b"

    def test_location_custom_endpoint(self) -> None:
        """Custom endpoints should appear in the location."""
        config = StoreConfig(bucket="b", endpoint_url="http://minio:9000")
        assert config.location == "http://minio:9000/b"

    def test_location_local(self) -> None:
        """Local stores should show their directory."""
        assert StoreConfig(type="local", local_path="/srv/store").location == "local:/srv/store"

    def test_to_dict_drops_secrets(self) -> None:
        """Credentials should not be serialized by default."""
        config = StoreConfig(bucket="b", access_key="AK", secret_key="SK")

        data = config.to_dict()

        assert "access_key" not in data
        assert "secret_key" not in data
        assert data["bucket"] == "b"

    def test_to_dict_with_secrets(self) -> None:
        """include_secrets should keep credentials."""
        config = StoreConfig(bucket="b", access_key="AK", secret_key="SK")
        assert config.to_dict(include_secrets=True)["secret_key"] == "SK"

    def test_from_dict_ignores_unknown_keys(self) -> None:
        """Unknown keys should be ignored."""
        config = StoreConfig.from_dict({"bucket": "b", "region": "auto", "colour": "blue"})
        assert config.bucket == "b"
        assert config.region == "auto"


class TestEngineConfig:
    """Tests for EngineConfig class."""

    def test_defaults(self) -> None:
        """Should carry the documented defaults."""
        config = EngineConfig()
        assert config.part_size == 10 * MIB
        assert config.per_transfer_concurrency == 6
        assert config.max_concurrent_operations == 12
        assert config.max_part_attempts == 5
        assert config.verify_integrity is True
        assert config.resume_on_start is True
        assert config.lease_ttl == 30.0

    def test_round_trip(self) -> None:
        """from_dict(to_dict()) should give an equal config."""
        config = EngineConfig(part_size=16 * MIB, max_part_attempts=3, listing_ttl=0.0)
        assert EngineConfig.from_dict(config.to_dict()) == config

    def test_from_dict_ignores_unknown_keys(self) -> None:
        """Unknown keys should be ignored."""
        config = EngineConfig.from_dict({"max_part_attempts": 2, "legacy": True})
        assert config.max_part_attempts == 2

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"part_size": 0},
            {"per_transfer_concurrency": 0},
            {"max_concurrent_operations": 0},
            {"max_part_attempts": 0},
            {"initial_backoff": -1.0},
            {"backoff_multiplier": 0.5},
            {"part_timeout": 0},
            {"speed_window": 0},
            {"listing_ttl": -1},
            {"lease_ttl": 0},
            {"lease_ttl": -5.0},
        ],
    )
    def test_invalid_values_rejected(self, kwargs: dict[str, float]) -> None:
        """Out of range values should raise ConfigError."""
        with pytest.raises(ConfigError):
            EngineConfig(**kwargs)

    def test_config_error_is_value_error(self) -> None:
        """ConfigError should be a ValueError."""
        assert issubclass(ConfigError, ValueError)
