"""Environment-driven configuration."""
import pytest

from config import DispatchConfig


class TestDispatchConfig:
    def test_defaults(self, monkeypatch):
        for name in ("SERVICE_AREA_RADIUS_KM", "KAFKA_BOOTSTRAP_SERVERS", "SEED_FLEET",
                     "STATE_SNAPSHOT_PATH", "LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)

        config = DispatchConfig.from_env()
        assert config.service_area_radius_km == 50.0
        assert config.location_tolerance_meters == 50.0
        assert config.low_battery_threshold == 20.0
        assert config.drone_offline_timeout_seconds == 300
        assert config.kafka_bootstrap_servers == ['localhost:9092']
        assert config.snapshot_path is None
        assert not config.seed_fleet
        assert not config.reconcile_rescue_jobs

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("SERVICE_AREA_RADIUS_KM", "25.5")
        monkeypatch.setenv("DRONE_OFFLINE_TIMEOUT_SECONDS", "120")
        monkeypatch.setenv("KAFKA_BOOTSTRAP_SERVERS", "kafka-1:9092, kafka-2:9092,")
        monkeypatch.setenv("STATE_SNAPSHOT_PATH", "/var/lib/dispatch/state.json")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        config = DispatchConfig.from_env()
        assert config.service_area_radius_km == 25.5
        assert config.drone_offline_timeout_seconds == 120
        assert config.kafka_bootstrap_servers == ['kafka-1:9092', 'kafka-2:9092']
        assert config.snapshot_path == "/var/lib/dispatch/state.json"
        assert config.log_level == "DEBUG"

    @pytest.mark.parametrize("raw,expected", [
        ("true", True), ("1", True), ("YES", True), ("on", True),
        ("false", False), ("0", False), ("nope", False),
    ])
    def test_boolean_flags(self, monkeypatch, raw, expected):
        monkeypatch.setenv("SEED_FLEET", raw)
        assert DispatchConfig.from_env().seed_fleet is expected

    def test_blank_value_falls_back_to_default(self, monkeypatch):
        monkeypatch.setenv("POLL_TIMEOUT_MS", "")
        assert DispatchConfig.from_env().poll_timeout_ms == 1000

    def test_invalid_integer(self, monkeypatch):
        monkeypatch.setenv("POLL_TIMEOUT_MS", "soon")
        with pytest.raises(ValueError, match="POLL_TIMEOUT_MS"):
            DispatchConfig.from_env()

    def test_invalid_number(self, monkeypatch):
        monkeypatch.setenv("LOW_BATTERY_THRESHOLD", "low")
        with pytest.raises(ValueError, match="LOW_BATTERY_THRESHOLD"):
            DispatchConfig.from_env()
