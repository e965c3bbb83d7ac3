# Dispatch Engine Configuration
# File: config.py

"""
Runtime settings for the dispatch engine, loaded from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class DispatchConfig:
    """Configuration for the dispatch engine and its Kafka transport"""

    # Business rules
    service_area_radius_km: float = 50.0
    drone_offline_timeout_seconds: int = 300
    location_tolerance_meters: float = 50.0
    low_battery_threshold: float = 20.0
    default_speed_kmh: float = 50.0

    # Job reconciliation
    reconcile_interval_seconds: float = 30.0
    reconcile_rescue_jobs: bool = False

    # Kafka transport
    kafka_bootstrap_servers: List[str] = field(default_factory=lambda: ['localhost:9092'])
    kafka_client_id: str = "drone-dispatch-engine"
    kafka_group_id: str = "drone-dispatch"
    publish_timeout_seconds: float = 10.0
    poll_timeout_ms: int = 1000

    # Persistence / bootstrapping
    snapshot_path: Optional[str] = None
    seed_fleet: bool = False

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "DispatchConfig":
        servers = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
        return cls(
            service_area_radius_km=_env_float("SERVICE_AREA_RADIUS_KM", 50.0),
            drone_offline_timeout_seconds=_env_int("DRONE_OFFLINE_TIMEOUT_SECONDS", 300),
            location_tolerance_meters=_env_float("LOCATION_TOLERANCE_METERS", 50.0),
            low_battery_threshold=_env_float("LOW_BATTERY_THRESHOLD", 20.0),
            default_speed_kmh=_env_float("DEFAULT_DRONE_SPEED_KMH", 50.0),
            reconcile_interval_seconds=_env_float("RECONCILE_INTERVAL_SECONDS", 30.0),
            reconcile_rescue_jobs=_env_bool("RECONCILE_RESCUE_JOBS", False),
            kafka_bootstrap_servers=[s.strip() for s in servers.split(',') if s.strip()],
            kafka_client_id=os.getenv("KAFKA_CLIENT_ID", "drone-dispatch-engine"),
            kafka_group_id=os.getenv("KAFKA_GROUP_ID", "drone-dispatch"),
            publish_timeout_seconds=_env_float("PUBLISH_TIMEOUT_SECONDS", 10.0),
            poll_timeout_ms=_env_int("POLL_TIMEOUT_MS", 1000),
            snapshot_path=os.getenv("STATE_SNAPSHOT_PATH") or None,
            seed_fleet=_env_bool("SEED_FLEET", False),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
