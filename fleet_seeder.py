# Fleet Seeder
# File: fleet_seeder.py

"""
Starter fleet registered at the distribution center when the registry is empty.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fleet_registry import FleetRegistry
from models import Drone, DroneStatus, Location, new_id

logger = logging.getLogger(__name__)

DISTRIBUTION_CENTER = Location(
    latitude=37.7749,
    longitude=-122.4194,
    altitude=0.0,
    address="San Francisco Distribution Center",
)

# model, capabilities, max payload (kg), max range (km)
STARTER_FLEET = [
    ("DX-200", {'standard', 'fragile'}, 10.0, 50.0),
    ("HeavyLifter-Pro", {'standard', 'heavy'}, 25.0, 40.0),
    ("SpeedDrone-X1", {'standard', 'express'}, 5.0, 80.0),
    ("AllPurpose-500", {'standard', 'fragile', 'heavy'}, 15.0, 60.0),
]


def create_drone(drone_id: str, model: str, capabilities, max_payload: float,
                 max_range: float, base: Location = DISTRIBUTION_CENTER) -> Drone:
    """Fully charged, operational drone parked at its home base"""
    return Drone(
        id=drone_id,
        model=model,
        current_location=base,
        home_base=base,
        max_payload=max_payload,
        max_range=max_range,
        status=DroneStatus.OPERATIONAL,
        battery_level=100.0,
        capabilities=set(capabilities),
        last_maintenance_at=datetime.now(),
    )


def seed_fleet(fleet: FleetRegistry, base: Optional[Location] = None) -> List[Drone]:
    """
    Register the starter fleet if no drones exist

    Returns:
        Drones registered by this call (empty when the fleet was not empty)
    """
    existing = fleet.fleet_summary()['total']
    if existing:
        logger.info(f"Drones already exist ({existing} found). Skipping seeding.")
        return []

    seeded = []
    for model, capabilities, payload, max_range in STARTER_FLEET:
        drone = create_drone(new_id("DRN"), model, capabilities, payload, max_range,
                             base or DISTRIBUTION_CENTER)
        seeded.append(fleet.register(drone))
        logger.info(f"Seeded drone: {drone.id} ({drone.model})")

    logger.info(f"Seeded {len(seeded)} drones")
    return seeded
