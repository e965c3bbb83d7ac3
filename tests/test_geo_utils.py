"""Distance, arrival radius and ETA estimation."""
import pytest
from datetime import datetime, timedelta

from geo_utils import distance_between, distance_km, estimate_eta, within_radius
from models import Location
from tests.helpers import NEARBY, SF


class TestDistance:
    def test_known_distance_in_san_francisco(self):
        assert distance_km(37.7749, -122.4194, 37.7849, -122.4294) == pytest.approx(1.41, abs=0.05)

    def test_distance_is_symmetric(self):
        assert distance_between(SF, NEARBY) == pytest.approx(distance_between(NEARBY, SF))

    def test_same_point_is_zero(self):
        assert distance_between(SF, SF) == 0

    def test_accepts_any_object_with_coordinates(self):
        class Point:
            latitude = 37.7849
            longitude = -122.4294

        assert distance_between(SF, Point()) == pytest.approx(distance_between(SF, NEARBY))


class TestWithinRadius:
    def test_boundary_is_inclusive(self):
        radius = distance_between(SF, NEARBY) * 1000
        assert within_radius(SF, NEARBY, radius)

    def test_one_millimetre_outside_is_rejected(self):
        radius = distance_between(SF, NEARBY) * 1000
        assert not within_radius(SF, NEARBY, radius - 0.001)

    def test_small_offset_within_tolerance(self):
        close = Location(latitude=37.7751, longitude=-122.4194)  # ~22 m north
        assert within_radius(SF, close, 50)
        assert not within_radius(SF, close, 10)


class TestEstimateEta:
    def test_buffer_and_round_up(self):
        now = datetime(2024, 5, 1, 12, 0, 0)
        # 10 km at 60 km/h = 10 min, +15% = 11.5 min, rounded up to 12
        assert estimate_eta(10, 60, now) == now + timedelta(minutes=12)

    def test_zero_distance_is_now(self):
        now = datetime(2024, 5, 1, 12, 0, 0)
        assert estimate_eta(0, 50, now) == now

    def test_rejects_non_positive_speed(self):
        with pytest.raises(ValueError):
            estimate_eta(5, 0)
