"""Tests for great-circle distance and coordinate validation."""
import math

import pytest

from src.core.geo import haversine_km, is_valid_coordinate


class TestHaversine:
    """Tests for haversine_km."""

    def test_same_point_returns_zero(self):
        assert haversine_km(12.9716, 77.5946, 12.9716, 77.5946) == 0

    def test_known_distance_bengaluru_to_mysuru(self):
        """Bengaluru to Mysuru is roughly 128 km in a straight line."""
        distance = haversine_km(12.9716, 77.5946, 12.2958, 76.6394)

        assert 120 < distance < 135

    def test_short_distance_one_km(self):
        # ~0.009 degrees of latitude is 1 km
        distance = haversine_km(12.9716, 77.5946, 12.9806, 77.5946)

        assert 0.95 < distance < 1.05

    def test_is_symmetric(self):
        a = haversine_km(12.9, 77.5, 13.1, 77.7)
        b = haversine_km(13.1, 77.7, 12.9, 77.5)

        assert a == pytest.approx(b)


class TestIsValidCoordinate:
    """Tests for is_valid_coordinate."""

    def test_valid_pair(self):
        assert is_valid_coordinate(12.9716, 77.5946) is True

    @pytest.mark.parametrize(
        "latitude,longitude",
        [
            (None, 77.5),
            (12.9, None),
            (91.0, 77.5),
            (12.9, 181.0),
            (-90.5, 0.0),
            (math.nan, 77.5),
            ("north", 77.5),
        ],
    )
    def test_invalid_values(self, latitude, longitude):
        assert is_valid_coordinate(latitude, longitude) is False

    def test_boundaries_are_valid(self):
        assert is_valid_coordinate(90.0, 180.0) is True
        assert is_valid_coordinate(-90.0, -180.0) is True
