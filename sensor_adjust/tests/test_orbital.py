"""
Tests for projected coordinate helpers and the satellite frame.
"""

import pytest
import numpy as np
from numpy.testing import assert_allclose

from sensor_adjust.errors import ConfigurationError
from sensor_adjust.orbital import (
    GeoReference,
    calc_proj_along_across,
    ecef_to_geodetic,
    satellite_to_world,
)


@pytest.fixture(scope='module')
def georef():
    return GeoReference('epsg:32613')


@pytest.fixture
def northbound_positions(georef):
    """Three positions 700 km up, moving north at longitude -105."""
    return np.array([georef.proj_to_ecef([500000.0, 4400000.0 + 1000.0 * i, 700000.0])
                     for i in range(3)])


def test_ecef_to_geodetic_on_equator():
    lon, lat, height = ecef_to_geodetic([6378137.0, 0.0, 0.0])
    assert lon == pytest.approx(0.0, abs=1e-9)
    assert lat == pytest.approx(0.0, abs=1e-9)
    assert height == pytest.approx(0.0, abs=1e-6)


def test_projection_round_trip(georef):
    xyz = np.array([-1277000.0, -4766000.0, 4078000.0])
    assert_allclose(georef.proj_to_ecef(georef.ecef_to_proj(xyz)), xyz, atol=1e-5)


def test_invalid_crs():
    with pytest.raises(ConfigurationError):
        GeoReference('not a crs')


def test_along_across():
    along, across = calc_proj_along_across([0.0, 0.0, 5.0], [0.0, 10.0, 7.0])
    assert_allclose(along, [0.0, 1.0, 0.0])
    assert_allclose(across, [1.0, 0.0, 0.0])


def test_along_across_coincident():
    with pytest.raises(ConfigurationError):
        calc_proj_along_across([1.0, 2.0, 3.0], [1.0, 2.0, 9.0])


class TestSatelliteToWorld:

    def test_rotation(self, georef, northbound_positions):
        M = satellite_to_world(northbound_positions, 1, georef)
        assert_allclose(M.T @ M, np.eye(3), atol=1e-9)
        assert np.linalg.det(M) == pytest.approx(1.0)

        # Down is toward the Earth, along is the direction of motion
        radial = northbound_positions[1] / np.linalg.norm(northbound_positions[1])
        assert np.dot(M[:, 2], -radial) > 0.99
        motion = northbound_positions[2] - northbound_positions[0]
        assert np.dot(M[:, 0], motion / np.linalg.norm(motion)) > 0.99

    def test_end_samples(self, georef, northbound_positions):
        """At the ends, the direction comes from the one neighbor."""
        first = satellite_to_world(northbound_positions, 0, georef)
        last = satellite_to_world(northbound_positions, 2, georef)
        assert_allclose(first[:, 0], last[:, 0], atol=1e-3)

    def test_index_out_of_range(self, georef, northbound_positions):
        with pytest.raises(ConfigurationError):
            satellite_to_world(northbound_positions, 3, georef)

    def test_single_position(self, georef, northbound_positions):
        with pytest.raises(ConfigurationError):
            satellite_to_world(northbound_positions[:1], 0, georef)
