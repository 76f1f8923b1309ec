"""
Shared fixtures for radio source estimator tests.

Readings are synthesized from the log-distance path-loss model so that
zero-noise scenarios have an exact solution.
"""

from typing import Optional, Sequence

import numpy as np
import pytest

from radiosource.rf.measurement_models import rss_pathloss
from radiosource.rf.readings import RangingAndRssiReading
from radiosource.rf.sources import WifiAccessPoint

FREQUENCY = 2.4e9


def synthesize_readings(
    source,
    receivers: np.ndarray,
    true_position: np.ndarray,
    tx_power_dbm: float,
    path_loss_exponent: float = 2.0,
    distance_noise: float = 0.0,
    rssi_noise: float = 0.0,
    distance_std: Optional[float] = None,
    rssi_std: Optional[float] = None,
    outliers: Sequence[int] = (),
    rng: Optional[np.random.Generator] = None,
):
    """Build RangingAndRssiReadings, corrupting the readings listed in outliers."""
    rng = np.random.default_rng(0) if rng is None else rng
    readings = []
    for i, p in enumerate(np.asarray(receivers, dtype=float)):
        d = float(np.linalg.norm(p - true_position))
        rssi = rss_pathloss(tx_power_dbm, d, source.frequency, path_loss_exponent)
        d += distance_noise * rng.standard_normal()
        rssi += rssi_noise * rng.standard_normal()
        if i in outliers:
            d += rng.uniform(5.0, 10.0)
            rssi -= rng.uniform(10.0, 20.0)
        readings.append(
            RangingAndRssiReading(
                source, p, max(d, 0.0), float(rssi),
                distance_std=distance_std, rssi_std=rssi_std,
            )
        )
    return readings


@pytest.fixture
def access_point():
    return WifiAccessPoint("00:11:22:33:44:55", FREQUENCY, ssid="office")


@pytest.fixture
def receivers_2d():
    """Receivers surrounding the source at (3, 4), none at the source itself."""
    return np.array([
        [-10.0, -10.0], [10.0, -10.0], [10.0, 10.0], [-10.0, 10.0],
        [0.0, -15.0], [15.0, 0.0], [0.0, 15.0], [-15.0, 0.0],
        [12.0, 6.0], [-6.0, 12.0],
    ])


@pytest.fixture
def receivers_3d():
    return np.array([
        [0.0, 0.0, 0.0], [10.0, 0.0, 1.0], [0.0, 10.0, 2.0], [10.0, 10.0, 0.5],
        [5.0, -5.0, 6.0], [-5.0, 5.0, 3.0], [12.0, 4.0, 8.0], [4.0, 12.0, 5.0],
    ])


@pytest.fixture
def scattered_receivers_2d():
    """Thirty receivers drawn around the source at (3, 4)."""
    rng = np.random.default_rng(7)
    angles = rng.uniform(0.0, 2.0 * np.pi, 30)
    radii = rng.uniform(3.0, 20.0, 30)
    return np.array([3.0, 4.0]) + np.column_stack([radii * np.cos(angles), radii * np.sin(angles)])


@pytest.fixture
def make_readings():
    """Factory building RangingAndRssiReadings from a true source."""
    return synthesize_readings
