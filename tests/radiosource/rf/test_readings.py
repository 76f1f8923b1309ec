"""Unit tests for located readings."""

import numpy as np
import pytest

from radiosource.rf.readings import (
    RangingAndRssiReading,
    RangingReading,
    RssiReading,
    check_readings,
    reading_positions,
)
from radiosource.rf.sources import WifiAccessPoint

AP = WifiAccessPoint("aa:bb:cc:dd:ee:ff", 2.4e9)


class TestReadingValidation:

    def test_position_is_read_only_array(self):
        reading = RangingReading(AP, [1.0, 2.0], 3.0)
        assert isinstance(reading.position, np.ndarray)
        assert reading.dimensions == 2
        with pytest.raises(ValueError):
            reading.position[0] = 5.0

    def test_caller_array_is_not_aliased(self):
        position = np.array([1.0, 2.0, 3.0])
        reading = RssiReading(AP, position, -60.0)
        position[0] = 100.0
        assert reading.position[0] == 1.0

    @pytest.mark.parametrize("position", [[1.0], [1.0, 2.0, 3.0, 4.0], [[1.0, 2.0]], [np.nan, 0.0]])
    def test_invalid_position(self, position):
        with pytest.raises(ValueError):
            RangingReading(AP, position, 1.0)

    def test_negative_distance(self):
        with pytest.raises(ValueError):
            RangingReading(AP, [0.0, 0.0], -1.0)

    def test_non_positive_std(self):
        with pytest.raises(ValueError):
            RangingReading(AP, [0.0, 0.0], 1.0, distance_std=0.0)
        with pytest.raises(ValueError):
            RssiReading(AP, [0.0, 0.0], -50.0, rssi_std=-1.0)

    def test_non_finite_rssi(self):
        with pytest.raises(ValueError):
            RssiReading(AP, [0.0, 0.0], np.inf)

    def test_position_covariance_checks(self):
        RangingReading(AP, [0.0, 0.0], 1.0, position_covariance=np.diag([0.1, 0.2]))
        with pytest.raises(ValueError):
            RangingReading(AP, [0.0, 0.0], 1.0, position_covariance=np.eye(3))
        with pytest.raises(ValueError):
            RangingReading(AP, [0.0, 0.0], 1.0, position_covariance=[[1.0, 0.5], [0.0, 1.0]])
        with pytest.raises(ValueError):
            RangingReading(AP, [0.0, 0.0], 1.0, position_covariance=np.diag([1.0, -1.0]))

    def test_frozen(self):
        reading = RangingReading(AP, [0.0, 0.0], 1.0)
        with pytest.raises(AttributeError):
            reading.distance = 2.0


class TestRangingAndRssiReading:

    def test_projections_keep_fields(self):
        cov = np.diag([0.01, 0.02, 0.03])
        reading = RangingAndRssiReading(
            AP, [1.0, 2.0, 3.0], 4.0, -55.0,
            distance_std=0.1, rssi_std=2.0, position_covariance=cov,
        )

        ranging = reading.to_ranging_reading()
        assert isinstance(ranging, RangingReading)
        assert ranging.source is AP
        assert ranging.distance == 4.0
        assert ranging.distance_std == 0.1
        np.testing.assert_array_equal(ranging.position_covariance, cov)

        rssi = reading.to_rssi_reading()
        assert isinstance(rssi, RssiReading)
        assert rssi.rssi == -55.0
        assert rssi.rssi_std == 2.0
        np.testing.assert_array_equal(rssi.position, [1.0, 2.0, 3.0])


class TestReadingCollections:

    def test_check_readings_returns_dimensions(self):
        readings = [RangingReading(AP, [0.0, 0.0], 1.0), RangingReading(AP, [1.0, 0.0], 1.0)]
        assert check_readings(readings) == 2
        np.testing.assert_array_equal(reading_positions(readings), [[0.0, 0.0], [1.0, 0.0]])

    def test_empty_readings(self):
        with pytest.raises(ValueError):
            check_readings([])

    def test_mixed_dimensions(self):
        readings = [RangingReading(AP, [0.0, 0.0], 1.0), RangingReading(AP, [1.0, 0.0, 0.0], 1.0)]
        with pytest.raises(ValueError):
            check_readings(readings)

    def test_expected_dimensions(self):
        readings = [RangingReading(AP, [0.0, 0.0], 1.0)]
        with pytest.raises(ValueError):
            check_readings(readings, dimensions=3)
