"""
Unit tests for ranging-only radio source estimation.

Tests cover:
    - Homogeneous and inhomogeneous linear lateration
    - Levenberg-Marquardt refinement and its covariance
    - Readiness, listener events and locking
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from radiosource.exceptions import LockedError, NotReadyError, RadioSourceEstimationError
from radiosource.rf.lateration import (
    FALLBACK_DISTANCE_STD,
    RangingRadioSourceEstimator,
    distance_standard_deviations,
    linear_lateration,
)
from radiosource.rf.readings import RangingReading

TRUE_2D = np.array([3.0, 4.0])
TRUE_3D = np.array([4.0, 3.0, 2.5])


def ranging_readings(source, receivers, true_position, **kwargs):
    return [
        RangingReading(source, p, float(np.linalg.norm(p - true_position)), **kwargs)
        for p in receivers
    ]


class TestLinearLateration:

    @pytest.mark.parametrize("homogeneous", [True, False])
    def test_exact_2d(self, receivers_2d, homogeneous):
        d = np.linalg.norm(receivers_2d - TRUE_2D, axis=1)
        assert_allclose(linear_lateration(receivers_2d, d, homogeneous), TRUE_2D, atol=1e-8)

    @pytest.mark.parametrize("homogeneous", [True, False])
    def test_exact_3d_minimum_receivers(self, receivers_3d, homogeneous):
        receivers = receivers_3d[:4]
        d = np.linalg.norm(receivers - TRUE_3D, axis=1)
        assert_allclose(linear_lateration(receivers, d, homogeneous), TRUE_3D, atol=1e-8)

    def test_colinear_receivers_rejected(self):
        receivers = np.array([[0.0, 0.0], [5.0, 0.0], [10.0, 0.0], [15.0, 0.0]])
        d = np.linalg.norm(receivers - TRUE_2D, axis=1)
        with pytest.raises(RadioSourceEstimationError):
            linear_lateration(receivers, d)


class TestDistanceStandardDeviations:

    def test_fallback_and_position_accuracy(self, access_point):
        readings = [
            RangingReading(access_point, [0.0, 0.0], 1.0),
            RangingReading(access_point, [1.0, 0.0], 1.0, distance_std=0.3,
                           position_covariance=np.diag([0.16, 0.16])),
        ]

        sigma = distance_standard_deviations(readings)
        assert sigma[0] == pytest.approx(FALLBACK_DISTANCE_STD)
        assert sigma[1] == pytest.approx(0.5)

        sigma = distance_standard_deviations(readings, use_position_covariance=False)
        assert sigma[1] == pytest.approx(0.3)


class TestRangingRadioSourceEstimator:

    def test_min_readings(self, access_point, receivers_2d, receivers_3d):
        assert RangingRadioSourceEstimator().min_readings == 4
        estimator = RangingRadioSourceEstimator(ranging_readings(access_point, receivers_2d, TRUE_2D))
        assert estimator.min_readings == 3

    def test_zero_noise_with_covariance(self, access_point, receivers_3d):
        readings = ranging_readings(access_point, receivers_3d, TRUE_3D, distance_std=0.1)
        estimator = RangingRadioSourceEstimator(readings)

        solution = estimator.estimate()

        assert_allclose(solution.position, TRUE_3D, atol=1e-6)
        assert solution.position_covariance.shape == (3, 3)
        assert np.all(np.linalg.eigvalsh(solution.position_covariance) > 0)
        assert_allclose(estimator.estimated_position, TRUE_3D, atol=1e-6)

    def test_linear_only_has_no_covariance(self, access_point, receivers_2d):
        readings = ranging_readings(access_point, receivers_2d, TRUE_2D)
        estimator = RangingRadioSourceEstimator(readings, non_linear_solver_enabled=False)

        solution = estimator.estimate()

        assert_allclose(solution.position, TRUE_2D, atol=1e-8)
        assert solution.position_covariance is None

    def test_refines_from_initial_position(self, access_point, receivers_2d):
        readings = ranging_readings(access_point, receivers_2d, TRUE_2D)
        estimator = RangingRadioSourceEstimator(readings, initial_position=[0.0, 0.0])
        assert_allclose(estimator.estimate().position, TRUE_2D, atol=1e-6)

    def test_noisy_readings(self, access_point, receivers_2d):
        rng = np.random.default_rng(3)
        readings = [
            RangingReading(access_point, p,
                           float(np.linalg.norm(p - TRUE_2D) + 0.05 * rng.standard_normal()),
                           distance_std=0.05)
            for p in receivers_2d
        ]
        solution = RangingRadioSourceEstimator(readings).estimate()

        assert np.linalg.norm(solution.position - TRUE_2D) < 0.1
        # Reported accuracy is consistent with the noise level
        assert np.sqrt(np.trace(solution.position_covariance)) < 0.1

    def test_not_ready(self, access_point, receivers_2d):
        estimator = RangingRadioSourceEstimator()
        assert not estimator.is_ready
        with pytest.raises(NotReadyError):
            estimator.estimate()

        estimator.readings = ranging_readings(access_point, receivers_2d[:2], TRUE_2D)
        with pytest.raises(NotReadyError):
            estimator.estimate()

    def test_invalid_initial_position(self):
        with pytest.raises(ValueError):
            RangingRadioSourceEstimator(initial_position=[1.0, 2.0, 3.0, 4.0])

    def test_listener_events_and_lock(self, access_point, receivers_2d):
        readings = ranging_readings(access_point, receivers_2d, TRUE_2D)
        events = []

        class Listener:
            def on_estimate_start(self, estimator):
                events.append("start")
                with pytest.raises(LockedError):
                    estimator.readings = readings[:3]

            def on_estimate_end(self, estimator):
                events.append("end")

        estimator = RangingRadioSourceEstimator(readings, listener=Listener())
        estimator.estimate()

        assert events == ["start", "end"]
        assert estimator.readings is readings
        assert not estimator.locked
