"""
Unit tests for the sequential robust ranging and RSSI estimator.

Tests cover:
    - Minimum readings and preliminary subset sizes
    - Readiness and argument validation
    - Recovery with zero noise and with 20% outliers
    - Refinement, covariance and fixed quantities
    - Listener progress, locking of every setter and repeatability
    - Immutable per-stage configuration
"""

from dataclasses import FrozenInstanceError

import numpy as np
import pytest
from numpy.testing import assert_allclose

from radiosource.estimators.robust import RobustEstimatorMethod
from radiosource.exceptions import LockedError, NotReadyError
from radiosource.rf.readings import RangingAndRssiReading
from radiosource.rf.sequential import (
    SequentialEstimatorListener,
    SequentialRobustRangingAndRssiRadioSourceEstimator,
    StageConfig,
)
from radiosource.rf.sources import EstimatedRadioSource

TRUE_POSITION = np.array([3.0, 4.0])
TX_POWER = -5.0
OUTLIERS = [1, 6, 12, 17, 22, 27]

RANSAC = RobustEstimatorMethod.RANSAC


def quality_scores(n):
    scores = np.full(n, 0.9)
    scores[OUTLIERS] = 0.2
    return scores


@pytest.fixture
def exact_readings(access_point, scattered_receivers_2d, make_readings):
    return make_readings(
        access_point, scattered_receivers_2d, TRUE_POSITION, TX_POWER,
        outliers=OUTLIERS, rng=np.random.default_rng(8),
    )


@pytest.fixture
def noisy_readings(access_point, scattered_receivers_2d, make_readings):
    return make_readings(
        access_point, scattered_receivers_2d, TRUE_POSITION, TX_POWER,
        distance_noise=0.05, rssi_noise=0.5, distance_std=0.05, rssi_std=0.5,
        outliers=OUTLIERS, rng=np.random.default_rng(13),
    )


def ransac_estimator(readings, **kwargs):
    return SequentialRobustRangingAndRssiRadioSourceEstimator(
        dimensions=2,
        readings=readings,
        ranging_config=StageConfig(method=RANSAC),
        rssi_config=StageConfig(method=RANSAC),
        random_state=0,
        **kwargs,
    )


class TestConfiguration:

    def test_min_readings(self):
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator()
        assert estimator.min_readings == 5

        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(
            dimensions=2, path_loss_estimation_enabled=True
        )
        assert estimator.min_readings == 5

        estimator.transmitted_power_estimation_enabled = False
        estimator.path_loss_estimation_enabled = False
        assert estimator.min_readings == 3

    def test_preliminary_subset_sizes(self):
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(dimensions=2)
        assert estimator.ranging_preliminary_subset_size == 4
        assert estimator.rssi_preliminary_subset_size == 4

        estimator.ranging_preliminary_subset_size = 6
        assert estimator.ranging_preliminary_subset_size == 6
        with pytest.raises(ValueError):
            estimator.rssi_preliminary_subset_size = 3

    def test_enabling_path_loss_raises_subset_sizes(self):
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(dimensions=2)
        estimator.rssi_preliminary_subset_size = 4

        estimator.path_loss_estimation_enabled = True

        assert estimator.rssi_preliminary_subset_size == 5
        assert estimator.ranging_preliminary_subset_size == 5

    def test_subset_size_in_stage_config_validated(self):
        with pytest.raises(ValueError):
            SequentialRobustRangingAndRssiRadioSourceEstimator(
                dimensions=3, ranging_config=StageConfig(preliminary_subset_size=4)
            )

    def test_stage_properties(self):
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator()
        estimator.ranging_threshold = 0.5
        estimator.rssi_threshold = 3.0
        estimator.rssi_method = RobustEstimatorMethod.MSAC
        estimator.ranging_confidence = 0.95
        estimator.rssi_max_iterations = 100

        assert estimator.ranging_config.threshold == 0.5
        assert estimator.rssi_config.threshold == 3.0
        assert estimator.rssi_config.method is RobustEstimatorMethod.MSAC
        assert estimator.ranging_config.confidence == 0.95
        assert estimator.rssi_config.max_iterations == 100

    @pytest.mark.parametrize("name, value", [
        ("ranging_threshold", 0.0),
        ("rssi_confidence", 1.0),
        ("ranging_max_iterations", 0),
        ("progress_delta", -0.1),
        ("rssi_method", "bogus"),
    ])
    def test_invalid_stage_values(self, name, value):
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator()
        with pytest.raises(ValueError):
            setattr(estimator, name, value)

    def test_invalid_stage_config(self):
        with pytest.raises(ValueError):
            StageConfig(threshold=-1.0)
        with pytest.raises(ValueError):
            StageConfig(confidence=1.5)
        with pytest.raises(ValueError):
            StageConfig(preliminary_subset_size=0)

    def test_invalid_arguments(self, access_point, exact_readings):
        with pytest.raises(ValueError):
            SequentialRobustRangingAndRssiRadioSourceEstimator(dimensions=4)
        with pytest.raises(ValueError):
            SequentialRobustRangingAndRssiRadioSourceEstimator(dimensions=3, readings=exact_readings)
        with pytest.raises(ValueError):
            SequentialRobustRangingAndRssiRadioSourceEstimator(
                dimensions=2, readings=[r.to_ranging_reading() for r in exact_readings]
            )
        with pytest.raises(ValueError):
            SequentialRobustRangingAndRssiRadioSourceEstimator(
                dimensions=2, readings=exact_readings, quality_scores=[0.5] * 3
            )
        with pytest.raises(ValueError):
            SequentialRobustRangingAndRssiRadioSourceEstimator(
                dimensions=2, initial_position=[1.0, 2.0, 3.0]
            )

    def test_power_in_milliwatts(self):
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator()
        estimator.initial_transmitted_power = 100.0
        assert estimator.initial_transmitted_power_dbm == pytest.approx(20.0)
        with pytest.raises(ValueError):
            estimator.initial_transmitted_power = -1.0

    @pytest.mark.parametrize("name, value", [
        ("initial_transmitted_power_dbm", float("nan")),
        ("initial_transmitted_power_dbm", float("inf")),
        ("initial_transmitted_power_dbm", -float("inf")),
        ("initial_transmitted_power", 0.0),
    ])
    def test_power_must_be_finite(self, name, value):
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(
            initial_transmitted_power_dbm=10.0
        )
        with pytest.raises(ValueError):
            setattr(estimator, name, value)
        assert estimator.initial_transmitted_power_dbm == 10.0

    def test_invalid_stage_value_leaves_stage_unchanged(self):
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator()
        estimator.ranging_threshold = 0.5
        config = estimator.ranging_config

        with pytest.raises(ValueError):
            estimator.ranging_threshold = -1.0

        assert estimator.ranging_threshold == 0.5
        assert estimator.ranging_config is config


class TestStageConfigOwnership:
    """Each stage owns an immutable copy of its configuration."""

    def test_configs_are_immutable(self):
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator()
        with pytest.raises(FrozenInstanceError):
            estimator.rssi_config.threshold = 50.0
        with pytest.raises(FrozenInstanceError):
            estimator.ranging_config.preliminary_subset_size = 1
        assert estimator.rssi_threshold is None
        assert estimator.ranging_preliminary_subset_size == estimator.min_readings

    def test_shared_config_is_not_linked(self):
        config = StageConfig(method=RANSAC, threshold=1.0)
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(
            ranging_config=config, rssi_config=config
        )

        estimator.ranging_threshold = 0.5

        assert estimator.ranging_threshold == 0.5
        assert estimator.rssi_threshold == 1.0
        assert config.threshold == 1.0

    def test_config_setters(self):
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(dimensions=2)

        estimator.rssi_config = StageConfig(method=RobustEstimatorMethod.MSAC, threshold=2.0)
        estimator.ranging_config = StageConfig(preliminary_subset_size=6)

        assert estimator.rssi_method is RobustEstimatorMethod.MSAC
        assert estimator.rssi_threshold == 2.0
        assert estimator.ranging_preliminary_subset_size == 6

    @pytest.mark.parametrize("value", [StageConfig(preliminary_subset_size=3), "prosac"])
    def test_invalid_config_rejected_without_change(self, value):
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(dimensions=2)
        config = estimator.ranging_config

        with pytest.raises(ValueError):
            estimator.ranging_config = value
        assert estimator.ranging_config is config
        assert estimator.ranging_preliminary_subset_size == 4

    def test_mutating_config_from_listener_fails(self, exact_readings):
        errors = []

        class ConfigListener(SequentialEstimatorListener):
            def on_estimate_start(self, estimator):
                try:
                    estimator.rssi_config.threshold = 50.0
                except FrozenInstanceError as e:
                    errors.append(e)

        estimator = ransac_estimator(
            exact_readings, listener=ConfigListener()
        )
        estimator.estimate()

        assert errors
        assert estimator.rssi_threshold is None


class TestReadiness:

    def test_no_readings(self):
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(dimensions=2)
        assert not estimator.is_ready
        with pytest.raises(NotReadyError):
            estimator.estimate()

    def test_too_few_readings(self, exact_readings):
        estimator = ransac_estimator(exact_readings[:3])
        with pytest.raises(NotReadyError):
            estimator.estimate()

    def test_prosac_without_quality_scores(self, exact_readings):
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(
            dimensions=2, readings=exact_readings,
            ranging_config=StageConfig(method=RANSAC),
        )
        assert not estimator.is_ready

        estimator.quality_scores = quality_scores(len(exact_readings))
        assert estimator.is_ready

    def test_fixed_power_needs_initial_value(self, exact_readings):
        estimator = ransac_estimator(
            exact_readings, transmitted_power_estimation_enabled=False
        )
        with pytest.raises(NotReadyError):
            estimator.estimate()

        estimator.initial_transmitted_power_dbm = TX_POWER
        assert estimator.is_ready


class TestEstimation:

    def test_zero_noise_exact(self, exact_readings):
        estimator = ransac_estimator(exact_readings)

        source = estimator.estimate()

        assert isinstance(source, EstimatedRadioSource)
        assert source.source is exact_readings[0].source
        assert_allclose(source.position, TRUE_POSITION, atol=1e-6)
        assert source.transmitted_power_dbm == pytest.approx(TX_POWER, abs=1e-6)
        assert source.path_loss_exponent == 2.0
        assert_allclose(estimator.ranging_solution.position, TRUE_POSITION, atol=1e-6)
        assert estimator.inliers_data.num_inliers == len(exact_readings) - len(OUTLIERS)
        assert estimator.estimated_source is source

    def test_prosac_with_outliers(self, noisy_readings):
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(
            dimensions=2,
            readings=noisy_readings,
            quality_scores=quality_scores(len(noisy_readings)),
            ranging_config=StageConfig(threshold=0.3),
            rssi_config=StageConfig(threshold=2.0),
            random_state=3,
        )

        source = estimator.estimate()

        assert np.linalg.norm(source.position - TRUE_POSITION) < 0.15
        assert source.transmitted_power_dbm == pytest.approx(TX_POWER, abs=1.0)
        assert not np.any(estimator.ranging_inliers_data.inliers[OUTLIERS])
        assert not np.any(source.inliers.inliers[OUTLIERS])
        assert source.position_covariance.shape == (2, 2)
        assert source.transmitted_power_std_dbm > 0
        assert source.path_loss_exponent_std is None

    @pytest.mark.parametrize("method", [
        RANSAC,
        RobustEstimatorMethod.MSAC,
        RobustEstimatorMethod.PROSAC,
        RobustEstimatorMethod.LMEDS,
        RobustEstimatorMethod.PROMEDS,
    ])
    def test_majority_of_trials_recover_source(
        self, method, access_point, scattered_receivers_2d, make_readings
    ):
        trials = 6
        recovered = 0
        for seed in range(trials):
            rng = np.random.default_rng(100 + seed)
            outliers = rng.choice(len(scattered_receivers_2d), 6, replace=False)
            readings = make_readings(
                access_point, scattered_receivers_2d, TRUE_POSITION, TX_POWER,
                distance_noise=0.05, rssi_noise=0.5, distance_std=0.05, rssi_std=0.5,
                outliers=outliers.tolist(), rng=rng,
            )
            scores = rng.uniform(0.5, 1.0, len(readings))
            scores[outliers] = rng.uniform(0.1, 0.6, len(outliers))
            estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(
                dimensions=2,
                readings=readings,
                quality_scores=scores,
                ranging_config=StageConfig(
                    method=method, threshold=None if method.median_based else 0.3
                ),
                rssi_config=StageConfig(
                    method=method, threshold=None if method.median_based else 2.0
                ),
                random_state=seed,
            )

            source = estimator.estimate()

            if (np.linalg.norm(source.position - TRUE_POSITION) < 0.5
                    and abs(source.transmitted_power_dbm - TX_POWER) < 2.0):
                recovered += 1

        assert recovered > trials // 2

    def test_path_loss_estimation(self, access_point, scattered_receivers_2d, make_readings):
        readings = make_readings(
            access_point, scattered_receivers_2d, TRUE_POSITION, TX_POWER,
            path_loss_exponent=2.6, outliers=OUTLIERS, rng=np.random.default_rng(2),
        )
        estimator = ransac_estimator(readings, path_loss_estimation_enabled=True)

        source = estimator.estimate()

        assert source.path_loss_exponent == pytest.approx(2.6, abs=1e-6)
        assert source.path_loss_exponent_variance > 0

    def test_fixed_power_keeps_initial_value(self, exact_readings):
        estimator = ransac_estimator(
            exact_readings,
            initial_transmitted_power_dbm=TX_POWER,
            transmitted_power_estimation_enabled=False,
        )

        source = estimator.estimate()

        assert source.transmitted_power_dbm == TX_POWER
        assert source.transmitted_power_std_dbm is None
        assert_allclose(source.position, TRUE_POSITION, atol=1e-6)

    def test_unrefined_result_has_no_covariance(self, noisy_readings):
        estimator = ransac_estimator(noisy_readings, result_refined=False)
        estimator.ranging_threshold = 0.3
        estimator.rssi_threshold = 2.0

        source = estimator.estimate()

        assert source.position_covariance is None
        assert source.transmitted_power_std_dbm is None
        assert estimator.ranging_solution.position_covariance is None

    def test_covariance_not_kept(self, noisy_readings):
        estimator = ransac_estimator(noisy_readings, keep_covariance=False)
        estimator.ranging_threshold = 0.3
        estimator.rssi_threshold = 2.0

        source = estimator.estimate()

        assert source.position_covariance is None
        assert np.linalg.norm(source.position - TRUE_POSITION) < 0.15

    def test_explicit_initial_position(self, exact_readings):
        estimator = ransac_estimator(exact_readings, initial_position=[0.0, 0.0])
        assert_allclose(estimator.estimate().position, TRUE_POSITION, atol=1e-6)

    def test_three_dimensional(self, access_point, receivers_3d, make_readings):
        true_position = np.array([4.0, 3.0, 2.5])
        readings = make_readings(access_point, receivers_3d, true_position, TX_POWER)
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(
            readings=readings,
            ranging_config=StageConfig(method=RobustEstimatorMethod.LMEDS),
            rssi_config=StageConfig(method=RobustEstimatorMethod.MSAC),
            random_state=0,
        )

        source = estimator.estimate()

        assert_allclose(source.position, true_position, atol=1e-6)
        assert source.transmitted_power_dbm == pytest.approx(TX_POWER, abs=1e-6)

    def test_repeatable_with_seed(self, noisy_readings):
        scores = quality_scores(len(noisy_readings))
        kwargs = dict(
            dimensions=2, readings=noisy_readings, quality_scores=scores,
            ranging_config=StageConfig(threshold=0.3),
            rssi_config=StageConfig(threshold=2.0),
            random_state=17,
        )
        first = SequentialRobustRangingAndRssiRadioSourceEstimator(**kwargs)
        second = SequentialRobustRangingAndRssiRadioSourceEstimator(**kwargs)

        a = first.estimate()
        b = second.estimate()
        c = first.estimate()

        assert_allclose(a.position, b.position)
        assert_allclose(a.position, c.position)
        assert a.transmitted_power_dbm == pytest.approx(b.transmitted_power_dbm)


class RecordingListener(SequentialEstimatorListener):
    def __init__(self):
        self.events = []
        self.progress = []

    def on_estimate_start(self, estimator):
        self.events.append("start")

    def on_estimate_progress_change(self, estimator, progress):
        self.progress.append(progress)

    def on_estimate_end(self, estimator):
        self.events.append("end")


class TestListener:

    def test_progress_spans_both_stages(self, noisy_readings):
        listener = RecordingListener()
        estimator = ransac_estimator(noisy_readings, listener=listener, progress_delta=0.0)
        estimator.ranging_threshold = 0.3
        estimator.rssi_threshold = 2.0

        estimator.estimate()

        assert listener.events == ["start", "end"]
        assert listener.progress == sorted(listener.progress)
        assert all(0.0 <= p <= 1.0 for p in listener.progress)
        assert any(p <= 0.5 for p in listener.progress)
        assert any(p > 0.5 for p in listener.progress)

    @pytest.mark.parametrize("name, value", [
        ("readings", None),
        ("quality_scores", np.full(30, 0.5)),
        ("initial_position", [1.0, 1.0]),
        ("initial_transmitted_power_dbm", 0.0),
        ("initial_transmitted_power", 1.0),
        ("initial_path_loss_exponent", 3.0),
        ("transmitted_power_estimation_enabled", False),
        ("path_loss_estimation_enabled", True),
        ("ranging_preliminary_subset_size", 6),
        ("rssi_preliminary_subset_size", 6),
        ("progress_delta", 0.5),
        ("listener", None),
        ("ranging_config", StageConfig(threshold=1.0)),
        ("rssi_config", StageConfig(threshold=1.0)),
        ("ranging_method", RobustEstimatorMethod.MSAC),
        ("ranging_threshold", 1.0),
        ("ranging_confidence", 0.9),
        ("ranging_max_iterations", 10),
        ("rssi_method", RobustEstimatorMethod.MSAC),
        ("rssi_threshold", 1.0),
        ("rssi_confidence", 0.9),
        ("rssi_max_iterations", 10),
        ("result_refined", False),
        ("keep_covariance", False),
        ("use_reading_position_covariance", False),
        ("homogeneous_linear_solver_used", False),
    ])
    def test_reconfiguration_from_listener_is_locked(self, exact_readings, name, value):
        if name == "readings":
            value = exact_readings[:-1]

        class MutatingListener(SequentialEstimatorListener):
            def on_estimate_start(self, estimator):
                setattr(estimator, name, value)

        estimator = ransac_estimator(exact_readings, listener=MutatingListener())
        before = getattr(estimator, name)

        with pytest.raises(LockedError):
            estimator.estimate()

        after = getattr(estimator, name)
        assert not estimator.locked
        assert after is before or after == before
        assert estimator.estimated_source is None

    def test_reentrant_estimate_is_locked(self, exact_readings):
        class ReentrantListener(SequentialEstimatorListener):
            def on_estimate_start(self, estimator):
                estimator.estimate()

        estimator = ransac_estimator(exact_readings, listener=ReentrantListener())
        with pytest.raises(LockedError):
            estimator.estimate()

        # The estimator is usable again once the failed run unwound
        estimator.listener = None
        assert_allclose(estimator.estimate().position, TRUE_POSITION, atol=1e-6)

    def test_readings_are_not_modified(self, exact_readings):
        snapshot = [(r.distance, r.rssi, r.position.copy()) for r in exact_readings]
        ransac_estimator(exact_readings).estimate()
        for reading, (distance, rssi, position) in zip(exact_readings, snapshot):
            assert isinstance(reading, RangingAndRssiReading)
            assert reading.distance == distance
            assert reading.rssi == rssi
            np.testing.assert_array_equal(reading.position, position)
