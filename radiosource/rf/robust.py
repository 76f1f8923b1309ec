"""
Robust radio source estimators.

Wrap the lateration solvers in a RobustEstimator so that readings affected
by multipath, NLOS or faulty receivers are discarded:

- RobustRangingRadioSourceEstimator: position from ranging readings; the
  residual of a reading is |d_i - |x - p_i||.
- RobustRangingAndRssiRadioSourceEstimator: position, transmitted power and
  path loss from ranging and RSSI readings; the residual of a reading is
  |Pr_i - Pr(x, Pt, n; p_i)|.

Each candidate model is fitted from a preliminary subset of readings. The
fit is linear unless an initial position is available, in which case it is
refined from that position. When result refinement is enabled the best model
is refined again on its inliers together with the subset it was fitted from,
so the refined result always has covariance; a failed refinement raises
RobustEstimatorError.
"""

import logging
from typing import Any, List, Optional, Sequence

import numpy as np

from radiosource.estimators.base import LockableEstimator
from radiosource.estimators.robust import (
    DEFAULT_CONFIDENCE,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_PROGRESS_DELTA,
    InliersData,
    RandomState,
    RobustEstimator,
    RobustEstimatorMethod,
    default_threshold,
    resolve_random_state,
    validate_confidence,
    validate_max_iterations,
    validate_progress_delta,
    validate_quality_scores,
    validate_threshold,
)
from radiosource.exceptions import (
    NotReadyError,
    RadioSourceEstimationError,
    RobustEstimatorError,
)
from radiosource.rf.lateration import RangingRadioSourceEstimator, RangingSolution
from radiosource.rf.measurement_models import (
    DEFAULT_PATH_LOSS_EXPONENT,
    dbm_to_power,
    frequency_offset_db,
    power_to_dbm,
    validate_power_dbm,
)
from radiosource.rf.ranging_and_rssi import (
    RangingAndRssiRadioSourceEstimator,
    RangingAndRssiSolution,
)
from radiosource.rf.readings import check_readings, reading_positions
from radiosource.utils.geometry import EPSILON_RANGE

logger = logging.getLogger(__name__)


class _ListenerRelay:
    """Forwards RobustEstimator iteration events to the wrapping estimator."""

    def __init__(self, owner: LockableEstimator):
        self._owner = owner

    def on_estimate_next_iteration(self, estimator: Any, iteration: int) -> None:
        self._owner._notify("on_estimate_next_iteration", iteration)

    def on_estimate_progress_change(self, estimator: Any, progress: float) -> None:
        self._owner._notify("on_estimate_progress_change", progress)


class _RobustRadioSourceEstimator(LockableEstimator):
    """Configuration and consensus plumbing shared by robust radio source estimators."""

    def __init__(
        self,
        readings: Optional[Sequence[Any]] = None,
        quality_scores: Optional[Sequence[float]] = None,
        initial_position: Optional[np.ndarray] = None,
        listener: Optional[Any] = None,
        method: RobustEstimatorMethod = RobustEstimatorMethod.PROSAC,
        threshold: Optional[float] = None,
        confidence: float = DEFAULT_CONFIDENCE,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        progress_delta: float = DEFAULT_PROGRESS_DELTA,
        result_refined: bool = True,
        keep_covariance: bool = True,
        homogeneous_linear_solver_used: bool = True,
        use_reading_position_covariance: bool = True,
        random_state: RandomState = None,
    ):
        super().__init__(listener)
        self._readings: Optional[Sequence[Any]] = None
        self._quality_scores: Optional[np.ndarray] = None
        self._initial_position: Optional[np.ndarray] = None
        self._method = RobustEstimatorMethod(method)
        self._threshold: Optional[float] = None
        self._preliminary_subset_size: Optional[int] = None
        self._homogeneous_linear_solver_used = homogeneous_linear_solver_used
        self._use_reading_position_covariance = use_reading_position_covariance
        self._result_refined = result_refined
        self._keep_covariance = keep_covariance
        self._random_state = resolve_random_state(random_state)

        validate_confidence(confidence)
        validate_max_iterations(max_iterations)
        validate_progress_delta(progress_delta)
        self._confidence = confidence
        self._max_iterations = max_iterations
        self._progress_delta = progress_delta

        if threshold is not None:
            self.threshold = threshold
        if readings is not None:
            self.readings = readings
        if quality_scores is not None:
            self.quality_scores = quality_scores
        if initial_position is not None:
            self.initial_position = initial_position

        self.inliers_data: Optional[InliersData] = None
        self._best_subset: Optional[np.ndarray] = None

    @property
    def readings(self) -> Optional[Sequence[Any]]:
        return self._readings

    @readings.setter
    def readings(self, value: Sequence[Any]) -> None:
        self._lock.check()
        check_readings(value)
        self._readings = value

    @property
    def dimensions(self) -> int:
        if self._readings is None:
            return 3
        return self._readings[0].dimensions

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        return self._quality_scores

    @quality_scores.setter
    def quality_scores(self, value: Optional[Sequence[float]]) -> None:
        self._lock.check()
        scores = validate_quality_scores(value)
        if scores is not None and self._readings is not None and len(scores) != len(self._readings):
            raise ValueError(
                f"Expected {len(self._readings)} quality scores, got {len(scores)}"
            )
        self._quality_scores = scores

    @property
    def initial_position(self) -> Optional[np.ndarray]:
        return self._initial_position

    @initial_position.setter
    def initial_position(self, value: Optional[np.ndarray]) -> None:
        self._lock.check()
        if value is None:
            self._initial_position = None
            return
        position = np.array(value, dtype=float)
        if position.ndim != 1 or len(position) not in (2, 3):
            raise ValueError(f"Initial position must be 2D or 3D, got shape {position.shape}")
        self._initial_position = position

    @property
    def method(self) -> RobustEstimatorMethod:
        return self._method

    @method.setter
    def method(self, value: RobustEstimatorMethod) -> None:
        self._lock.check()
        self._method = RobustEstimatorMethod(value)

    @property
    def threshold(self) -> float:
        if self._threshold is None:
            return default_threshold(self._method)
        return self._threshold

    @threshold.setter
    def threshold(self, value: float) -> None:
        self._lock.check()
        validate_threshold(value)
        self._threshold = value

    @property
    def confidence(self) -> float:
        return self._confidence

    @confidence.setter
    def confidence(self, value: float) -> None:
        self._lock.check()
        validate_confidence(value)
        self._confidence = value

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    @max_iterations.setter
    def max_iterations(self, value: int) -> None:
        self._lock.check()
        validate_max_iterations(value)
        self._max_iterations = value

    @property
    def progress_delta(self) -> float:
        return self._progress_delta

    @progress_delta.setter
    def progress_delta(self, value: float) -> None:
        self._lock.check()
        validate_progress_delta(value)
        self._progress_delta = value

    @property
    def result_refined(self) -> bool:
        return self._result_refined

    @result_refined.setter
    def result_refined(self, value: bool) -> None:
        self._lock.check()
        self._result_refined = bool(value)

    @property
    def keep_covariance(self) -> bool:
        return self._keep_covariance

    @keep_covariance.setter
    def keep_covariance(self, value: bool) -> None:
        self._lock.check()
        self._keep_covariance = bool(value)

    @property
    def homogeneous_linear_solver_used(self) -> bool:
        return self._homogeneous_linear_solver_used

    @homogeneous_linear_solver_used.setter
    def homogeneous_linear_solver_used(self, value: bool) -> None:
        self._lock.check()
        self._homogeneous_linear_solver_used = bool(value)

    @property
    def use_reading_position_covariance(self) -> bool:
        return self._use_reading_position_covariance

    @use_reading_position_covariance.setter
    def use_reading_position_covariance(self, value: bool) -> None:
        self._lock.check()
        self._use_reading_position_covariance = bool(value)

    @property
    def min_readings(self) -> int:
        return self.dimensions + 1

    @property
    def preliminary_subset_size(self) -> int:
        """Readings per preliminary subset; never below min_readings."""
        if self._preliminary_subset_size is None:
            return self.min_readings
        return max(self._preliminary_subset_size, self.min_readings)

    @preliminary_subset_size.setter
    def preliminary_subset_size(self, value: int) -> None:
        self._lock.check()
        if value < self.min_readings:
            raise ValueError(
                f"Preliminary subset size must be at least {self.min_readings}, got {value}"
            )
        self._preliminary_subset_size = int(value)

    @property
    def is_ready(self) -> bool:
        if self._readings is None or len(self._readings) < self.preliminary_subset_size:
            return False
        if self._method.requires_quality_scores:
            return (
                self._quality_scores is not None
                and len(self._quality_scores) == len(self._readings)
            )
        return True

    def _check_ready(self) -> None:
        if not self.is_ready:
            raise NotReadyError(
                f"{self._method.name} needs at least {self.preliminary_subset_size} readings"
                + (" and one quality score per reading"
                   if self._method.requires_quality_scores else "")
            )

    def _run_consensus(self, fit, residuals) -> Any:
        """Run the consensus search over the readings and keep its inliers."""
        robust = RobustEstimator(
            fit,
            residuals,
            num_items=len(self._readings),
            subset_size=self.preliminary_subset_size,
            method=self._method,
            threshold=self.threshold,
            confidence=self._confidence,
            max_iterations=self._max_iterations,
            progress_delta=self._progress_delta,
            quality_scores=self._quality_scores,
            listener=_ListenerRelay(self),
            keep_residuals=True,
            random_state=self._random_state,
        )
        model = robust.estimate()
        self.inliers_data = robust.inliers_data
        self._best_subset = robust.best_subset
        return model

    def _refinement_readings(self) -> List[Any]:
        """Inliers of the best model plus the subset it was fitted from."""
        mask = self.inliers_data.inliers.copy()
        mask[self._best_subset] = True
        added = int(np.count_nonzero(mask)) - self.inliers_data.num_inliers
        if added:
            logger.debug("Refining with %d preliminary subset readings outside the inliers", added)
        return [r for r, keep in zip(self._readings, mask) if keep]


class RobustRangingRadioSourceEstimator(_RobustRadioSourceEstimator):
    """Robust radio source position estimator from ranging readings."""

    def estimate(self) -> RangingSolution:
        """
        Robustly estimate the radio source position.

        Returns:
            RangingSolution; the covariance is None unless the result is
            refined and covariance is kept.

        Raises:
            LockedError: If called while already running.
            NotReadyError: If readings or quality scores are missing.
            RobustEstimatorError: If no preliminary subset yields a model, or
                the refinement of the best model fails.
        """
        with self._lock.hold():
            self._check_ready()
            self.inliers_data = None
            self._best_subset = None
            self._notify("on_estimate_start")

            readings = self._readings
            positions = reading_positions(readings)
            distances = np.array([r.distance for r in readings], dtype=float)
            preliminary = self._inner(self._initial_position)
            seeded = self._initial_position is not None

            def fit(subset: np.ndarray) -> List[RangingSolution]:
                subset_readings = [readings[i] for i in subset]
                return [preliminary.solve(subset_readings, non_linear=seeded, return_covariance=False)]

            def residuals(solution: RangingSolution, idx: np.ndarray) -> np.ndarray:
                ranges = np.linalg.norm(positions[idx] - solution.position, axis=1)
                return np.abs(ranges - distances[idx])

            solution = self._run_consensus(fit, residuals)
            solution = self._refine(solution)
            self._notify("on_estimate_end")
            return solution

    def _inner(self, initial_position: Optional[np.ndarray]) -> RangingRadioSourceEstimator:
        return RangingRadioSourceEstimator(
            initial_position=initial_position,
            homogeneous_linear_solver_used=self._homogeneous_linear_solver_used,
            use_reading_position_covariance=self._use_reading_position_covariance,
        )

    def _refine(self, solution: RangingSolution) -> RangingSolution:
        if not self._result_refined:
            return RangingSolution(position=solution.position)

        readings = self._refinement_readings()
        try:
            return self._inner(solution.position).solve(
                readings, non_linear=True, return_covariance=self._keep_covariance
            )
        except RadioSourceEstimationError as e:
            raise RobustEstimatorError(
                f"Refinement on {len(readings)} readings failed: {e}"
            ) from e


class RobustRangingAndRssiRadioSourceEstimator(_RobustRadioSourceEstimator):
    """
    Robust estimator of position, transmitted power and path loss.

    Candidate models are scored by RSSI residuals; range residuals only
    enter through the fit.
    """

    def __init__(
        self,
        readings: Optional[Sequence[Any]] = None,
        quality_scores: Optional[Sequence[float]] = None,
        initial_position: Optional[np.ndarray] = None,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
        listener: Optional[Any] = None,
        transmitted_power_estimation_enabled: bool = True,
        path_loss_estimation_enabled: bool = False,
        **kwargs: Any,
    ):
        """
        Initialize estimator.

        Args:
            readings: Ranging and RSSI readings of one radio source.
            quality_scores: One score per reading in (0, 1], used by PROSAC and PROMedS.
            initial_position: Optional seed position.
            initial_transmitted_power_dbm: Initial (or fixed) Pt in dBm.
            initial_path_loss_exponent: Initial (or fixed) n.
            listener: Optional listener.
            transmitted_power_estimation_enabled: Estimate Pt.
            path_loss_estimation_enabled: Estimate n.
            **kwargs: Robust configuration (method, threshold, confidence,
                max_iterations, progress_delta, result_refined,
                keep_covariance, homogeneous_linear_solver_used,
                use_reading_position_covariance, random_state).
        """
        self._initial_transmitted_power_dbm = validate_power_dbm(initial_transmitted_power_dbm)
        self._initial_path_loss_exponent = float(initial_path_loss_exponent)
        self._transmitted_power_estimation_enabled = transmitted_power_estimation_enabled
        self._path_loss_estimation_enabled = path_loss_estimation_enabled
        super().__init__(readings, quality_scores, initial_position, listener, **kwargs)

    @property
    def initial_transmitted_power_dbm(self) -> Optional[float]:
        return self._initial_transmitted_power_dbm

    @initial_transmitted_power_dbm.setter
    def initial_transmitted_power_dbm(self, value: Optional[float]) -> None:
        self._lock.check()
        self._initial_transmitted_power_dbm = validate_power_dbm(value)

    @property
    def initial_transmitted_power(self) -> Optional[float]:
        """Initial transmitted power in mW."""
        if self._initial_transmitted_power_dbm is None:
            return None
        return dbm_to_power(self._initial_transmitted_power_dbm)

    @initial_transmitted_power.setter
    def initial_transmitted_power(self, value: Optional[float]) -> None:
        self._lock.check()
        # Negative powers fail in power_to_dbm, 0 mW fails as -inf dBm
        self._initial_transmitted_power_dbm = (
            None if value is None else validate_power_dbm(power_to_dbm(value))
        )

    @property
    def initial_path_loss_exponent(self) -> float:
        return self._initial_path_loss_exponent

    @initial_path_loss_exponent.setter
    def initial_path_loss_exponent(self, value: float) -> None:
        self._lock.check()
        self._initial_path_loss_exponent = float(value)

    @property
    def transmitted_power_estimation_enabled(self) -> bool:
        return self._transmitted_power_estimation_enabled

    @transmitted_power_estimation_enabled.setter
    def transmitted_power_estimation_enabled(self, value: bool) -> None:
        self._lock.check()
        self._transmitted_power_estimation_enabled = bool(value)

    @property
    def path_loss_estimation_enabled(self) -> bool:
        return self._path_loss_estimation_enabled

    @path_loss_estimation_enabled.setter
    def path_loss_estimation_enabled(self, value: bool) -> None:
        self._lock.check()
        self._path_loss_estimation_enabled = bool(value)

    @property
    def min_readings(self) -> int:
        return (
            super().min_readings
            + int(self._transmitted_power_estimation_enabled)
            + int(self._path_loss_estimation_enabled)
        )

    @property
    def is_ready(self) -> bool:
        if not self._transmitted_power_estimation_enabled and self._initial_transmitted_power_dbm is None:
            return False
        return super().is_ready

    def estimate(self) -> RangingAndRssiSolution:
        """
        Robustly estimate position, transmitted power and path loss.

        Returns:
            RangingAndRssiSolution; covariance and variances are None unless
            the result is refined and covariance is kept.

        Raises:
            LockedError: If called while already running.
            NotReadyError: If readings, quality scores or a required initial
                transmitted power are missing.
            RobustEstimatorError: If no preliminary subset yields a model, or
                the refinement of the best model fails.
        """
        with self._lock.hold():
            self._check_ready()
            self.inliers_data = None
            self._best_subset = None
            self._notify("on_estimate_start")

            readings = self._readings
            positions = reading_positions(readings)
            rssi = np.array([r.rssi for r in readings], dtype=float)
            k = frequency_offset_db(readings[0].source.frequency)
            preliminary = self._inner(
                self._initial_position,
                self._initial_transmitted_power_dbm,
                self._initial_path_loss_exponent,
            )
            seeded = self._initial_position is not None

            def fit(subset: np.ndarray) -> List[RangingAndRssiSolution]:
                subset_readings = [readings[i] for i in subset]
                return [preliminary.solve(subset_readings, non_linear=seeded, return_covariance=False)]

            def residuals(solution: RangingAndRssiSolution, idx: np.ndarray) -> np.ndarray:
                ranges = np.linalg.norm(positions[idx] - solution.position, axis=1)
                expected = solution.transmitted_power_dbm + solution.path_loss_exponent * (
                    k - 10.0 * np.log10(np.maximum(ranges, EPSILON_RANGE))
                )
                return np.abs(expected - rssi[idx])

            solution = self._run_consensus(fit, residuals)
            solution = self._refine(solution)
            self._notify("on_estimate_end")
            return solution

    def _inner(
        self,
        initial_position: Optional[np.ndarray],
        initial_power: Optional[float],
        initial_path_loss: float,
    ) -> RangingAndRssiRadioSourceEstimator:
        return RangingAndRssiRadioSourceEstimator(
            initial_position=initial_position,
            initial_transmitted_power_dbm=initial_power,
            initial_path_loss_exponent=initial_path_loss,
            transmitted_power_estimation_enabled=self._transmitted_power_estimation_enabled,
            path_loss_estimation_enabled=self._path_loss_estimation_enabled,
            homogeneous_linear_solver_used=self._homogeneous_linear_solver_used,
            use_reading_position_covariance=self._use_reading_position_covariance,
        )

    @staticmethod
    def _unrefined(solution: RangingAndRssiSolution) -> RangingAndRssiSolution:
        return RangingAndRssiSolution(
            position=solution.position,
            transmitted_power_dbm=solution.transmitted_power_dbm,
            path_loss_exponent=solution.path_loss_exponent,
        )

    def _refine(self, solution: RangingAndRssiSolution) -> RangingAndRssiSolution:
        if not self._result_refined:
            return self._unrefined(solution)

        readings = self._refinement_readings()
        try:
            return self._inner(
                solution.position,
                solution.transmitted_power_dbm,
                solution.path_loss_exponent,
            ).solve(readings, non_linear=True, return_covariance=self._keep_covariance)
        except RadioSourceEstimationError as e:
            raise RobustEstimatorError(
                f"Refinement on {len(readings)} readings failed: {e}"
            ) from e
