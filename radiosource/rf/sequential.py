"""
Sequential robust estimation of radio sources from ranging and RSSI readings.

The estimator runs two robust stages:

    Stage A: ranging-only robust estimation of the source position.
    Stage B: ranging + RSSI robust estimation of position, transmitted power
             and path-loss exponent, seeded with the Stage A position (or
             with an explicit initial position when one is given).

Ranging readings constrain position much better than RSSI readings, so the
Stage A position makes Stage B converge on the right consensus set even when
RSSI readings are heavily affected by fading.

Each stage owns an independent StageConfig (robust method, threshold,
confidence, maximum iterations, preliminary subset size). Progress of Stage A
is reported in [0, 0.5] and progress of Stage B in [0.5, 1].
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Optional, Sequence

import numpy as np

from radiosource.estimators.base import LockableEstimator
from radiosource.estimators.robust import (
    DEFAULT_CONFIDENCE,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_PROGRESS_DELTA,
    InliersData,
    RandomState,
    RobustEstimatorMethod,
    default_threshold,
    resolve_random_state,
    validate_confidence,
    validate_max_iterations,
    validate_progress_delta,
    validate_quality_scores,
    validate_threshold,
)
from radiosource.exceptions import NotReadyError
from radiosource.rf.lateration import RangingSolution
from radiosource.rf.measurement_models import (
    DEFAULT_PATH_LOSS_EXPONENT,
    dbm_to_power,
    power_to_dbm,
    validate_power_dbm,
)
from radiosource.rf.readings import RangingAndRssiReading, check_readings
from radiosource.rf.robust import (
    RobustRangingAndRssiRadioSourceEstimator,
    RobustRangingRadioSourceEstimator,
)
from radiosource.rf.sources import EstimatedRadioSource

logger = logging.getLogger(__name__)


DEFAULT_DIMENSIONS = 3
DEFAULT_ROBUST_METHOD = RobustEstimatorMethod.PROSAC


@dataclass(frozen=True)
class StageConfig:
    """Robust configuration of one estimation stage.

    Configurations are immutable; use dataclasses.replace() or the
    estimator's per-stage setters to change a value.

    Attributes:
        method: Robust estimation method.
        threshold: Inlier threshold (meters for the ranging stage, dB for the
            RSSI stage), or None for the method default.
        confidence: Probability in (0, 1) of finding an outlier-free subset.
        max_iterations: Maximum consensus iterations.
        preliminary_subset_size: Readings per preliminary subset, or None to
            use the minimum number of readings.
    """

    method: RobustEstimatorMethod = DEFAULT_ROBUST_METHOD
    threshold: Optional[float] = None
    confidence: float = DEFAULT_CONFIDENCE
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    preliminary_subset_size: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", RobustEstimatorMethod(self.method))
        if self.threshold is not None:
            validate_threshold(self.threshold)
        validate_confidence(self.confidence)
        validate_max_iterations(self.max_iterations)
        if self.preliminary_subset_size is not None and self.preliminary_subset_size < 1:
            raise ValueError(
                f"preliminary_subset_size must be positive, got {self.preliminary_subset_size}"
            )

    @property
    def effective_threshold(self) -> float:
        if self.threshold is None:
            return default_threshold(self.method)
        return self.threshold


class SequentialEstimatorListener:
    """Receives events of a SequentialRobustRangingAndRssiRadioSourceEstimator.

    All methods are no-ops. Callbacks run while the estimator is locked, so
    any attempt to reconfigure it or to call estimate() raises LockedError.
    """

    def on_estimate_start(self, estimator: Any) -> None:
        pass

    def on_estimate_progress_change(self, estimator: Any, progress: float) -> None:
        pass

    def on_estimate_end(self, estimator: Any) -> None:
        pass


class _StageProgressRelay:
    """Maps the progress of one stage into half of the overall progress."""

    def __init__(self, owner: LockableEstimator, offset: float):
        self._owner = owner
        self._offset = offset

    def on_estimate_progress_change(self, estimator: Any, progress: float) -> None:
        self._owner._notify("on_estimate_progress_change", self._offset + 0.5 * progress)


def _stage_property(stage: str, field: str, doc: Optional[str] = None) -> property:
    """Lock-checked property exposing one field of a StageConfig.

    The setter swaps in a validated copy of the configuration, so an invalid
    value leaves the stage unchanged.
    """

    def getter(self):
        return getattr(getattr(self, stage), field)

    def setter(self, value):
        self._lock.check()
        setattr(self, stage, replace(getattr(self, stage), **{field: value}))

    return property(getter, setter, doc=doc)


class SequentialRobustRangingAndRssiRadioSourceEstimator(LockableEstimator):
    """
    Two-stage robust estimator of a radio source from ranging and RSSI readings.

    The minimum number of readings is dims + 1, plus one when transmitted
    power is estimated and one when the path-loss exponent is estimated.

    Attributes:
        estimated_source: Result of the last successful estimate(), or None.
        ranging_solution: Stage A result of the last estimate(), or None.
        ranging_inliers_data: Stage A consensus set, or None.
        inliers_data: Stage B consensus set, or None.

    Example:
        >>> estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(
        ...     dimensions=2,
        ...     readings=readings,
        ...     quality_scores=scores,
        ...     ranging_config=StageConfig(threshold=0.5),
        ...     rssi_config=StageConfig(threshold=3.0),
        ...     random_state=0,
        ... )  # doctest: +SKIP
        >>> source = estimator.estimate()  # doctest: +SKIP
        >>> source.position, source.transmitted_power_dbm  # doctest: +SKIP
    """

    ranging_method = _stage_property("_ranging_config", "method", "Robust method of the ranging stage.")
    ranging_threshold = _stage_property("_ranging_config", "threshold",
                                        "Inlier threshold of the ranging stage (m).")
    ranging_confidence = _stage_property("_ranging_config", "confidence")
    ranging_max_iterations = _stage_property("_ranging_config", "max_iterations")
    rssi_method = _stage_property("_rssi_config", "method", "Robust method of the RSSI stage.")
    rssi_threshold = _stage_property("_rssi_config", "threshold",
                                     "Inlier threshold of the RSSI stage (dB).")
    rssi_confidence = _stage_property("_rssi_config", "confidence")
    rssi_max_iterations = _stage_property("_rssi_config", "max_iterations")

    def __init__(
        self,
        *,
        dimensions: int = DEFAULT_DIMENSIONS,
        readings: Optional[Sequence[RangingAndRssiReading]] = None,
        quality_scores: Optional[Sequence[float]] = None,
        initial_position: Optional[np.ndarray] = None,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
        listener: Optional[Any] = None,
        transmitted_power_estimation_enabled: bool = True,
        path_loss_estimation_enabled: bool = False,
        ranging_config: Optional[StageConfig] = None,
        rssi_config: Optional[StageConfig] = None,
        progress_delta: float = DEFAULT_PROGRESS_DELTA,
        result_refined: bool = True,
        keep_covariance: bool = True,
        use_reading_position_covariance: bool = True,
        homogeneous_linear_solver_used: bool = True,
        random_state: RandomState = None,
    ):
        """
        Initialize estimator. All arguments are keyword-only.

        Args:
            dimensions: 2 or 3.
            readings: Ranging and RSSI readings of one radio source.
            quality_scores: One score per reading in (0, 1], required when a
                stage uses PROSAC or PROMedS.
            initial_position: Optional seed position; overrides the Stage A
                position as the Stage B seed.
            initial_transmitted_power_dbm: Initial Pt in dBm; required when
                transmitted power estimation is disabled.
            initial_path_loss_exponent: Initial (or fixed) path-loss exponent.
            listener: Optional SequentialEstimatorListener.
            transmitted_power_estimation_enabled: Estimate Pt.
            path_loss_estimation_enabled: Estimate the path-loss exponent.
            ranging_config: Robust configuration of Stage A.
            rssi_config: Robust configuration of Stage B.
            progress_delta: Minimum overall progress change between
                notifications, in [0, 1].
            result_refined: Refine each stage result on its inliers and
                compute covariances.
            keep_covariance: Keep covariances of refined results.
            use_reading_position_covariance: Propagate receiver position
                covariance into reading uncertainties.
            homogeneous_linear_solver_used: Use the homogeneous lateration system.
            random_state: Seed or Generator for subset sampling.

        Raises:
            ValueError: If any argument is invalid.
        """
        super().__init__(listener)
        if dimensions not in (2, 3):
            raise ValueError(f"dimensions must be 2 or 3, got {dimensions}")
        validate_progress_delta(progress_delta)

        self._dimensions = dimensions
        self._readings: Optional[Sequence[RangingAndRssiReading]] = None
        self._quality_scores: Optional[np.ndarray] = None
        self._initial_position: Optional[np.ndarray] = None
        self._initial_transmitted_power_dbm: Optional[float] = None
        self._initial_path_loss_exponent = float(initial_path_loss_exponent)
        self._transmitted_power_estimation_enabled = transmitted_power_estimation_enabled
        self._path_loss_estimation_enabled = path_loss_estimation_enabled
        self._ranging_config = self._checked_config(ranging_config)
        self._rssi_config = self._checked_config(rssi_config)
        self._progress_delta = progress_delta
        self._result_refined = result_refined
        self._keep_covariance = keep_covariance
        self._use_reading_position_covariance = use_reading_position_covariance
        self._homogeneous_linear_solver_used = homogeneous_linear_solver_used
        self._random_state = resolve_random_state(random_state)

        if readings is not None:
            self.readings = readings
        if quality_scores is not None:
            self.quality_scores = quality_scores
        if initial_position is not None:
            self.initial_position = initial_position
        if initial_transmitted_power_dbm is not None:
            self.initial_transmitted_power_dbm = initial_transmitted_power_dbm

        self.estimated_source: Optional[EstimatedRadioSource] = None
        self.ranging_solution: Optional[RangingSolution] = None
        self.ranging_inliers_data: Optional[InliersData] = None
        self.inliers_data: Optional[InliersData] = None

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def readings(self) -> Optional[Sequence[RangingAndRssiReading]]:
        return self._readings

    @readings.setter
    def readings(self, value: Sequence[RangingAndRssiReading]) -> None:
        self._lock.check()
        check_readings(value, self._dimensions)
        if not all(isinstance(r, RangingAndRssiReading) for r in value):
            raise ValueError("Readings must be RangingAndRssiReading instances")
        self._readings = value

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
        if position.shape != (self._dimensions,):
            raise ValueError(
                f"Initial position must have shape ({self._dimensions},), got {position.shape}"
            )
        self._initial_position = position

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
        self._raise_preliminary_subset_sizes()

    @property
    def path_loss_estimation_enabled(self) -> bool:
        return self._path_loss_estimation_enabled

    @path_loss_estimation_enabled.setter
    def path_loss_estimation_enabled(self, value: bool) -> None:
        self._lock.check()
        self._path_loss_estimation_enabled = bool(value)
        self._raise_preliminary_subset_sizes()

    @property
    def ranging_config(self) -> StageConfig:
        """Immutable robust configuration of the ranging stage."""
        return self._ranging_config

    @ranging_config.setter
    def ranging_config(self, value: StageConfig) -> None:
        self._lock.check()
        self._ranging_config = self._checked_config(value)

    @property
    def rssi_config(self) -> StageConfig:
        """Immutable robust configuration of the RSSI stage."""
        return self._rssi_config

    @rssi_config.setter
    def rssi_config(self, value: StageConfig) -> None:
        self._lock.check()
        self._rssi_config = self._checked_config(value)

    def _checked_config(self, config: Optional[StageConfig]) -> StageConfig:
        """Validate a stage configuration and return a copy owned by this estimator."""
        if config is None:
            return StageConfig()
        if not isinstance(config, StageConfig):
            raise ValueError(f"Expected a StageConfig, got {type(config).__name__}")
        size = config.preliminary_subset_size
        if size is not None and size < self.min_readings:
            raise ValueError(
                f"Preliminary subset size must be at least {self.min_readings}, got {size}"
            )
        return replace(config)

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
    def use_reading_position_covariance(self) -> bool:
        return self._use_reading_position_covariance

    @use_reading_position_covariance.setter
    def use_reading_position_covariance(self, value: bool) -> None:
        self._lock.check()
        self._use_reading_position_covariance = bool(value)

    @property
    def homogeneous_linear_solver_used(self) -> bool:
        return self._homogeneous_linear_solver_used

    @homogeneous_linear_solver_used.setter
    def homogeneous_linear_solver_used(self, value: bool) -> None:
        self._lock.check()
        self._homogeneous_linear_solver_used = bool(value)

    @property
    def min_readings(self) -> int:
        """Minimum number of readings: dims + 1 + [power] + [path loss]."""
        return (
            self._dimensions
            + 1
            + int(self._transmitted_power_estimation_enabled)
            + int(self._path_loss_estimation_enabled)
        )

    @property
    def ranging_preliminary_subset_size(self) -> int:
        return self._subset_size(self._ranging_config)

    @ranging_preliminary_subset_size.setter
    def ranging_preliminary_subset_size(self, value: int) -> None:
        self._set_subset_size("_ranging_config", value)

    @property
    def rssi_preliminary_subset_size(self) -> int:
        return self._subset_size(self._rssi_config)

    @rssi_preliminary_subset_size.setter
    def rssi_preliminary_subset_size(self, value: int) -> None:
        self._set_subset_size("_rssi_config", value)

    def _subset_size(self, config: StageConfig) -> int:
        if config.preliminary_subset_size is None:
            return self.min_readings
        return config.preliminary_subset_size

    def _set_subset_size(self, stage: str, value: int) -> None:
        self._lock.check()
        if value < self.min_readings:
            raise ValueError(
                f"Preliminary subset size must be at least {self.min_readings}, got {value}"
            )
        setattr(self, stage, replace(getattr(self, stage), preliminary_subset_size=int(value)))

    def _raise_preliminary_subset_sizes(self) -> None:
        for stage in ("_ranging_config", "_rssi_config"):
            size = getattr(self, stage).preliminary_subset_size
            if size is not None and size < self.min_readings:
                config = replace(getattr(self, stage), preliminary_subset_size=self.min_readings)
                setattr(self, stage, config)

    @property
    def quality_scores_required(self) -> bool:
        return (
            self._ranging_config.method.requires_quality_scores
            or self._rssi_config.method.requires_quality_scores
        )

    @property
    def is_ready(self) -> bool:
        if self._readings is None:
            return False
        n = len(self._readings)
        subset_sizes = (self.ranging_preliminary_subset_size, self.rssi_preliminary_subset_size)
        if min(subset_sizes) < self.min_readings or n < max(self.min_readings, *subset_sizes):
            return False
        if not self._transmitted_power_estimation_enabled and self._initial_transmitted_power_dbm is None:
            return False
        if self.quality_scores_required:
            return self._quality_scores is not None and len(self._quality_scores) == n
        return True

    def estimate(self) -> EstimatedRadioSource:
        """
        Estimate the radio source in two robust stages.

        Returns:
            EstimatedRadioSource with the Stage B position, transmitted power
            and path-loss exponent.

        Raises:
            LockedError: If called while already running (e.g. from a
                listener callback).
            NotReadyError: If readings are missing or too few, quality
                scores are missing for PROSAC or PROMedS, or Pt is fixed without an
                initial value.
            RobustEstimatorError: If either stage finds no valid model.
        """
        with self._lock.hold():
            if not self.is_ready:
                raise NotReadyError(
                    f"Sequential estimation needs at least {self.min_readings} readings"
                    + (", one quality score per reading" if self.quality_scores_required else "")
                    + (", and an initial transmitted power"
                       if not self._transmitted_power_estimation_enabled else "")
                )

            self.estimated_source = None
            self.ranging_solution = None
            self.ranging_inliers_data = None
            self.inliers_data = None
            self._notify("on_estimate_start")

            ranging_seed, rssi_seed = self._stage_random_states()
            stage_delta = min(1.0, 2.0 * self._progress_delta)

            logger.debug("Ranging stage with %s on %d readings",
                         self._ranging_config.method.name, len(self._readings))
            ranging = RobustRangingRadioSourceEstimator(
                readings=[r.to_ranging_reading() for r in self._readings],
                quality_scores=self._quality_scores,
                initial_position=self._initial_position,
                listener=_StageProgressRelay(self, 0.0),
                method=self._ranging_config.method,
                threshold=self._ranging_config.effective_threshold,
                confidence=self._ranging_config.confidence,
                max_iterations=self._ranging_config.max_iterations,
                progress_delta=stage_delta,
                result_refined=self._result_refined,
                keep_covariance=self._keep_covariance,
                homogeneous_linear_solver_used=self._homogeneous_linear_solver_used,
                use_reading_position_covariance=self._use_reading_position_covariance,
                random_state=ranging_seed,
            )
            ranging.preliminary_subset_size = self.ranging_preliminary_subset_size
            self.ranging_solution = ranging.estimate()
            self.ranging_inliers_data = ranging.inliers_data

            seed = self._initial_position
            if seed is None:
                seed = self.ranging_solution.position

            logger.debug("RSSI stage with %s seeded at %s", self._rssi_config.method.name, seed)
            rssi = RobustRangingAndRssiRadioSourceEstimator(
                readings=self._readings,
                quality_scores=self._quality_scores,
                initial_position=seed,
                initial_transmitted_power_dbm=self._initial_transmitted_power_dbm,
                initial_path_loss_exponent=self._initial_path_loss_exponent,
                listener=_StageProgressRelay(self, 0.5),
                transmitted_power_estimation_enabled=self._transmitted_power_estimation_enabled,
                path_loss_estimation_enabled=self._path_loss_estimation_enabled,
                method=self._rssi_config.method,
                threshold=self._rssi_config.effective_threshold,
                confidence=self._rssi_config.confidence,
                max_iterations=self._rssi_config.max_iterations,
                progress_delta=stage_delta,
                result_refined=self._result_refined,
                keep_covariance=self._keep_covariance,
                homogeneous_linear_solver_used=self._homogeneous_linear_solver_used,
                use_reading_position_covariance=self._use_reading_position_covariance,
                random_state=rssi_seed,
            )
            rssi.preliminary_subset_size = self.rssi_preliminary_subset_size
            solution = rssi.estimate()
            self.inliers_data = rssi.inliers_data

            self.estimated_source = EstimatedRadioSource(
                source=self._readings[0].source,
                position=solution.position,
                transmitted_power_dbm=solution.transmitted_power_dbm,
                path_loss_exponent=solution.path_loss_exponent,
                position_covariance=solution.position_covariance,
                transmitted_power_std_dbm=_std(solution.transmitted_power_variance),
                path_loss_exponent_std=_std(solution.path_loss_exponent_variance),
                inliers=self.inliers_data,
            )
            self._notify("on_estimate_end")
            return self.estimated_source

    def _stage_random_states(self):
        if isinstance(self._random_state, np.random.Generator):
            return self._random_state, self._random_state
        return self._random_state, self._random_state + 1


def _std(variance: Optional[float]) -> Optional[float]:
    if variance is None:
        return None
    return float(np.sqrt(max(variance, 0.0)))
