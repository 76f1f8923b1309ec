"""
Consensus-based robust estimation.

This module implements a generic robust estimator that searches for the model
best supported by a set of items in the presence of outliers. A single
consensus loop is shared by all methods; each method contributes a sampling
policy and a scoring policy through a strategy table.

Methods:
    - RANSAC: Uniform sampling, inlier count scoring.
    - LMedS: Uniform sampling, least median of residuals scoring.
    - MSAC: Uniform sampling, truncated quadratic cost scoring.
    - PROSAC: Sampling from a growing prefix of items sorted by quality.
    - RRANSAC: RANSAC with a T(d,d) pre-test before full scoring.
    - PROMedS: PROSAC sampling with least median of residuals scoring.

Iteration bound after each improvement (w = inlier ratio, k = subset size):
    N = log(1 - confidence) / log(1 - w^k)

References:
    Fischler & Bolles (1981), RANSAC.
    Rousseeuw (1984), Least median of squares regression.
    Torr & Zisserman (2000), MLESAC / MSAC.
    Chum & Matas (2005), PROSAC.
    Matas & Chum (2004), Randomized RANSAC with T(d,d) test.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from radiosource.estimators.base import LockableEstimator
from radiosource.exceptions import (
    NotReadyError,
    RadioSourceEstimationError,
    RobustEstimatorError,
)

logger = logging.getLogger(__name__)


DEFAULT_CONFIDENCE = 0.99
DEFAULT_MAX_ITERATIONS = 5000
DEFAULT_PROGRESS_DELTA = 0.05
DEFAULT_THRESHOLD = 0.1
DEFAULT_LMEDS_STOP_THRESHOLD = 1e-4
DEFAULT_PRETEST_SIZE = 1

# Consistency factor of the median absolute deviation for Gaussian noise
MAD_SCALE = 1.4826


class RobustEstimatorMethod(Enum):
    """Robust estimation methods supported by RobustEstimator."""

    RANSAC = "ransac"
    LMEDS = "lmeds"
    MSAC = "msac"
    PROSAC = "prosac"
    RRANSAC = "rransac"
    PROMEDS = "promeds"

    @property
    def requires_quality_scores(self) -> bool:
        return self in (RobustEstimatorMethod.PROSAC, RobustEstimatorMethod.PROMEDS)

    @property
    def median_based(self) -> bool:
        return self in (RobustEstimatorMethod.LMEDS, RobustEstimatorMethod.PROMEDS)


RandomState = Union[None, int, np.random.Generator]

# fit(subset_indices) -> candidate models
FitFunction = Callable[[np.ndarray], Sequence[Any]]
# residuals(model, item_indices) -> one non-negative residual per index
ResidualFunction = Callable[[Any, np.ndarray], np.ndarray]


@dataclass
class InliersData:
    """Consensus set of a robust estimation.

    Attributes:
        inliers: Boolean mask over all items, True for inliers.
        residuals: Residual of every item for the best model, or None if
            residuals were not kept.
        num_inliers: Number of True entries in the mask.
    """

    inliers: np.ndarray
    residuals: Optional[np.ndarray]
    num_inliers: int


class RobustEstimatorListener:
    """Receives robust estimation events.

    Subclass and override the events of interest; all methods are no-ops.
    Callbacks run while the estimator is locked.
    """

    def on_estimate_start(self, estimator: Any) -> None:
        pass

    def on_estimate_next_iteration(self, estimator: Any, iteration: int) -> None:
        pass

    def on_estimate_progress_change(self, estimator: Any, progress: float) -> None:
        pass

    def on_estimate_end(self, estimator: Any) -> None:
        pass


def resolve_random_state(random_state: RandomState) -> Union[int, np.random.Generator]:
    """
    Fix the seed of a random state so estimations can be repeated.

    Args:
        random_state: None, an integer seed or a numpy Generator.

    Returns:
        The Generator unchanged, the integer seed unchanged, or a freshly
        drawn integer seed when random_state is None.
    """
    if isinstance(random_state, np.random.Generator):
        return random_state
    if random_state is None:
        return int(np.random.SeedSequence().entropy % (2**63))
    return int(random_state)


def make_rng(random_state: Union[int, np.random.Generator]) -> np.random.Generator:
    """Create the generator used by one estimation."""
    if isinstance(random_state, np.random.Generator):
        return random_state
    return np.random.default_rng(random_state)


# ---------------------------------------------------------------------------
# Sampling policies
# ---------------------------------------------------------------------------


class _UniformSampler:
    """Draws subsets uniformly from all items."""

    def __init__(self, num_items: int, subset_size: int, rng: np.random.Generator):
        self.num_items = num_items
        self.subset_size = subset_size
        self.rng = rng

    def sample(self) -> np.ndarray:
        return self.rng.choice(self.num_items, size=self.subset_size, replace=False)


class _ProgressiveSampler:
    """PROSAC sampler drawing from a prefix of items sorted by quality.

    The prefix grows following the growth function T_n of Chum & Matas so
    that after T_N draws the sampling is equivalent to uniform sampling.
    """

    def __init__(
        self,
        quality_scores: np.ndarray,
        subset_size: int,
        max_draws: int,
        rng: np.random.Generator,
    ):
        self.order = np.argsort(-quality_scores, kind="stable")
        self.num_items = len(quality_scores)
        self.subset_size = subset_size
        self.rng = rng

        k = subset_size
        N = self.num_items
        # T_k: expected number of samples containing only the top k items
        t_n = float(max_draws)
        for i in range(k):
            t_n *= (k - i) / (N - i)
        self._t_n = t_n
        self._t_n_prime = 1
        self._n = k
        self._draws = 0

    def sample(self) -> np.ndarray:
        k = self.subset_size
        self._draws += 1

        if self._draws > self._t_n_prime and self._n < self.num_items:
            t_next = self._t_n * (self._n + 1) / (self._n + 1 - k)
            self._n += 1
            self._t_n_prime += int(math.ceil(t_next - self._t_n))
            self._t_n = t_next

        n = self._n
        if self._t_n_prime < self._draws:
            chosen = self.rng.choice(n, size=k, replace=False)
        else:
            # Always include the newest item of the prefix
            others = self.rng.choice(n - 1, size=k - 1, replace=False)
            chosen = np.append(others, n - 1)
        return self.order[chosen]


# ---------------------------------------------------------------------------
# Scoring policies. Lower scores are better.
# ---------------------------------------------------------------------------


def _score_inlier_count(residuals: np.ndarray, threshold: float) -> Tuple[Tuple[float, float], np.ndarray]:
    inliers = residuals <= threshold
    # Ties on the inlier count go to the smaller inlier residual
    return (-float(np.count_nonzero(inliers)), float(np.sum(residuals[inliers] ** 2))), inliers


def _score_truncated_quadratic(residuals: np.ndarray, threshold: float) -> Tuple[float, np.ndarray]:
    inliers = residuals <= threshold
    return float(np.sum(np.minimum(residuals**2, threshold**2))), inliers


def _score_median(residuals: np.ndarray, threshold: float) -> Tuple[float, np.ndarray]:
    median = float(np.median(residuals))
    return median, residuals <= max(median, threshold)


@dataclass(frozen=True)
class _Strategy:
    quality_ordered: bool
    score: Callable[[np.ndarray, float], Tuple[Any, np.ndarray]]
    pretest: bool = False
    median_based: bool = False


_STRATEGIES: Dict[RobustEstimatorMethod, _Strategy] = {
    RobustEstimatorMethod.RANSAC: _Strategy(False, _score_inlier_count),
    RobustEstimatorMethod.LMEDS: _Strategy(False, _score_median, median_based=True),
    RobustEstimatorMethod.MSAC: _Strategy(False, _score_truncated_quadratic),
    RobustEstimatorMethod.PROSAC: _Strategy(True, _score_inlier_count),
    RobustEstimatorMethod.RRANSAC: _Strategy(False, _score_inlier_count, pretest=True),
    RobustEstimatorMethod.PROMEDS: _Strategy(True, _score_median, median_based=True),
}


def default_threshold(method: RobustEstimatorMethod) -> float:
    """Default inlier threshold (or stop threshold for LMedS and PROMedS) of a method."""
    if method.median_based:
        return DEFAULT_LMEDS_STOP_THRESHOLD
    return DEFAULT_THRESHOLD


def validate_threshold(threshold: float) -> None:
    if threshold <= 0:
        raise ValueError(f"threshold must be positive, got {threshold}")


def validate_confidence(confidence: float) -> None:
    if not 0.0 < confidence < 1.0:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")


def validate_max_iterations(max_iterations: int) -> None:
    if max_iterations <= 0:
        raise ValueError(f"max_iterations must be positive, got {max_iterations}")


def validate_progress_delta(progress_delta: float) -> None:
    if not 0.0 <= progress_delta <= 1.0:
        raise ValueError(f"progress_delta must be in [0, 1], got {progress_delta}")


def validate_quality_scores(quality_scores: Optional[Sequence[float]]) -> Optional[np.ndarray]:
    """
    Convert quality scores to an array and check their range.

    Raises:
        ValueError: If scores are not 1D or not in (0, 1].
    """
    if quality_scores is None:
        return None
    scores = np.asarray(quality_scores, dtype=float)
    if scores.ndim != 1:
        raise ValueError(f"quality_scores must be 1D, got shape {scores.shape}")
    if np.any(scores <= 0) or np.any(scores > 1):
        raise ValueError("quality_scores must be in (0, 1]")
    return scores


class RobustEstimator(LockableEstimator):
    """
    Generic consensus estimator shared by all robust methods.

    The estimator knows nothing about the model being fitted: it draws
    subsets of item indices, asks ``fit`` for candidate models and scores
    every candidate with the residuals returned by ``residuals``.

    Attributes:
        best_model: Model with the best score after estimate(), or None.
        best_subset: Indices of the subset best_model was fitted from.
        inliers_data: Consensus set of best_model.
        iterations: Number of iterations run by the last estimate().

    Example:
        >>> import numpy as np
        >>> x = np.arange(10.0)
        >>> y = 2.0 * x + 1.0
        >>> y[3] = 50.0  # outlier
        >>> def fit(idx):
        ...     a, b = np.polyfit(x[idx], y[idx], 1)
        ...     return [(a, b)]
        >>> def residuals(model, idx):
        ...     return np.abs(y[idx] - (model[0] * x[idx] + model[1]))
        >>> est = RobustEstimator(fit, residuals, num_items=10, subset_size=2,
        ...                       random_state=0)
        >>> a, b = est.estimate()
        >>> round(a, 6), round(b, 6)
        (2.0, 1.0)
    """

    def __init__(
        self,
        fit: FitFunction,
        residuals: ResidualFunction,
        num_items: int,
        subset_size: int,
        method: RobustEstimatorMethod = RobustEstimatorMethod.RANSAC,
        threshold: Optional[float] = None,
        confidence: float = DEFAULT_CONFIDENCE,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        progress_delta: float = DEFAULT_PROGRESS_DELTA,
        quality_scores: Optional[Sequence[float]] = None,
        listener: Optional[Any] = None,
        keep_residuals: bool = False,
        pretest_size: int = DEFAULT_PRETEST_SIZE,
        random_state: RandomState = None,
    ):
        """
        Initialize robust estimator.

        Args:
            fit: Function fitting candidate models from subset indices. It may
                return an empty list, or raise RadioSourceEstimationError or
                ValueError, for degenerate subsets.
            residuals: Function returning the residual of each requested item.
            num_items: Number of items available.
            subset_size: Number of items in each sampled subset (k).
            method: Robust method.
            threshold: Inlier threshold on residuals. For LMedS and PROMedS
                this is the stop threshold on the median. Defaults depend on
                the method.
            confidence: Probability in (0, 1) of drawing an outlier-free subset.
            max_iterations: Hard cap on the number of iterations.
            progress_delta: Minimum progress change between notifications.
            quality_scores: One score per item in (0, 1], used by PROSAC and
                PROMedS.
            listener: Optional RobustEstimatorListener.
            keep_residuals: Keep the residuals of the best model.
            pretest_size: Number of items checked by the RRANSAC pre-test.
            random_state: Seed or Generator for subset sampling.

        Raises:
            ValueError: If any parameter is out of range.
        """
        super().__init__(listener)
        if subset_size < 1:
            raise ValueError(f"subset_size must be at least 1, got {subset_size}")
        if num_items < 0:
            raise ValueError(f"num_items must be non-negative, got {num_items}")
        if pretest_size < 1:
            raise ValueError(f"pretest_size must be at least 1, got {pretest_size}")
        if threshold is not None:
            validate_threshold(threshold)
        validate_confidence(confidence)
        validate_max_iterations(max_iterations)
        validate_progress_delta(progress_delta)

        self._fit = fit
        self._residuals = residuals
        self._num_items = num_items
        self._subset_size = subset_size
        self._method = RobustEstimatorMethod(method)
        self._threshold = threshold
        self._confidence = confidence
        self._max_iterations = max_iterations
        self._progress_delta = progress_delta
        self._quality_scores = validate_quality_scores(quality_scores)
        self._keep_residuals = keep_residuals
        self._pretest_size = pretest_size
        self._random_state = resolve_random_state(random_state)

        self.best_model: Any = None
        self.best_subset: Optional[np.ndarray] = None
        self.inliers_data: Optional[InliersData] = None
        self.iterations = 0

    @property
    def num_items(self) -> int:
        return self._num_items

    @property
    def subset_size(self) -> int:
        return self._subset_size

    @property
    def method(self) -> RobustEstimatorMethod:
        return self._method

    @method.setter
    def method(self, value: RobustEstimatorMethod) -> None:
        self._lock.check()
        self._method = RobustEstimatorMethod(value)

    @property
    def threshold(self) -> float:
        """Inlier threshold, or the method default if none was set."""
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
    def quality_scores(self) -> Optional[np.ndarray]:
        return self._quality_scores

    @quality_scores.setter
    def quality_scores(self, value: Optional[Sequence[float]]) -> None:
        self._lock.check()
        scores = validate_quality_scores(value)
        if scores is not None and len(scores) != self._num_items:
            raise ValueError(
                f"Expected {self._num_items} quality scores, got {len(scores)}"
            )
        self._quality_scores = scores

    @property
    def is_ready(self) -> bool:
        if self._num_items < self._subset_size:
            return False
        if self._method.requires_quality_scores:
            return (
                self._quality_scores is not None
                and len(self._quality_scores) == self._num_items
            )
        return True

    def estimate(self) -> Any:
        """
        Run the consensus search.

        Returns:
            The best model found.

        Raises:
            LockedError: If called while already running.
            NotReadyError: If there are too few items or quality scores are
                missing for PROSAC or PROMedS.
            RobustEstimatorError: If no subset produced a valid model.
        """
        with self._lock.hold():
            if not self.is_ready:
                raise NotReadyError(
                    f"{self._method.name} needs at least {self._subset_size} items"
                    + (" and one quality score per item"
                       if self._method.requires_quality_scores else "")
                )

            self.best_model = None
            self.best_subset = None
            self.inliers_data = None
            self.iterations = 0

            self._notify("on_estimate_start")
            model, subset, residuals = self._run(_STRATEGIES[self._method], make_rng(self._random_state))

            if model is None:
                raise RobustEstimatorError(
                    f"{self._method.name} found no valid model after "
                    f"{self.iterations} iterations"
                )

            self.best_model = model
            self.best_subset = np.sort(subset)
            inliers = self._classify(residuals)
            self.inliers_data = InliersData(
                inliers=inliers,
                residuals=residuals if self._keep_residuals else None,
                num_inliers=int(np.count_nonzero(inliers)),
            )

            logger.debug(
                "%s finished after %d iterations with %d inliers out of %d",
                self._method.name,
                self.iterations,
                self.inliers_data.num_inliers,
                self._num_items,
            )
            self._notify("on_estimate_end")
            return model

    def _run(
        self, strategy: _Strategy, rng: np.random.Generator
    ) -> Tuple[Any, Optional[np.ndarray], Optional[np.ndarray]]:
        n = self._num_items
        k = self._subset_size
        threshold = self.threshold
        all_items = np.arange(n)

        if strategy.quality_ordered:
            sampler = _ProgressiveSampler(self._quality_scores, k, self._max_iterations, rng)
        else:
            sampler = _UniformSampler(n, k, rng)

        # RRANSAC draws pre-test items outside the subset
        pretest_size = min(self._pretest_size, n - k) if strategy.pretest else 0

        best_model = None
        best_score = None
        best_subset = None
        best_residuals = None
        bound = self._max_iterations
        last_progress = 0.0

        logger.debug("%s started with %d items and subsets of %d", self._method.name, n, k)

        while self.iterations < bound:
            subset = sampler.sample()
            self.iterations += 1

            for model in self._fit_subset(subset):
                if pretest_size > 0:
                    candidates = np.setdiff1d(all_items, subset, assume_unique=True)
                    pretest = rng.choice(candidates, size=pretest_size, replace=False)
                    if np.any(self._residuals(model, pretest) > threshold):
                        continue

                residuals = np.asarray(self._residuals(model, all_items), dtype=float)
                score, inliers = strategy.score(residuals, threshold)
                if best_score is not None and not score < best_score:
                    continue

                best_model, best_score, best_residuals = model, score, residuals
                best_subset = subset

                if strategy.median_based:
                    inliers = self._classify(residuals)
                ratio = np.count_nonzero(inliers) / n
                bound = self._iterations_bound(ratio, k + pretest_size)

            self._notify("on_estimate_next_iteration", self.iterations)

            progress = min(1.0, self.iterations / max(bound, 1))
            if progress - last_progress >= self._progress_delta:
                last_progress = progress
                self._notify("on_estimate_progress_change", progress)

            if strategy.median_based and best_score is not None and best_score <= threshold:
                break

        return best_model, best_subset, best_residuals

    def _fit_subset(self, subset: np.ndarray) -> List[Any]:
        try:
            return list(self._fit(subset))
        except (RadioSourceEstimationError, ValueError) as e:
            logger.debug("Subset %s rejected: %s", subset.tolist(), e)
            return []

    def _classify(self, residuals: np.ndarray) -> np.ndarray:
        if self._method.median_based:
            n = self._num_items
            k = self._subset_size
            median = float(np.median(residuals))
            correction = 1.0 + 5.0 / (n - k) if n > k else 1.0
            cutoff = max(1.5 * MAD_SCALE * correction * median, self.threshold)
            return residuals <= cutoff
        return residuals <= self.threshold

    def _iterations_bound(self, inlier_ratio: float, sample_size: int) -> int:
        """Iterations needed to draw an all-inlier sample with the configured confidence."""
        p_good = inlier_ratio**sample_size
        if p_good <= 0.0:
            return self._max_iterations
        if p_good >= 1.0:
            return min(self._max_iterations, self.iterations)
        bound = math.log(1.0 - self._confidence) / math.log(1.0 - p_good)
        return int(min(self._max_iterations, max(self.iterations, math.ceil(bound))))
