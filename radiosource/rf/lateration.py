"""
Radio source positioning from ranging readings (trilateration).

Squared range equations |x - p_i|² = d_i² are linearized in one of two ways:

Inhomogeneous (differencing against a reference receiver p_0):
    2(p_i - p_0)·x = d_0² - d_i² + |p_i|² - |p_0|²,   i = 1..N-1

Homogeneous (keeping |x|² as an extra unknown):
    [-2·p_iᵀ, 1, |p_i|² - d_i²] · [x, |x|², 1]ᵀ = 0

Both need N ≥ dims + 1 readings. Receiver positions are centered on their
centroid before building either system to keep it well conditioned.

The linear solution can be refined with Levenberg-Marquardt on the range
residuals r_i = d_i - |x - p_i|, weighted by 1/σᵢ² where σᵢ combines the
distance standard deviation and, optionally, the receiver position accuracy:
    σᵢ² = σ_d,i² + σ_pos,i²
"""

from dataclasses import dataclass
from typing import Any, Optional, Sequence

import numpy as np

from radiosource.estimators.base import LockableEstimator
from radiosource.estimators.least_squares import (
    homogeneous_least_squares,
    linear_least_squares,
)
from radiosource.estimators.nonlinear_least_squares import (
    NonlinearLSResult,
    levenberg_marquardt,
)
from radiosource.exceptions import NotReadyError, RadioSourceEstimationError
from radiosource.rf.readings import RangingReading, check_readings, reading_positions
from radiosource.utils.geometry import (
    average_accuracy,
    check_receiver_geometry,
    normalize_jacobian_singularities,
)

# Distance standard deviation used when a reading does not provide one (m)
FALLBACK_DISTANCE_STD = 1e-3

# Smallest |w| accepted when dehomogenizing the homogeneous solution
EPSILON_HOMOGENEOUS = 1e-12


@dataclass
class RangingSolution:
    """Position estimated from ranging readings.

    Attributes:
        position: Estimated position (dims,).
        position_covariance: Covariance (dims × dims), or None if the
            solution was not refined.
    """

    position: np.ndarray
    position_covariance: Optional[np.ndarray] = None


def position_accuracies(readings: Sequence[Any]) -> np.ndarray:
    """One-sigma average accuracy of each reading position (0 if unknown)."""
    return np.array([
        0.0 if r.position_covariance is None else average_accuracy(r.position_covariance)
        for r in readings
    ])


def distance_standard_deviations(
    readings: Sequence[Any], use_position_covariance: bool = True
) -> np.ndarray:
    """
    Standard deviation of each measured distance.

    Args:
        readings: Readings carrying ``distance_std`` and ``position_covariance``.
        use_position_covariance: If True, add the receiver position
            uncertainty to the distance uncertainty.

    Returns:
        Positive standard deviations (N,).
    """
    sigma = np.array([
        FALLBACK_DISTANCE_STD if r.distance_std is None else r.distance_std
        for r in readings
    ], dtype=float)
    if use_position_covariance:
        sigma = np.sqrt(sigma**2 + position_accuracies(readings) ** 2)
    return sigma


def linear_lateration(
    positions: np.ndarray,
    distances: np.ndarray,
    homogeneous: bool = True,
) -> np.ndarray:
    """
    Closed-form lateration from squared range equations.

    Args:
        positions: Receiver positions (N, dims), N ≥ dims + 1.
        distances: Measured distances (N,).
        homogeneous: Use the homogeneous system instead of differencing
            against a reference receiver.

    Returns:
        Estimated position (dims,).

    Raises:
        RadioSourceEstimationError: If receivers are degenerate (colinear in
            2D, coplanar in 3D) or the system has no unique solution.

    Example:
        >>> receivers = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]])
        >>> d = np.linalg.norm(receivers - np.array([3.0, 4.0]), axis=1)
        >>> np.round(linear_lateration(receivers, d), 6)
        array([3., 4.])
    """
    positions = np.asarray(positions, dtype=float)
    distances = np.asarray(distances, dtype=float)

    ok, msg = check_receiver_geometry(positions, warn_degenerate=False)
    if not ok:
        raise RadioSourceEstimationError(msg)

    center = positions.mean(axis=0)
    p = positions - center
    sq_norms = np.sum(p**2, axis=1)
    d2 = distances**2

    try:
        if homogeneous:
            A = np.column_stack([-2.0 * p, np.ones(len(p)), sq_norms - d2])
            v = homogeneous_least_squares(A)
            if abs(v[-1]) < EPSILON_HOMOGENEOUS:
                raise RadioSourceEstimationError(
                    "Homogeneous lateration solution is at infinity"
                )
            x = v[: p.shape[1]] / v[-1]
        else:
            A = 2.0 * (p[1:] - p[0])
            b = d2[0] - d2[1:] + sq_norms[1:] - sq_norms[0]
            x, _ = linear_least_squares(A, b, return_covariance=False)
    except ValueError as e:
        raise RadioSourceEstimationError(f"Linear lateration failed: {e}") from e

    if not np.all(np.isfinite(x)):
        raise RadioSourceEstimationError("Linear lateration produced a non-finite position")
    return x + center


def range_model(positions: np.ndarray):
    """
    Build the range measurement model and its Jacobian.

    Args:
        positions: Receiver positions (N, dims).

    Returns:
        Tuple (h, jacobian) with h(x) = |x - p_i| and J = ∂h/∂x (N × dims).
    """

    def h(x: np.ndarray) -> np.ndarray:
        return np.linalg.norm(x - positions, axis=1)

    def jacobian(x: np.ndarray) -> np.ndarray:
        diff = x - positions
        return normalize_jacobian_singularities(diff, np.linalg.norm(diff, axis=1))

    return h, jacobian


def refine_lateration(
    positions: np.ndarray,
    distances: np.ndarray,
    sigma: np.ndarray,
    initial_position: np.ndarray,
    return_covariance: bool = True,
) -> NonlinearLSResult:
    """
    Refine a position by Levenberg-Marquardt on the range residuals.

    Args:
        positions: Receiver positions (N, dims).
        distances: Measured distances (N,).
        sigma: Distance standard deviations (N,).
        initial_position: Starting point (dims,).
        return_covariance: If True, return (J'WJ)⁻¹ at the solution.

    Returns:
        NonlinearLSResult with the refined position.

    Raises:
        RadioSourceEstimationError: If the refinement diverges.
    """
    h, jacobian = range_model(positions)
    try:
        return levenberg_marquardt(
            h, jacobian, distances, initial_position,
            sigma=sigma,
            return_covariance=return_covariance,
        )
    except ValueError as e:
        raise RadioSourceEstimationError(f"Lateration refinement failed: {e}") from e


class RangingRadioSourceEstimator(LockableEstimator):
    """
    Non-robust radio source position estimator from ranging readings.

    Uses a linear lateration to obtain a position when no initial position is
    given or the non-linear solver is disabled, then refines it with
    Levenberg-Marquardt when the non-linear solver is enabled. Covariance is
    only available for refined solutions.

    Attributes:
        estimated_position: Position of the last estimation, or None.
        estimated_position_covariance: Covariance of the last estimation, or None.

    Example:
        >>> import numpy as np
        >>> from radiosource.rf.readings import RangingReading
        >>> from radiosource.rf.sources import WifiAccessPoint
        >>> ap = WifiAccessPoint("bssid", 2.4e9)
        >>> source = np.array([1.0, 2.0])
        >>> receivers = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0], [8.0, 9.0]])
        >>> readings = [RangingReading(ap, p, float(np.linalg.norm(p - source)))
        ...             for p in receivers]
        >>> estimator = RangingRadioSourceEstimator(readings)
        >>> np.round(estimator.estimate().position, 6)
        array([1., 2.])
    """

    def __init__(
        self,
        readings: Optional[Sequence[RangingReading]] = None,
        initial_position: Optional[np.ndarray] = None,
        listener: Optional[Any] = None,
        non_linear_solver_enabled: bool = True,
        homogeneous_linear_solver_used: bool = True,
        use_reading_position_covariance: bool = True,
    ):
        """
        Initialize estimator.

        Args:
            readings: Ranging readings (at least dims + 1 to be ready).
            initial_position: Optional starting point for the refinement.
            listener: Optional object with on_estimate_start/on_estimate_end.
            non_linear_solver_enabled: Refine with Levenberg-Marquardt.
            homogeneous_linear_solver_used: Use the homogeneous linear system.
            use_reading_position_covariance: Add receiver position accuracy
                to the distance uncertainty.

        Raises:
            ValueError: If readings are empty or of mixed dimensions, or the
                initial position has the wrong shape.
        """
        super().__init__(listener)
        self._readings: Optional[Sequence[RangingReading]] = None
        self._initial_position: Optional[np.ndarray] = None
        self._non_linear_solver_enabled = non_linear_solver_enabled
        self._homogeneous_linear_solver_used = homogeneous_linear_solver_used
        self._use_reading_position_covariance = use_reading_position_covariance

        if readings is not None:
            self.readings = readings
        if initial_position is not None:
            self.initial_position = initial_position

        self.estimated_position: Optional[np.ndarray] = None
        self.estimated_position_covariance: Optional[np.ndarray] = None

    @property
    def readings(self) -> Optional[Sequence[RangingReading]]:
        return self._readings

    @readings.setter
    def readings(self, value: Sequence[RangingReading]) -> None:
        self._lock.check()
        check_readings(value)
        self._readings = value

    @property
    def dimensions(self) -> Optional[int]:
        """Dimensionality of the readings, or None if there are none."""
        if self._readings is None:
            return None
        return self._readings[0].dimensions

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
    def non_linear_solver_enabled(self) -> bool:
        return self._non_linear_solver_enabled

    @non_linear_solver_enabled.setter
    def non_linear_solver_enabled(self, value: bool) -> None:
        self._lock.check()
        self._non_linear_solver_enabled = bool(value)

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
        """Minimum number of readings: dims + 1 (3 in 2D, 4 in 3D)."""
        return (self.dimensions or 3) + 1

    @property
    def is_ready(self) -> bool:
        if self._readings is None or len(self._readings) < self.min_readings:
            return False
        return (
            self._initial_position is None
            or len(self._initial_position) == self.dimensions
        )

    def estimate(self) -> RangingSolution:
        """
        Estimate the radio source position from the configured readings.

        Returns:
            RangingSolution with the position and, when refined, covariance.

        Raises:
            LockedError: If called while already running.
            NotReadyError: If there are fewer than dims + 1 readings.
            RadioSourceEstimationError: If the geometry is degenerate.
        """
        with self._lock.hold():
            if not self.is_ready:
                raise NotReadyError(
                    f"At least {self.min_readings} ranging readings are required"
                )
            self._notify("on_estimate_start")
            solution = self.solve(self._readings)
            self.estimated_position = solution.position
            self.estimated_position_covariance = solution.position_covariance
            self._notify("on_estimate_end")
            return solution

    def solve(
        self,
        readings: Sequence[RangingReading],
        non_linear: Optional[bool] = None,
        return_covariance: bool = True,
    ) -> RangingSolution:
        """
        Solve for the position of a set of readings with this configuration.

        Does not modify the estimator, so it can be used on subsets of
        readings by robust estimators.

        Args:
            readings: At least dims + 1 ranging readings.
            non_linear: Override of non_linear_solver_enabled.
            return_covariance: Compute covariance when refining.

        Returns:
            RangingSolution.

        Raises:
            RadioSourceEstimationError: If the solve fails.
        """
        if non_linear is None:
            non_linear = self._non_linear_solver_enabled

        positions = reading_positions(readings)
        distances = np.array([r.distance for r in readings], dtype=float)

        if self._initial_position is None or not non_linear:
            position = linear_lateration(
                positions, distances, homogeneous=self._homogeneous_linear_solver_used
            )
        else:
            position = self._initial_position

        if not non_linear:
            return RangingSolution(position=position)

        sigma = distance_standard_deviations(readings, self._use_reading_position_covariance)
        result = refine_lateration(
            positions, distances, sigma, position, return_covariance=return_covariance
        )
        return RangingSolution(position=result.x, position_covariance=result.covariance)
