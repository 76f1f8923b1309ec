"""
Joint estimation of radio source position, transmitted power and path loss.

Each reading contributes one range and one RSSI observation:

    d_i  = |x - p_i|
    Pr_i = Pt + n·k - 10·n·log10(|x - p_i|)

with Pt the transmitted power (dBm), n the path-loss exponent and
k = 10·log10(c / (4·π·f)) the free-space reference term at the source
frequency f. The unknowns are θ = [x, Pt, n], where Pt and n are only part of
θ when their estimation is enabled; otherwise they stay fixed at their
initial values and have no variance.

Estimation proceeds in two steps:
    1. Linear: position by lateration, then Pt and n by weighted linear
       least squares (the RSSI model is linear in Pt and n for known x).
    2. Non-linear: Levenberg-Marquardt on the stacked range and RSSI
       residuals, with covariance P = (J'WJ)⁻¹.

RSSI Jacobian rows:
    ∂Pr/∂x  = -10·n / ln(10) · (x - p_i) / |x - p_i|²
    ∂Pr/∂Pt = 1
    ∂Pr/∂n  = k - 10·log10(|x - p_i|)
"""

from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple

import numpy as np

from radiosource.estimators.least_squares import weighted_least_squares
from radiosource.estimators.nonlinear_least_squares import levenberg_marquardt
from radiosource.exceptions import NotReadyError, RadioSourceEstimationError
from radiosource.rf.lateration import (
    RangingRadioSourceEstimator,
    distance_standard_deviations,
    linear_lateration,
    position_accuracies,
)
from radiosource.rf.measurement_models import (
    DEFAULT_PATH_LOSS_EXPONENT,
    dbm_to_power,
    frequency_offset_db,
    power_to_dbm,
    validate_power_dbm,
)
from radiosource.rf.readings import RangingAndRssiReading, reading_positions
from radiosource.utils.geometry import EPSILON_RANGE, normalize_jacobian_singularities

# RSSI standard deviation used when a reading does not provide one (dB)
DEFAULT_RSSI_STD = 1.0

LN10 = np.log(10.0)


@dataclass
class RangingAndRssiSolution:
    """Position, transmitted power and path-loss exponent of a radio source.

    Attributes:
        position: Estimated position (dims,).
        transmitted_power_dbm: Estimated or fixed transmitted power (dBm).
        path_loss_exponent: Estimated or fixed path-loss exponent.
        covariance: Covariance of the estimated unknowns [x, Pt?, n?], or None.
        position_covariance: Position block of the covariance, or None.
        transmitted_power_variance: Variance of Pt (dB²), or None when Pt was
            not estimated or not refined.
        path_loss_exponent_variance: Variance of n, or None when n was not
            estimated or not refined.
    """

    position: np.ndarray
    transmitted_power_dbm: float
    path_loss_exponent: float
    covariance: Optional[np.ndarray] = None
    position_covariance: Optional[np.ndarray] = None
    transmitted_power_variance: Optional[float] = None
    path_loss_exponent_variance: Optional[float] = None


def rssi_standard_deviations(
    readings: Sequence[Any],
    path_loss_exponent: float,
    use_position_covariance: bool = True,
) -> np.ndarray:
    """
    Standard deviation of each RSSI observation.

    When use_position_covariance is set, the receiver position accuracy
    σ_pos is propagated through the slope of the model at the measured
    distance: σ² = σ_rssi² + (10·n / (ln(10)·d))²·σ_pos².

    Args:
        readings: Readings carrying ``rssi_std``, ``distance`` and
            ``position_covariance``.
        path_loss_exponent: Path-loss exponent used for the propagation.
        use_position_covariance: Add the receiver position uncertainty.

    Returns:
        Positive standard deviations (N,).
    """
    sigma = np.array([
        DEFAULT_RSSI_STD if r.rssi_std is None else r.rssi_std for r in readings
    ], dtype=float)
    if use_position_covariance:
        distances = np.maximum([r.distance for r in readings], EPSILON_RANGE)
        slope = 10.0 * path_loss_exponent / (LN10 * distances)
        sigma = np.sqrt(sigma**2 + (slope * position_accuracies(readings)) ** 2)
    return sigma


def linear_power_and_path_loss(
    distances: np.ndarray,
    rssi: np.ndarray,
    sigma: np.ndarray,
    frequency: float,
    transmitted_power_dbm: Optional[float],
    path_loss_exponent: float,
    estimate_power: bool,
    estimate_path_loss: bool,
) -> Tuple[float, float]:
    """
    Solve transmitted power and/or path-loss exponent for known distances.

    Pr_i = Pt + n·(k - 10·log10(d_i)) is linear in Pt and n; quantities that
    are not estimated are moved to the right-hand side.

    Args:
        distances: Source to receiver distances (N,).
        rssi: Measured RSSI values in dBm (N,).
        sigma: RSSI standard deviations (N,).
        frequency: Source frequency in Hz.
        transmitted_power_dbm: Fixed Pt when not estimated.
        path_loss_exponent: Fixed n when not estimated.
        estimate_power: Estimate Pt.
        estimate_path_loss: Estimate n.

    Returns:
        Tuple (Pt, n).

    Raises:
        RadioSourceEstimationError: If the system is rank deficient (e.g. all
            receivers at the same distance when estimating both).
    """
    g = frequency_offset_db(frequency) - 10.0 * np.log10(np.maximum(distances, EPSILON_RANGE))
    rhs = np.asarray(rssi, dtype=float).copy()
    columns = []

    if estimate_power:
        columns.append(np.ones(len(rhs)))
    else:
        rhs -= transmitted_power_dbm
    if estimate_path_loss:
        columns.append(g)
    else:
        rhs -= path_loss_exponent * g

    if not columns:
        return transmitted_power_dbm, path_loss_exponent

    try:
        x, _ = weighted_least_squares(np.column_stack(columns), rhs, sigma, return_covariance=False)
    except ValueError as e:
        raise RadioSourceEstimationError(f"Power/path-loss linear solve failed: {e}") from e

    values = iter(x)
    power = float(next(values)) if estimate_power else transmitted_power_dbm
    path_loss = float(next(values)) if estimate_path_loss else path_loss_exponent
    return power, path_loss


def ranging_and_rssi_model(
    positions: np.ndarray,
    frequency: float,
    transmitted_power_dbm: float,
    path_loss_exponent: float,
    estimate_power: bool,
    estimate_path_loss: bool,
):
    """
    Build the stacked range and RSSI model over θ = [x, Pt?, n?].

    Args:
        positions: Receiver positions (N, dims).
        frequency: Source frequency in Hz.
        transmitted_power_dbm: Pt used when it is not part of θ.
        path_loss_exponent: n used when it is not part of θ.
        estimate_power: Pt is part of θ.
        estimate_path_loss: n is part of θ.

    Returns:
        Tuple (h, jacobian); h returns 2N predictions (ranges then RSSI).
    """
    dims = positions.shape[1]
    k = frequency_offset_db(frequency)
    power_idx = dims if estimate_power else None
    path_loss_idx = dims + int(estimate_power) if estimate_path_loss else None

    def unpack(theta: np.ndarray) -> Tuple[np.ndarray, float, float]:
        power = theta[power_idx] if power_idx is not None else transmitted_power_dbm
        path_loss = theta[path_loss_idx] if path_loss_idx is not None else path_loss_exponent
        return theta[:dims], power, path_loss

    def h(theta: np.ndarray) -> np.ndarray:
        x, power, path_loss = unpack(theta)
        ranges = np.linalg.norm(x - positions, axis=1)
        rssi = power + path_loss * (k - 10.0 * np.log10(np.maximum(ranges, EPSILON_RANGE)))
        return np.concatenate([ranges, rssi])

    def jacobian(theta: np.ndarray) -> np.ndarray:
        x, _, path_loss = unpack(theta)
        diff = x - positions
        ranges = np.linalg.norm(diff, axis=1)
        units = normalize_jacobian_singularities(diff, ranges)
        safe = np.maximum(ranges, EPSILON_RANGE)

        n = len(positions)
        J = np.zeros((2 * n, len(theta)))
        J[:n, :dims] = units
        J[n:, :dims] = -10.0 * path_loss / LN10 * units / safe[:, None]
        if power_idx is not None:
            J[n:, power_idx] = 1.0
        if path_loss_idx is not None:
            J[n:, path_loss_idx] = k - 10.0 * np.log10(safe)
        return J

    return h, jacobian


class RangingAndRssiRadioSourceEstimator(RangingRadioSourceEstimator):
    """
    Non-robust estimator of position, transmitted power and path loss.

    Minimum readings: dims + 1, plus one for each of transmitted power and
    path-loss exponent when their estimation is enabled.

    When transmitted power estimation is disabled an initial transmitted
    power must be provided. The path-loss exponent defaults to 2.0 (free
    space).

    Example:
        >>> import numpy as np
        >>> from radiosource.rf.readings import RangingAndRssiReading
        >>> from radiosource.rf.measurement_models import rss_pathloss
        >>> from radiosource.rf.sources import WifiAccessPoint
        >>> ap = WifiAccessPoint("bssid", 2.4e9)
        >>> source = np.array([1.0, 2.0])
        >>> receivers = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0], [8.0, 9.0]])
        >>> readings = []
        >>> for p in receivers:
        ...     d = float(np.linalg.norm(p - source))
        ...     readings.append(RangingAndRssiReading(ap, p, d, rss_pathloss(-5.0, d, 2.4e9)))
        >>> solution = RangingAndRssiRadioSourceEstimator(readings).estimate()
        >>> round(solution.transmitted_power_dbm, 6)
        -5.0
    """

    def __init__(
        self,
        readings: Optional[Sequence[RangingAndRssiReading]] = None,
        initial_position: Optional[np.ndarray] = None,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
        listener: Optional[Any] = None,
        transmitted_power_estimation_enabled: bool = True,
        path_loss_estimation_enabled: bool = False,
        non_linear_solver_enabled: bool = True,
        homogeneous_linear_solver_used: bool = True,
        use_reading_position_covariance: bool = True,
    ):
        """
        Initialize estimator.

        Args:
            readings: Ranging and RSSI readings.
            initial_position: Optional starting point for the refinement.
            initial_transmitted_power_dbm: Optional initial (or fixed) Pt.
            initial_path_loss_exponent: Initial (or fixed) n.
            listener: Optional object with on_estimate_start/on_estimate_end.
            transmitted_power_estimation_enabled: Estimate Pt.
            path_loss_estimation_enabled: Estimate n.
            non_linear_solver_enabled: Refine with Levenberg-Marquardt.
            homogeneous_linear_solver_used: Use the homogeneous lateration system.
            use_reading_position_covariance: Propagate receiver position
                accuracy into range and RSSI uncertainties.
        """
        super().__init__(
            readings,
            initial_position,
            listener,
            non_linear_solver_enabled=non_linear_solver_enabled,
            homogeneous_linear_solver_used=homogeneous_linear_solver_used,
            use_reading_position_covariance=use_reading_position_covariance,
        )
        self._initial_transmitted_power_dbm = validate_power_dbm(initial_transmitted_power_dbm)
        self._initial_path_loss_exponent = float(initial_path_loss_exponent)
        self._transmitted_power_estimation_enabled = transmitted_power_estimation_enabled
        self._path_loss_estimation_enabled = path_loss_estimation_enabled

        self.estimated_transmitted_power_dbm: Optional[float] = None
        self.estimated_path_loss_exponent: Optional[float] = None
        self.estimated_transmitted_power_variance: Optional[float] = None
        self.estimated_path_loss_exponent_variance: Optional[float] = None

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
        Estimate position, transmitted power and path loss.

        Returns:
            RangingAndRssiSolution.

        Raises:
            LockedError: If called while already running.
            NotReadyError: If there are too few readings, or transmitted
                power estimation is disabled without an initial power.
            RadioSourceEstimationError: If the solve fails.
        """
        with self._lock.hold():
            if not self.is_ready:
                raise NotReadyError(
                    f"At least {self.min_readings} readings are required, and an "
                    f"initial transmitted power when its estimation is disabled"
                )
            self._notify("on_estimate_start")
            solution = self.solve(self._readings)
            self.estimated_position = solution.position
            self.estimated_position_covariance = solution.position_covariance
            self.estimated_transmitted_power_dbm = solution.transmitted_power_dbm
            self.estimated_path_loss_exponent = solution.path_loss_exponent
            self.estimated_transmitted_power_variance = solution.transmitted_power_variance
            self.estimated_path_loss_exponent_variance = solution.path_loss_exponent_variance
            self._notify("on_estimate_end")
            return solution

    def solve(
        self,
        readings: Sequence[RangingAndRssiReading],
        non_linear: Optional[bool] = None,
        return_covariance: bool = True,
    ) -> RangingAndRssiSolution:
        """
        Solve a set of readings with this configuration.

        Does not modify the estimator, so it can be used on subsets of
        readings by robust estimators.

        Args:
            readings: At least min_readings readings of one radio source.
            non_linear: Override of non_linear_solver_enabled.
            return_covariance: Compute covariance when refining.

        Returns:
            RangingAndRssiSolution.

        Raises:
            NotReadyError: If Pt is fixed but no initial power is set.
            RadioSourceEstimationError: If the solve fails.
        """
        if non_linear is None:
            non_linear = self._non_linear_solver_enabled

        estimate_power = self._transmitted_power_estimation_enabled
        estimate_path_loss = self._path_loss_estimation_enabled
        power = self._initial_transmitted_power_dbm
        path_loss = self._initial_path_loss_exponent
        if not estimate_power and power is None:
            raise NotReadyError("Initial transmitted power is required when it is not estimated")

        positions = reading_positions(readings)
        distances = np.array([r.distance for r in readings], dtype=float)
        rssi = np.array([r.rssi for r in readings], dtype=float)
        frequency = readings[0].source.frequency

        if self._initial_position is None or not non_linear:
            position = linear_lateration(
                positions, distances, homogeneous=self._homogeneous_linear_solver_used
            )
        else:
            position = self._initial_position

        rssi_sigma = rssi_standard_deviations(
            readings, path_loss, self._use_reading_position_covariance
        )

        if not non_linear or (estimate_power and power is None):
            power, path_loss = linear_power_and_path_loss(
                np.linalg.norm(positions - position, axis=1),
                rssi,
                rssi_sigma,
                frequency,
                power,
                path_loss,
                estimate_power,
                estimate_path_loss,
            )

        if not non_linear:
            return RangingAndRssiSolution(
                position=position,
                transmitted_power_dbm=power,
                path_loss_exponent=path_loss,
            )

        theta0 = [*position]
        if estimate_power:
            theta0.append(power)
        if estimate_path_loss:
            theta0.append(path_loss)

        h, jacobian = ranging_and_rssi_model(
            positions, frequency, power, path_loss, estimate_power, estimate_path_loss
        )
        y = np.concatenate([distances, rssi])
        sigma = np.concatenate([
            distance_standard_deviations(readings, self._use_reading_position_covariance),
            rssi_sigma,
        ])
        try:
            result = levenberg_marquardt(
                h, jacobian, y, np.array(theta0),
                sigma=sigma,
                return_covariance=return_covariance,
            )
        except ValueError as e:
            raise RadioSourceEstimationError(f"Joint refinement failed: {e}") from e

        dims = positions.shape[1]
        theta = result.x
        P = result.covariance
        idx = dims
        power_variance = None
        path_loss_variance = None
        if estimate_power:
            power = float(theta[idx])
            if P is not None:
                power_variance = float(P[idx, idx])
            idx += 1
        if estimate_path_loss:
            path_loss = float(theta[idx])
            if P is not None:
                path_loss_variance = float(P[idx, idx])

        return RangingAndRssiSolution(
            position=theta[:dims],
            transmitted_power_dbm=power,
            path_loss_exponent=path_loss,
            covariance=P,
            position_covariance=None if P is None else P[:dims, :dims],
            transmitted_power_variance=power_variance,
            path_loss_exponent_variance=path_loss_variance,
        )
