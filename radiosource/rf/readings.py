"""
Located readings of a radio source.

A reading ties a receiver position (with optional position covariance) to a
distance and/or an RSSI measured from a radio source. Readings are immutable
and estimators keep references to them without copying or modifying them.

Classes:
    - RangingReading: Measured distance to the radio source.
    - RssiReading: Measured received power (dBm) from the radio source.
    - RangingAndRssiReading: Both measurements taken at the same position.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np

from radiosource.rf.sources import RadioSource

SUPPORTED_DIMENSIONS = (2, 3)

# Tolerance for symmetry and positive semi-definiteness checks
COVARIANCE_TOLERANCE = 1e-10


def _validate_location(reading) -> None:
    """Normalize and validate position and position covariance in place."""
    position = np.array(reading.position, dtype=float)
    if position.ndim != 1 or len(position) not in SUPPORTED_DIMENSIONS:
        raise ValueError(
            f"Position must be a 2D or 3D vector, got shape {position.shape}"
        )
    if not np.all(np.isfinite(position)):
        raise ValueError(f"Position must be finite, got {position}")
    position.flags.writeable = False
    object.__setattr__(reading, "position", position)

    if reading.position_covariance is None:
        return

    cov = np.array(reading.position_covariance, dtype=float)
    dims = len(position)
    if cov.shape != (dims, dims):
        raise ValueError(
            f"Position covariance must be {dims}x{dims}, got shape {cov.shape}"
        )
    if not np.allclose(cov, cov.T, atol=COVARIANCE_TOLERANCE):
        raise ValueError("Position covariance must be symmetric")
    if np.any(np.linalg.eigvalsh(cov) < -COVARIANCE_TOLERANCE):
        raise ValueError("Position covariance must be positive semi-definite")
    cov.flags.writeable = False
    object.__setattr__(reading, "position_covariance", cov)


def _validate_std(name: str, value: Optional[float]) -> None:
    if value is not None and not value > 0:
        raise ValueError(f"{name} must be positive, got {value}")


def _validate_distance(distance: float) -> None:
    if not np.isfinite(distance) or distance < 0:
        raise ValueError(f"Distance must be non-negative, got {distance}")


@dataclass(frozen=True, eq=False)
class RangingReading:
    """Distance to a radio source measured at a known position.

    Attributes:
        source: Radio source the distance was measured to.
        position: Receiver position (2,) or (3,).
        distance: Measured distance in meters.
        distance_std: Optional standard deviation of the distance in meters.
        position_covariance: Optional receiver position covariance.

    Example:
        >>> from radiosource.rf.sources import WifiAccessPoint
        >>> ap = WifiAccessPoint("bssid", 2.4e9)
        >>> reading = RangingReading(ap, [1.0, 2.0, 0.5], distance=4.2)
        >>> reading.dimensions
        3
    """

    source: RadioSource
    position: np.ndarray
    distance: float
    distance_std: Optional[float] = None
    position_covariance: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        _validate_location(self)
        _validate_distance(self.distance)
        _validate_std("distance_std", self.distance_std)

    @property
    def dimensions(self) -> int:
        return len(self.position)


@dataclass(frozen=True, eq=False)
class RssiReading:
    """Received signal strength of a radio source measured at a known position.

    Attributes:
        source: Radio source that was received.
        position: Receiver position (2,) or (3,).
        rssi: Received power in dBm.
        rssi_std: Optional standard deviation of the RSSI in dB.
        position_covariance: Optional receiver position covariance.
    """

    source: RadioSource
    position: np.ndarray
    rssi: float
    rssi_std: Optional[float] = None
    position_covariance: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        _validate_location(self)
        if not np.isfinite(self.rssi):
            raise ValueError(f"RSSI must be finite, got {self.rssi}")
        _validate_std("rssi_std", self.rssi_std)

    @property
    def dimensions(self) -> int:
        return len(self.position)


@dataclass(frozen=True, eq=False)
class RangingAndRssiReading:
    """Distance and RSSI of a radio source measured at the same position.

    Attributes:
        source: Radio source that was measured.
        position: Receiver position (2,) or (3,).
        distance: Measured distance in meters.
        rssi: Received power in dBm.
        distance_std: Optional standard deviation of the distance in meters.
        rssi_std: Optional standard deviation of the RSSI in dB.
        position_covariance: Optional receiver position covariance.
    """

    source: RadioSource
    position: np.ndarray
    distance: float
    rssi: float
    distance_std: Optional[float] = None
    rssi_std: Optional[float] = None
    position_covariance: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        _validate_location(self)
        _validate_distance(self.distance)
        if not np.isfinite(self.rssi):
            raise ValueError(f"RSSI must be finite, got {self.rssi}")
        _validate_std("distance_std", self.distance_std)
        _validate_std("rssi_std", self.rssi_std)

    @property
    def dimensions(self) -> int:
        return len(self.position)

    def to_ranging_reading(self) -> RangingReading:
        """Ranging component of this reading."""
        return RangingReading(
            self.source,
            self.position,
            self.distance,
            distance_std=self.distance_std,
            position_covariance=self.position_covariance,
        )

    def to_rssi_reading(self) -> RssiReading:
        """RSSI component of this reading."""
        return RssiReading(
            self.source,
            self.position,
            self.rssi,
            rssi_std=self.rssi_std,
            position_covariance=self.position_covariance,
        )


Reading = Union[RangingReading, RssiReading, RangingAndRssiReading]


def check_readings(readings: Sequence[Reading], dimensions: Optional[int] = None) -> int:
    """
    Check that readings are non-empty and share one dimensionality.

    Args:
        readings: Readings to check.
        dimensions: Expected dimensionality, or None to take it from the
            first reading.

    Returns:
        Dimensionality of the readings.

    Raises:
        ValueError: If readings are empty or dimensions are inconsistent.
    """
    if readings is None or len(readings) == 0:
        raise ValueError("Readings must not be empty")

    dims = readings[0].dimensions if dimensions is None else dimensions
    mismatched = [i for i, r in enumerate(readings) if r.dimensions != dims]
    if mismatched:
        raise ValueError(
            f"Readings must all be {dims}D; readings {mismatched} are not"
        )
    return dims


def reading_positions(readings: Sequence[Reading]) -> np.ndarray:
    """Stack receiver positions into an (N, dims) array."""
    return np.vstack([r.position for r in readings])
