"""Radio source identities and estimated radio sources.

Identities (WiFi access points and beacons) are copied unchanged from the
readings into the estimation output.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

import numpy as np

from radiosource.estimators.robust import InliersData
from radiosource.rf.measurement_models import dbm_to_power


def _check_frequency(frequency: float) -> None:
    if frequency <= 0:
        raise ValueError(f"Frequency must be positive, got {frequency}")


@dataclass(frozen=True)
class WifiAccessPoint:
    """WiFi access point identity.

    Attributes:
        bssid: Basic service set identifier (MAC address of the radio).
        frequency: Carrier frequency in Hz.
        ssid: Optional network name.

    Example:
        >>> ap = WifiAccessPoint("bssid", 2.4e9, ssid="office")
    """

    bssid: str
    frequency: float
    ssid: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.bssid, str) or not self.bssid:
            raise ValueError(f"bssid must be a non-empty string, got {self.bssid!r}")
        _check_frequency(self.frequency)


@dataclass(frozen=True)
class Beacon:
    """Bluetooth LE beacon identity.

    Attributes:
        identifiers: Identifier fields advertised by the beacon (e.g. UUID,
            major and minor values).
        frequency: Carrier frequency in Hz.
        bluetooth_address: Optional hardware address.
        bluetooth_name: Optional advertised name.
        manufacturer: Optional manufacturer code.
        beacon_type_code: Optional layout type code.
        service_uuid: Optional service UUID.
    """

    identifiers: Tuple[str, ...]
    frequency: float
    bluetooth_address: Optional[str] = None
    bluetooth_name: Optional[str] = None
    manufacturer: Optional[int] = None
    beacon_type_code: Optional[int] = None
    service_uuid: Optional[int] = None

    def __post_init__(self) -> None:
        # Accept any sequence but store an immutable tuple
        object.__setattr__(self, "identifiers", tuple(self.identifiers))
        if not self.identifiers:
            raise ValueError("Beacon needs at least one identifier")
        _check_frequency(self.frequency)


RadioSource = Union[WifiAccessPoint, Beacon]


@dataclass(frozen=True, eq=False)
class EstimatedRadioSource:
    """Snapshot of a located radio source.

    Attributes:
        source: Identity copied from the readings.
        position: Estimated position (dims,).
        transmitted_power_dbm: Estimated transmitted power in dBm.
        path_loss_exponent: Estimated (or fixed) path-loss exponent.
        position_covariance: Position covariance (dims × dims), or None when
            the result was not refined or covariance was not kept.
        transmitted_power_std_dbm: Standard deviation of the transmitted
            power in dB, or None.
        path_loss_exponent_std: Standard deviation of the path-loss
            exponent, or None.
        inliers: Consensus set of the final robust stage, if available.
    """

    source: RadioSource
    position: np.ndarray
    transmitted_power_dbm: float
    path_loss_exponent: float
    position_covariance: Optional[np.ndarray] = None
    transmitted_power_std_dbm: Optional[float] = None
    path_loss_exponent_std: Optional[float] = None
    inliers: Optional[InliersData] = field(default=None, compare=False)

    @property
    def frequency(self) -> float:
        return self.source.frequency

    @property
    def transmitted_power(self) -> float:
        """Estimated transmitted power in mW."""
        return dbm_to_power(self.transmitted_power_dbm)

    @property
    def transmitted_power_variance(self) -> Optional[float]:
        if self.transmitted_power_std_dbm is None:
            return None
        return self.transmitted_power_std_dbm**2

    @property
    def path_loss_exponent_variance(self) -> Optional[float]:
        if self.path_loss_exponent_std is None:
            return None
        return self.path_loss_exponent_std**2
