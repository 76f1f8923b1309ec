"""
Radio source models and estimators.

This module provides:
    - Radio sources (WiFi access points, beacons) and their estimates
    - Ranging and RSSI readings
    - Log-distance path-loss model
    - Lateration and ranging + RSSI estimators, plain and robust
    - The sequential two-stage robust estimator
"""

from radiosource.rf.sources import (
    WifiAccessPoint,
    Beacon,
    RadioSource,
    EstimatedRadioSource,
)
from radiosource.rf.readings import (
    RangingReading,
    RssiReading,
    RangingAndRssiReading,
    check_readings,
)
from radiosource.rf.measurement_models import (
    SPEED_OF_LIGHT,
    dbm_to_power,
    power_to_dbm,
    validate_power_dbm,
    frequency_offset_db,
    rss_pathloss,
    rss_to_distance,
)
from radiosource.rf.lateration import (
    RangingSolution,
    RangingRadioSourceEstimator,
    linear_lateration,
)
from radiosource.rf.ranging_and_rssi import (
    RangingAndRssiSolution,
    RangingAndRssiRadioSourceEstimator,
)
from radiosource.rf.robust import (
    RobustRangingRadioSourceEstimator,
    RobustRangingAndRssiRadioSourceEstimator,
)
from radiosource.rf.sequential import (
    StageConfig,
    SequentialEstimatorListener,
    SequentialRobustRangingAndRssiRadioSourceEstimator,
)

__all__ = [
    # Sources
    "WifiAccessPoint",
    "Beacon",
    "RadioSource",
    "EstimatedRadioSource",
    # Readings
    "RangingReading",
    "RssiReading",
    "RangingAndRssiReading",
    "check_readings",
    # Path-loss model
    "SPEED_OF_LIGHT",
    "dbm_to_power",
    "power_to_dbm",
    "validate_power_dbm",
    "frequency_offset_db",
    "rss_pathloss",
    "rss_to_distance",
    # Estimators
    "RangingSolution",
    "RangingRadioSourceEstimator",
    "linear_lateration",
    "RangingAndRssiSolution",
    "RangingAndRssiRadioSourceEstimator",
    "RobustRangingRadioSourceEstimator",
    "RobustRangingAndRssiRadioSourceEstimator",
    "StageConfig",
    "SequentialEstimatorListener",
    "SequentialRobustRangingAndRssiRadioSourceEstimator",
]
