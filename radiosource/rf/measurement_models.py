"""
Radio propagation models for radio source estimation.

This module implements the log-distance path-loss model used to relate the
transmitted power of a radio source to the RSSI measured by a receiver, and
conversions between logarithmic and linear power units.

Log-distance model with free-space reference at the carrier frequency f:
    Pr = Pt + n·k - 10·n·log10(d)
    k  = 10·log10(c / (4·π·f))

where:
    Pr: received power (dBm)
    Pt: transmitted power (dBm)
    n:  path-loss exponent (2.0 in free space)
    d:  distance between source and receiver (m)
    c:  speed of light (m/s)

With n = 2 the model reduces to the Friis free-space equation.
"""

from typing import Optional, Union

import numpy as np

# Physical constants
SPEED_OF_LIGHT = 299792458.0  # m/s (exact, SI definition)

DEFAULT_PATH_LOSS_EXPONENT = 2.0

ArrayLike = Union[float, np.ndarray]


def dbm_to_power(power_dbm: ArrayLike) -> ArrayLike:
    """
    Convert power from dBm to milliwatts.

    Args:
        power_dbm: Power in dBm.

    Returns:
        Power in mW.

    Example:
        >>> dbm_to_power(20.0)
        100.0
    """
    result = 10.0 ** (np.asarray(power_dbm, dtype=float) / 10.0)
    return float(result) if result.ndim == 0 else result


def power_to_dbm(power_mw: ArrayLike) -> ArrayLike:
    """
    Convert power from milliwatts to dBm.

    Args:
        power_mw: Power in mW, non-negative. Zero maps to -inf dBm.

    Returns:
        Power in dBm.

    Raises:
        ValueError: If power is negative.

    Example:
        >>> power_to_dbm(1.0)
        0.0
    """
    if np.any(np.asarray(power_mw) < 0):
        raise ValueError(f"Power must be non-negative, got {power_mw}")
    with np.errstate(divide="ignore"):
        result = 10.0 * np.log10(power_mw)
    return float(result) if np.ndim(result) == 0 else result


def validate_power_dbm(power_dbm: Optional[float]) -> Optional[float]:
    """
    Check a transmitted power given in dBm.

    Args:
        power_dbm: Power in dBm, or None.

    Returns:
        The power as a float, or None.

    Raises:
        ValueError: If the power is NaN or infinite (0 mW maps to -inf dBm).
    """
    if power_dbm is None:
        return None
    power_dbm = float(power_dbm)
    if not np.isfinite(power_dbm):
        raise ValueError(f"Transmitted power must be finite, got {power_dbm} dBm")
    return power_dbm


def frequency_offset_db(frequency: float, c: float = SPEED_OF_LIGHT) -> float:
    """
    Compute the free-space reference term k = 10·log10(c / (4·π·f)).

    This is the attenuation (in dB) at 1 m per unit of path-loss exponent.

    Args:
        frequency: Carrier frequency in Hz.
        c: Propagation speed in m/s.

    Returns:
        Reference term k in dB (negative for radio frequencies).

    Raises:
        ValueError: If frequency is not positive.

    Example:
        >>> round(frequency_offset_db(2.4e9), 2)
        -20.03
    """
    if frequency <= 0:
        raise ValueError(f"Frequency must be positive, got {frequency}")
    return float(10.0 * np.log10(c / (4.0 * np.pi * frequency)))


def rss_pathloss(
    tx_power_dbm: float,
    distance: ArrayLike,
    frequency: float,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> ArrayLike:
    """
    Compute the received power with the log-distance path-loss model.

    Pr = Pt + n·k - 10·n·log10(d)

    Args:
        tx_power_dbm: Transmitted power Pt in dBm.
        distance: Distance(s) between source and receiver in meters.
        frequency: Carrier frequency in Hz.
        path_loss_exp: Path-loss exponent n.

    Returns:
        Received power in dBm, same shape as distance.

    Raises:
        ValueError: If any distance is not positive.

    Example:
        >>> # 0 dBm WiFi source, receiver at 10 m, free space
        >>> round(rss_pathloss(0.0, 10.0, 2.4e9), 2)
        -60.05
    """
    d = np.asarray(distance, dtype=float)
    if np.any(d <= 0):
        raise ValueError("Distance must be positive")

    k = frequency_offset_db(frequency)
    rss = tx_power_dbm + path_loss_exp * k - 10.0 * path_loss_exp * np.log10(d)
    return float(rss) if rss.ndim == 0 else rss


def rss_to_distance(
    rss_dbm: ArrayLike,
    tx_power_dbm: float,
    frequency: float,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> ArrayLike:
    """
    Estimate distance from RSSI by inverting the log-distance model.

    d = 10^((Pt + n·k - Pr) / (10·n))

    Args:
        rss_dbm: Received power(s) in dBm.
        tx_power_dbm: Transmitted power in dBm.
        frequency: Carrier frequency in Hz.
        path_loss_exp: Path-loss exponent n, positive.

    Returns:
        Distance in meters.

    Raises:
        ValueError: If path_loss_exp is not positive.

    Example:
        >>> round(rss_to_distance(-60.05, 0.0, 2.4e9), 1)
        10.0
    """
    if path_loss_exp <= 0:
        raise ValueError(f"Path-loss exponent must be positive, got {path_loss_exp}")

    k = frequency_offset_db(frequency)
    exponent = (tx_power_dbm + path_loss_exp * k - np.asarray(rss_dbm, dtype=float)) / (
        10.0 * path_loss_exp
    )
    distance = 10.0**exponent
    return float(distance) if np.ndim(distance) == 0 else distance
