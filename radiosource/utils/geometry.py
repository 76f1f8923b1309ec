"""
Geometric utilities for radio source localization.

Provides functions for:
- Singularity handling in range Jacobians
- Receiver geometry checking
- Accuracy of receiver position covariances
"""

import numpy as np
from typing import Tuple
import warnings

from scipy.stats import norm


# Singularity threshold constants
EPSILON_RANGE = 1e-10  # Minimum range for Jacobian computation (10 picometers)
EPSILON_COLINEAR = 1e-9  # Relative singular value threshold for degenerate receivers

# Probability mass within one standard deviation of a Gaussian
ONE_SIGMA_CONFIDENCE = 0.6826894921370859


def normalize_jacobian_singularities(
    diff: np.ndarray,
    ranges: np.ndarray,
    epsilon: float = EPSILON_RANGE
) -> np.ndarray:
    """
    Safely compute the unit direction vectors diff / range.

    Protects against division by zero when a receiver coincides with the
    estimated source position (range → 0).

    Args:
        diff: Difference vectors (source - receiver), shape (N, d)
        ranges: Range values, shape (N,) or (N, 1)
        epsilon: Minimum range threshold (default: 1e-10 meters)

    Returns:
        Normalized directions, shape (N, d). Rows at singularities
        (range < epsilon) are zero.

    Example:
        >>> diff = np.array([[1.0, 0.0], [1e-12, 1e-12], [3.0, 4.0]])
        >>> ranges = np.array([1.0, 1e-12, 5.0])
        >>> H = normalize_jacobian_singularities(diff, ranges)
        >>> H[1]
        array([0., 0.])
    """
    ranges = np.asarray(ranges).reshape(-1, 1)
    diff = np.asarray(diff, dtype=float)

    H = diff / np.maximum(ranges, epsilon)

    singular_mask = (ranges < epsilon).flatten()
    if np.any(singular_mask):
        H[singular_mask, :] = 0.0
        warnings.warn(
            f"{np.sum(singular_mask)} receiver(s) at the source position (range < {epsilon}m). "
            "Setting Jacobian rows to zero.",
            RuntimeWarning
        )

    return H


def check_receiver_geometry(
    positions: np.ndarray,
    warn_degenerate: bool = True
) -> Tuple[bool, str]:
    """
    Check if receiver positions can determine a source position.

    Receivers must span the space: not colinear in 2D, not coplanar in 3D.

    Args:
        positions: Receiver positions, shape (N, d) where d=2 or 3
        warn_degenerate: If True, issue a RuntimeWarning for degenerate cases

    Returns:
        Tuple of (is_valid, message):
            - is_valid: True if geometry is acceptable
            - message: Description of geometry issue (empty if valid)

    Example:
        >>> check_receiver_geometry(np.array([[0, 0], [10, 0], [5, 10]]))
        (True, '')
        >>> ok, msg = check_receiver_geometry(
        ...     np.array([[0, 0], [5, 0], [10, 0]]), warn_degenerate=False)
        >>> ok
        False
    """
    positions = np.asarray(positions, dtype=float)

    if positions.ndim != 2:
        return False, f"Positions must be 2D array (N, d), got shape {positions.shape}"

    n, dim = positions.shape
    if dim not in (2, 3):
        return False, f"Only 2D or 3D positioning supported, got dim={dim}"
    if n < dim + 1:
        return False, f"Need at least {dim + 1} receivers for {dim}D positioning, got {n}"

    centered = positions - np.mean(positions, axis=0)
    singular_values = np.linalg.svd(centered, compute_uv=False)
    if singular_values[0] <= 0:
        rank = 0
    else:
        rank = int(np.sum(singular_values > EPSILON_COLINEAR * singular_values[0]))

    if rank < dim:
        if dim == 2:
            msg = f"Receivers are colinear (rank {rank} < 2)."
        else:
            msg = f"Receivers are coplanar (rank {rank} < 3)."
        if warn_degenerate:
            warnings.warn(msg, RuntimeWarning)
        return False, msg

    return True, ""


def average_accuracy(
    covariance: np.ndarray,
    confidence: float = ONE_SIGMA_CONFIDENCE
) -> float:
    """
    Average accuracy radius of a position covariance.

    The accuracy is the mean of the standard deviations along the principal
    axes of the covariance, scaled by the two-sided Gaussian quantile of the
    requested confidence. With the default confidence the result is the
    average one-sigma accuracy.

    Args:
        covariance: Position covariance, shape (d, d), symmetric PSD.
        confidence: Confidence level in (0, 1).

    Returns:
        Average accuracy in the units of the position.

    Raises:
        ValueError: If confidence is not in (0, 1) or covariance is not square.

    Example:
        >>> round(average_accuracy(np.diag([4.0, 1.0])), 6)
        1.5
    """
    if not 0.0 < confidence < 1.0:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")

    covariance = np.asarray(covariance, dtype=float)
    if covariance.ndim != 2 or covariance.shape[0] != covariance.shape[1]:
        raise ValueError(f"Covariance must be square, got shape {covariance.shape}")

    # Clip tiny negative eigenvalues from round-off
    eigenvalues = np.clip(np.linalg.eigvalsh(covariance), 0.0, None)
    factor = norm.ppf(0.5 * (1.0 + confidence))
    return float(factor * np.mean(np.sqrt(eigenvalues)))
