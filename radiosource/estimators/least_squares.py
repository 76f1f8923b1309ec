"""
Linear least squares solvers used by the lateration estimators.

Functions:
    - linear_least_squares: Inhomogeneous LS, x = argmin ||Ax - b||²
    - weighted_least_squares: LS with per-observation standard deviations
    - homogeneous_least_squares: Unit-norm x = argmin ||Ax||² via SVD

The lateration solvers linearize squared-range equations into one of these
forms; the homogeneous form keeps the squared norm of the position as an
extra unknown instead of differencing against a reference receiver.
"""

from typing import Optional, Tuple

import numpy as np


def linear_least_squares(
    A: np.ndarray, b: np.ndarray, return_covariance: bool = False
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Standard linear least squares estimation.

    Solves: x_hat = argmin ||Ax - b||²
    Solution: x_hat = (A'A)^(-1) A'b

    Args:
        A: Design matrix (m × n), where m ≥ n.
        b: Observation vector (m,).
        return_covariance: If True, compute covariance matrix.

    Returns:
        Tuple of:
            - x_hat: Estimated vector (n,).
            - P: Covariance matrix (n × n), or None if return_covariance is False.

    Raises:
        ValueError: If A and b dimensions don't match or A is rank deficient.

    Example:
        >>> import numpy as np
        >>> A = np.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
        >>> b = np.array([1.0, 2.0, 3.0])
        >>> x_hat, _ = linear_least_squares(A, b)
        >>> np.round(x_hat, 6)
        array([1., 2.])
    """
    A = np.asarray(A, dtype=float)
    b = np.asarray(b, dtype=float)
    if A.ndim != 2 or b.ndim != 1:
        raise ValueError(f"A must be 2D and b must be 1D. Got A: {A.shape}, b: {b.shape}")

    m, n = A.shape
    if m < n:
        raise ValueError(f"Underdetermined system: m={m} < n={n}. Need m ≥ n.")

    if len(b) != m:
        raise ValueError(f"Dimension mismatch: A has {m} rows, b has {len(b)} elements")

    rank = np.linalg.matrix_rank(A)
    if rank < n:
        raise ValueError(
            f"A is rank deficient: rank={rank} < n={n}. " f"System has no unique solution."
        )

    # lstsq is better conditioned than forming A'A explicitly
    x_hat = np.linalg.lstsq(A, b, rcond=None)[0]

    P = None
    if return_covariance:
        residuals = b - A @ x_hat
        if m > n:
            sigma2 = np.sum(residuals**2) / (m - n)
        else:
            sigma2 = 1.0  # Exact fit case
        P = sigma2 * np.linalg.inv(A.T @ A)

    return x_hat, P


def weighted_least_squares(
    A: np.ndarray,
    b: np.ndarray,
    sigma: np.ndarray,
    return_covariance: bool = True,
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Weighted least squares with per-observation standard deviations.

    Solves: x_hat = argmin (Ax - b)' W (Ax - b), W = diag(1/σᵢ²)

    Args:
        A: Design matrix (m × n), where m ≥ n.
        b: Observation vector (m,).
        sigma: Standard deviation of each observation (m,), all positive.
        return_covariance: If True, return (A'WA)^(-1).

    Returns:
        Tuple of:
            - x_hat: Estimated vector (n,).
            - P: Covariance matrix (n × n), or None if return_covariance is False.

    Raises:
        ValueError: If dimensions don't match, sigmas are not positive or
            A'WA is rank deficient.
    """
    A = np.asarray(A, dtype=float)
    b = np.asarray(b, dtype=float)
    sigma = np.asarray(sigma, dtype=float)

    if A.ndim != 2 or b.ndim != 1:
        raise ValueError(
            f"Invalid dimensions: A must be 2D, b must be 1D. "
            f"Got A={A.shape}, b={b.shape}"
        )

    m, n = A.shape
    if len(b) != m or sigma.shape != (m,):
        raise ValueError(
            f"Dimension mismatch: A has {m} rows, b has {len(b)} elements, "
            f"sigma has shape {sigma.shape}"
        )
    if np.any(sigma <= 0):
        raise ValueError("Sigma values must be positive")

    # Scale rows by 1/σᵢ so that the problem becomes ordinary LS
    Aw = A / sigma[:, None]
    bw = b / sigma

    ATWA = Aw.T @ Aw
    rank = np.linalg.matrix_rank(ATWA)
    if rank < n:
        raise ValueError(f"A'WA is rank deficient: rank={rank} < n={n}")

    try:
        x_hat = np.linalg.solve(ATWA, Aw.T @ bw)
    except np.linalg.LinAlgError as e:
        raise ValueError(f"Failed to solve weighted normal equations: {e}")

    P = None
    if return_covariance:
        P = np.linalg.inv(ATWA)

    return x_hat, P


def homogeneous_least_squares(A: np.ndarray) -> np.ndarray:
    """
    Solve a homogeneous system Ax = 0 in the least squares sense.

    Solves: x_hat = argmin ||Ax||² subject to ||x|| = 1
    The solution is the right singular vector of the smallest singular value.

    Args:
        A: Design matrix (m × n), where m ≥ n - 1.

    Returns:
        Unit-norm solution vector (n,), defined up to sign.

    Raises:
        ValueError: If A has too few rows or its null space is not
            one-dimensional (rank < n - 1).

    Example:
        >>> import numpy as np
        >>> A = np.array([[1.0, -1.0]])
        >>> x = homogeneous_least_squares(A)
        >>> np.allclose(A @ x, 0.0)
        True
    """
    A = np.asarray(A, dtype=float)
    if A.ndim != 2:
        raise ValueError(f"A must be 2D. Got A: {A.shape}")

    m, n = A.shape
    if m < n - 1:
        raise ValueError(f"Underdetermined system: m={m} < n-1={n - 1}.")

    rank = np.linalg.matrix_rank(A)
    if rank < n - 1:
        raise ValueError(
            f"A is rank deficient: rank={rank} < n-1={n - 1}. "
            f"Null space is not unique."
        )

    # Full V is needed when m < n so that the null vector is available
    _, _, Vt = np.linalg.svd(A, full_matrices=True)
    return Vt[-1]
