"""
Nonlinear least squares refinement using Gauss-Newton and Levenberg-Marquardt.

The lateration estimators use these solvers to refine a linear solution and
to propagate measurement uncertainty into the covariance of the unknowns.

Mathematical Formulation:
    Given observations y with variances σᵢ² and model h(x), we seek:
        x̂ = argmin ½‖y - h(x)‖²_W,   W = diag(1/σᵢ²)
    where r(x) = y - h(x) is the residual vector.

    Gauss-Newton update:
        (J'WJ) Δx = J'W r  →  x ← x + Δx

    Levenberg-Marquardt update:
        (J'WJ + μI) Δx = J'W r
    where μ is an adaptive damping parameter.

    Covariance at the solution:
        P = (J'WJ)⁻¹
    Weights are inverse variances, so P is not rescaled by the residual
    variance unless requested.
"""

from dataclasses import dataclass
from typing import Callable, Literal, Optional

import numpy as np


@dataclass
class NonlinearLSResult:
    """Result container for nonlinear least squares optimization.

    Attributes:
        x: Estimated parameter vector.
        covariance: Covariance matrix (n × n), or None.
        iterations: Number of iterations performed.
        residuals: Final residuals r = y - h(x̂).
        cost: Final cost value ½‖r‖²_W.
        converged: Whether the solver converged within tolerance.
    """

    x: np.ndarray
    covariance: Optional[np.ndarray]
    iterations: int
    residuals: np.ndarray
    cost: float
    converged: bool


def gauss_newton(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    sigma: Optional[np.ndarray] = None,
    max_iter: int = 20,
    tol: float = 1e-10,
    return_covariance: bool = True,
    scale_covariance: bool = False,
) -> NonlinearLSResult:
    """
    Gauss-Newton solver for nonlinear least squares.

    Args:
        h: Measurement model function h: R^n → R^m.
        jacobian: Function returning Jacobian matrix J = ∂h/∂x (m × n).
        y: Observation vector (m,).
        x0: Initial estimate (n,).
        sigma: Optional standard deviation of each observation (m,).
            If None, all observations have unit variance.
        max_iter: Maximum number of iterations.
        tol: Convergence tolerance on ‖Δx‖.
        return_covariance: If True, compute covariance at final estimate.
        scale_covariance: If True, scale the covariance by the a posteriori
            residual variance r'Wr / (m - n).

    Returns:
        NonlinearLSResult containing estimate, covariance, and diagnostics.

    Example:
        >>> import numpy as np
        >>> anchors = np.array([[0, 0], [10, 0], [0, 10], [10, 10]])
        >>> def h(x):
        ...     return np.linalg.norm(anchors - x, axis=1)
        >>> def jac(x):
        ...     diff = x - anchors
        ...     return diff / np.linalg.norm(diff, axis=1, keepdims=True)
        >>> y = h(np.array([3.0, 4.0]))
        >>> result = gauss_newton(h, jac, y, x0=np.array([5.0, 5.0]))
        >>> np.round(result.x, 6)
        array([3., 4.])
    """
    return _solve_nonlinear_ls(
        h, jacobian, y, x0, sigma,
        method="gn",
        max_iter=max_iter,
        tol=tol,
        return_covariance=return_covariance,
        scale_covariance=scale_covariance,
    )


def levenberg_marquardt(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    sigma: Optional[np.ndarray] = None,
    max_iter: int = 100,
    tol: float = 1e-10,
    mu0: float = 1e-3,
    return_covariance: bool = True,
    scale_covariance: bool = False,
) -> NonlinearLSResult:
    """
    Levenberg-Marquardt solver for nonlinear least squares.

    LM blends Gauss-Newton (fast near the solution) with gradient descent
    (robust far from it) by adapting μ with the gain ratio between actual
    and predicted cost decrease.

    Args:
        h: Measurement model function h: R^n → R^m.
        jacobian: Function returning Jacobian matrix J = ∂h/∂x (m × n).
        y: Observation vector (m,).
        x0: Initial estimate (n,).
        sigma: Optional standard deviation of each observation (m,).
        max_iter: Maximum number of iterations.
        tol: Convergence tolerance on ‖Δx‖.
        mu0: Initial damping parameter.
        return_covariance: If True, compute covariance at final estimate.
        scale_covariance: If True, scale the covariance by the a posteriori
            residual variance.

    Returns:
        NonlinearLSResult containing estimate, covariance, and diagnostics.

    Raises:
        ValueError: If inputs have inconsistent shapes, sigmas are not
            positive, or the solution is not finite.
    """
    return _solve_nonlinear_ls(
        h, jacobian, y, x0, sigma,
        method="lm",
        max_iter=max_iter,
        tol=tol,
        mu0=mu0,
        return_covariance=return_covariance,
        scale_covariance=scale_covariance,
    )


def _solve_nonlinear_ls(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    sigma: Optional[np.ndarray],
    method: Literal["gn", "lm"],
    max_iter: int,
    tol: float,
    mu0: float = 1e-3,
    return_covariance: bool = True,
    scale_covariance: bool = False,
) -> NonlinearLSResult:
    """Internal solver implementing both Gauss-Newton and Levenberg-Marquardt."""
    y = np.asarray(y, dtype=float)
    x = np.array(x0, dtype=float)

    if y.ndim != 1:
        raise ValueError(f"y must be 1D array, got shape {y.shape}")
    if x.ndim != 1:
        raise ValueError(f"x0 must be 1D array, got shape {x.shape}")

    m = len(y)
    n = len(x)

    if sigma is None:
        w = np.ones(m)
    else:
        sigma = np.asarray(sigma, dtype=float)
        if sigma.shape != (m,):
            raise ValueError(f"sigma must be 1D array of length {m}")
        if np.any(sigma <= 0):
            raise ValueError("sigma values must be positive")
        w = 1.0 / sigma**2

    def weighted_cost(r: np.ndarray) -> float:
        return 0.5 * float(np.sum(w * r**2))

    mu = mu0
    nu = 2.0
    converged = False
    iteration = 0

    r = y - h(x)
    if len(r) != m:
        raise ValueError(f"h(x) returned {len(r)} elements, expected {m}")
    cost = weighted_cost(r)

    for iteration in range(1, max_iter + 1):
        J = jacobian(x)
        if J.shape != (m, n):
            raise ValueError(f"Jacobian shape {J.shape}, expected ({m}, {n})")

        JtW = J.T * w
        JtWJ = JtW @ J
        JtWr = JtW @ r

        if method == "gn":
            delta_x = np.linalg.lstsq(JtWJ, JtWr, rcond=None)[0]
            x = x + delta_x
            r = y - h(x)
            cost = weighted_cost(r)
        else:
            while True:
                damped = JtWJ + mu * np.eye(n)
                try:
                    delta_x = np.linalg.solve(damped, JtWr)
                except np.linalg.LinAlgError:
                    delta_x = np.linalg.lstsq(damped, JtWr, rcond=None)[0]

                x_new = x + delta_x
                r_new = y - h(x_new)
                cost_new = weighted_cost(r_new)

                # Predicted decrease: ½ Δx'(μΔx + J'Wr)
                predicted = 0.5 * delta_x @ (mu * delta_x + JtWr)
                gain_ratio = (cost - cost_new) / predicted if predicted > 1e-300 else 0.0

                if gain_ratio > 0:
                    x, r, cost = x_new, r_new, cost_new
                    mu = mu * max(1.0 / 3.0, 1.0 - (2.0 * gain_ratio - 1.0) ** 3)
                    nu = 2.0
                    break

                mu = mu * nu
                nu = 2.0 * nu
                if mu > 1e12:
                    # No descent direction left: current x is a minimum
                    delta_x = np.zeros(n)
                    break

        if np.linalg.norm(delta_x) < tol * (1.0 + np.linalg.norm(x)):
            converged = True
            break

    if not np.all(np.isfinite(x)) or not np.isfinite(cost):
        raise ValueError("Nonlinear least squares diverged to a non-finite solution")

    P = None
    if return_covariance:
        J = jacobian(x)
        JtWJ = (J.T * w) @ J
        try:
            P = np.linalg.inv(JtWJ)
        except np.linalg.LinAlgError:
            P = np.linalg.pinv(JtWJ)
        if scale_covariance and m > n:
            P = P * (2.0 * cost / (m - n))

    return NonlinearLSResult(
        x=x,
        covariance=P,
        iterations=iteration,
        residuals=r,
        cost=cost,
        converged=converged,
    )
