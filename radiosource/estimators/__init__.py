"""
Estimation algorithms for radio source localization.

Available estimators:
    - Linear Least Squares (LS, WLS, homogeneous LS)
    - Nonlinear Least Squares (Gauss-Newton, Levenberg-Marquardt)
    - Robust consensus estimation (RANSAC, LMedS, MSAC, PROSAC, RRANSAC, PROMedS)
"""

from radiosource.estimators.base import EstimatorLock, LockableEstimator
from radiosource.estimators.least_squares import (
    linear_least_squares,
    weighted_least_squares,
    homogeneous_least_squares,
)
from radiosource.estimators.nonlinear_least_squares import (
    gauss_newton,
    levenberg_marquardt,
    NonlinearLSResult,
)
from radiosource.estimators.robust import (
    RobustEstimator,
    RobustEstimatorMethod,
    RobustEstimatorListener,
    InliersData,
)

__all__ = [
    # Locking
    "EstimatorLock",
    "LockableEstimator",
    # Linear LS
    "linear_least_squares",
    "weighted_least_squares",
    "homogeneous_least_squares",
    # Nonlinear LS
    "gauss_newton",
    "levenberg_marquardt",
    "NonlinearLSResult",
    # Robust estimation
    "RobustEstimator",
    "RobustEstimatorMethod",
    "RobustEstimatorListener",
    "InliersData",
]
