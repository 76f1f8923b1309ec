"""
Exception hierarchy for radio source estimators.

Invalid arguments passed to constructors or setters raise the built-in
``ValueError``; the classes below cover estimator state and estimation
failures.

Classes:
    - RadioSourceError: Base class for all estimator errors.
    - NotReadyError: Estimator lacks the data needed to start.
    - LockedError: Estimator is running and cannot be modified or re-entered.
    - RobustEstimatorError: Consensus search produced no valid model.
    - RadioSourceEstimationError: A deterministic solve failed.
"""


class RadioSourceError(Exception):
    """Base class for radio source estimation errors."""


class NotReadyError(RadioSourceError):
    """Raised when estimate() is called before the estimator is ready.

    Typical causes are missing readings, too few readings for the number of
    unknowns, or missing quality scores for a quality-driven robust method.
    """


class LockedError(RadioSourceError):
    """Raised when an estimator is modified or re-entered while running."""


class RobustEstimatorError(RadioSourceError):
    """Raised when a robust estimation finds no model within its iteration limit."""


class RadioSourceEstimationError(RadioSourceError):
    """Raised when a non-robust solver cannot produce a solution.

    Covers rank deficient linear systems and non-finite solutions.
    """
