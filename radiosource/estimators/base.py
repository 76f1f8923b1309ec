"""
Base classes for radio source estimators.

This module defines the reentrancy guard shared by all estimators and the
abstract interface they implement. Estimators are single-threaded: the guard
only rejects changes made while ``estimate()`` is running, e.g. from a
listener callback.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from radiosource.exceptions import LockedError


class EstimatorLock:
    """Reentrancy guard held for the duration of an estimation.

    Example:
        >>> lock = EstimatorLock()
        >>> with lock.hold():
        ...     lock.locked
        True
        >>> lock.locked
        False
    """

    def __init__(self) -> None:
        self._locked = False

    @property
    def locked(self) -> bool:
        """Whether an estimation currently holds the lock."""
        return self._locked

    def check(self) -> None:
        """
        Fail if the lock is held.

        Raises:
            LockedError: If an estimation is running.
        """
        if self._locked:
            raise LockedError("Estimator is locked while estimation is in progress")

    @contextmanager
    def hold(self) -> Iterator[None]:
        """Acquire the lock, releasing it on exit even if estimation fails."""
        self.check()
        self._locked = True
        try:
            yield
        finally:
            self._locked = False


class LockableEstimator(ABC):
    """Abstract base class for estimators guarded by an EstimatorLock."""

    def __init__(self, listener: Optional[Any] = None):
        """
        Initialize estimator.

        Args:
            listener: Optional object receiving estimation events.
        """
        self._lock = EstimatorLock()
        self._listener = listener

    @property
    def locked(self) -> bool:
        """Whether estimate() is currently running."""
        return self._lock.locked

    @property
    def listener(self) -> Optional[Any]:
        return self._listener

    @listener.setter
    def listener(self, value: Optional[Any]) -> None:
        self._lock.check()
        self._listener = value

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """Whether enough data is available to call estimate()."""
        pass

    @abstractmethod
    def estimate(self) -> Any:
        """
        Run the estimation.

        Returns:
            Estimator-specific result.
        """
        pass

    def _notify(self, event: str, *args: Any) -> None:
        """Forward an event to the listener if it handles it."""
        if self._listener is None:
            return
        callback = getattr(self._listener, event, None)
        if callback is not None:
            callback(self, *args)
