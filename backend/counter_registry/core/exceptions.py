"""
Errors raised by the counter registry.

The editing core needs to tell apart "nothing to do", "rejected locally" and
"attempted and failed", so each outcome gets its own exception type.
"""
from typing import Optional


class CounterRegistryError(Exception):
    """Base class for every error raised by the counter registry"""


class MetricValidationError(CounterRegistryError, ValueError):
    """An edit was rejected before it reached the metric store"""


class InvalidTransitionError(CounterRegistryError, ValueError):
    """A workflow move that skips stages or targets an unknown stage"""


class CounterNotFoundError(CounterRegistryError, LookupError):
    """No counter exists yet for the requested date or id"""


class PersistenceError(CounterRegistryError):
    """A call to the backing store failed; local state was left untouched"""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
