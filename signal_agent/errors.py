"""Error taxonomy for the signal pipeline.

InsufficientDataError is a valid terminal state for a unit of work, not a fault.
UpstreamUnavailableError / RateLimitedError come from the market data provider
and are retried with backoff before falling back to cache.
CalculationError and InvalidInputError are isolated to the failing unit.
"""


class SignalAgentError(Exception):
    """Base class for all pipeline errors."""


class InsufficientDataError(SignalAgentError):
    def __init__(self, message: str, missing: dict[str, str] | None = None):
        super().__init__(message)
        self.missing = missing or {}


class UpstreamUnavailableError(SignalAgentError):
    pass


class RateLimitedError(UpstreamUnavailableError):
    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class CalculationError(SignalAgentError):
    pass


class InvalidInputError(SignalAgentError):
    pass


class NotFoundError(SignalAgentError):
    pass
