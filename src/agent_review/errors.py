"""Exception hierarchy for Agent Review."""


class AgentReviewError(Exception):
    """Base class for all errors raised by the review engine."""

    pass


class ConfigError(AgentReviewError):
    """Raised when configuration cannot be loaded."""

    pass


class PlanningError(AgentReviewError):
    """Raised when batching parameters are unusable."""

    pass


class NoBatchesError(AgentReviewError):
    """Raised when review units were requested but no batch could be built."""

    pass


class InvalidTransitionError(AgentReviewError):
    """Raised when a batch job is moved to a state it cannot reach."""

    pass


class AllRootsFailedError(AgentReviewError):
    """Raised when every workspace root failed to produce a review."""

    pass
