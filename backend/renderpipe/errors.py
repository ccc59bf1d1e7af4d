"""Exception hierarchy shared by the orchestrator, steps, queue and providers."""

from typing import Optional


class RenderPipelineError(Exception):
    """Base class for all render pipeline errors."""


class RunNotFoundError(RenderPipelineError):
    """Raised when a run id does not exist in the run store."""


class PlanNotFoundError(RenderPipelineError):
    """Raised when a plan id does not exist or is not approved."""


class RunStateError(RenderPipelineError):
    """Raised when a control command is illegal for the run's current status."""


class CapabilityError(RenderPipelineError):
    """Raised by a capability provider when an external call fails.

    Transient and permanent failures are not distinguished here; the
    orchestrator treats every capability error as a plain step failure.
    """

    def __init__(self, message: str, capability: Optional[str] = None):
        super().__init__(message)
        self.capability = capability


class CapabilityTimeoutError(CapabilityError):
    """Raised when a capability call exceeds its wall-clock timeout."""


class InjectedFailure(CapabilityError):
    """Raised by the dry-run fault injector at the configured step."""


class ArtifactMissingError(RenderPipelineError):
    """Raised when a declared artifact is absent or empty."""


class SlotInconsistencyError(RenderPipelineError):
    """Raised when the execution slot is released by a run that does not hold it."""
