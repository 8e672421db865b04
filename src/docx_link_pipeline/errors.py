"""Exception hierarchy shared by the pipeline stages."""

from typing import List, Optional


class LinkPipelineError(Exception):
    """Base class for all pipeline failures."""


class ConfigurationError(LinkPipelineError, ValueError):
    """Invalid configuration value; raised at construction time."""


class OperationCancelledError(LinkPipelineError):
    """Raised when a cooperative cancellation token has been triggered."""


class RetryExhaustedError(LinkPipelineError):
    """All attempts of a retry policy failed."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


class IntegrityError(LinkPipelineError):
    """Package validation failed at a checkpoint. Never retried."""

    def __init__(self, checkpoint: str, issues: List[str]):
        self.checkpoint = checkpoint
        self.issues = list(issues)
        preview = "; ".join(self.issues[:3])
        more = f" (+{len(self.issues) - 3} more)" if len(self.issues) > 3 else ""
        super().__init__(
            f"Integrity check '{checkpoint}' failed with {len(self.issues)} issue(s): "
            f"{preview}{more}"
        )


class RelationshipError(LinkPipelineError):
    """A hyperlink relationship could not be created or repointed."""


class ResolverError(LinkPipelineError):
    """The metadata lookup call failed."""


class ResolverTimeoutError(ResolverError):
    """The metadata lookup exceeded its total time budget."""
