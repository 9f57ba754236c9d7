"""Custom exception hierarchy for pluqqy."""

__all__ = [
    "AlreadyExistsError",
    "ComposeError",
    "FileTooLargeError",
    "InvalidPathError",
    "NotFoundError",
    "ParseError",
    "PluqqyError",
    "ReferenceRewriteError",
    "ValidationError",
    "WriteError",
]


class PluqqyError(Exception):
    """Base exception for all pluqqy errors."""


class InvalidPathError(PluqqyError):
    """Raised when a path contains traversal or would escape the project root."""


class FileTooLargeError(PluqqyError):
    """Raised when a file or payload exceeds the maximum allowed size."""


class NotFoundError(PluqqyError):
    """Raised when an entity path does not resolve to an existing file."""


class AlreadyExistsError(PluqqyError):
    """Raised when an operation would overwrite an existing entity."""


class ValidationError(PluqqyError):
    """Raised when a pipeline, tag name or display name fails validation."""


class ParseError(PluqqyError):
    """Raised when a pipeline, settings or tag registry file cannot be parsed."""


class WriteError(PluqqyError):
    """Raised when an atomic write fails; the target is left unchanged."""


class ReferenceRewriteError(PluqqyError):
    """Raised when pipelines could not be rewritten after a component change.

    Every pipeline rewritten earlier in the same operation has been restored
    from its snapshot by the time this is raised.
    """


class ComposeError(PluqqyError):
    """Raised when a pipeline cannot be composed at all."""
