"""Exception hierarchy for the preview engine.

One exception per failure mode. Fatal startup problems, per-update
configuration rejections and transient proxy conditions are kept
distinct so callers can map each to the right response.
"""
from __future__ import annotations


class PreviewError(Exception):
    """Base exception for all preview errors."""


class StartupError(PreviewError):
    """Session could not be created. Always fatal for the session."""
    def __init__(self, stage: str, reason: str):
        self.stage = stage
        self.reason = reason
        super().__init__(f"Preview startup failed during {stage}: {reason}")


class RegenerationError(PreviewError):
    """Regenerating the preview document failed. Non-fatal."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Preview regeneration failed: {reason}")


class ConfigValidationError(PreviewError):
    """Merged configuration document did not pass schema validation."""
    def __init__(self, issues: list[str]):
        self.issues = issues
        joined = "; ".join(issues) if issues else "unknown error"
        super().__init__(f"Invalid configuration: {joined}")


class WriteFailure(PreviewError):
    """Configuration update aborted while writing to disk.

    The temp file that was being written is preserved at ``failed_path``
    for inspection.
    """
    def __init__(self, path: str, failed_path: str | None, reason: str):
        self.path = path
        self.failed_path = failed_path
        self.reason = reason
        message = f"Failed to write configuration {path}: {reason}"
        if failed_path:
            message += f"\nTemp file preserved at: {failed_path}"
        super().__init__(message)


class ProxyUnavailable(PreviewError):
    """Content server is not reachable right now. Safe to retry."""
    def __init__(self, reason: str, retry_after: float = 1.0):
        self.reason = reason
        self.retry_after = retry_after
        super().__init__(f"Preview content server unavailable: {reason}")


class PathSecurityError(PreviewError):
    """Requested path is outside the permitted root or malformed.

    ``client_message`` is safe to return to the browser; the full
    message (with the offending input) is for logs only.
    """
    def __init__(self, client_message: str, detail: str = ""):
        self.client_message = client_message
        self.detail = detail
        super().__init__(f"{client_message} ({detail})" if detail else client_message)


class SessionSwitchError(PreviewError):
    """Folder switch failed. The controller is left with no active session."""
    def __init__(self, stage: str, reason: str):
        self.stage = stage
        self.reason = reason
        super().__init__(f"Folder switch failed during {stage}: {reason}")


class BuildError(PreviewError):
    """Strict (non-preview) build failed."""
    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(
            "Build failed with {} error(s):\n{}".format(len(errors), "\n".join(errors))
        )
