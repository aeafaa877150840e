"""Preview engine: session lifecycle, rebuild pipeline and content server handle."""
from .config import PreviewConfig
from .errors import (
    BuildError,
    ConfigValidationError,
    PathSecurityError,
    PreviewError,
    ProxyUnavailable,
    RegenerationError,
    SessionSwitchError,
    StartupError,
    WriteFailure,
)
from .lifecycle import SessionPhase

__all__ = [
    "BuildError",
    "ConfigValidationError",
    "PathSecurityError",
    "PreviewConfig",
    "PreviewError",
    "ProxyUnavailable",
    "RegenerationError",
    "SessionPhase",
    "SessionSwitchError",
    "StartupError",
    "WriteFailure",
]
