"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via PAGEDPREVIEW_* env vars;
command-line flags override both.
"""
from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "manifest.yaml"
LIVERELOAD_PATH = "/__livereload"
API_PREFIX = "/api"
CONTROL_UI_PATH = "/_control/"

DEFAULT_ARTIFACT_DIRS = ("dist", "build", "node_modules", ".pagedmd")


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass
class PreviewConfig:
    """Preview server configuration."""

    # Control host bind address
    host: str = "127.0.0.1"
    port: int = 3579

    # Directory browsing and folder switches are confined to this root.
    # Empty means the user's home directory.
    permitted_root: str = ""

    # Watch / rebuild
    watch: bool = True
    debounce_seconds: float = 0.1
    max_watch_failures: int = 5
    artifact_dirs: tuple[str, ...] = DEFAULT_ARTIFACT_DIRS

    # Client presence
    shutdown_grace_seconds: float = 5.0
    heartbeat_interval_seconds: float = 5.0
    missed_heartbeats: int = 3

    # Content server
    startup_timeout_seconds: float = 15.0
    proxy_wait_seconds: float = 5.0
    upstream_timeout_seconds: float = 30.0

    # Scratch directories are created under this base (system temp if empty)
    scratch_base: str = ""

    log_level: str = "INFO"

    @property
    def root_path(self) -> Path:
        if self.permitted_root:
            return Path(self.permitted_root).expanduser().resolve()
        return Path.home().resolve()

    @property
    def scratch_base_path(self) -> Path:
        return Path(self.scratch_base or tempfile.gettempdir())

    @property
    def client_timeout_seconds(self) -> float:
        """A client missing this many seconds of heartbeats is disconnected."""
        return self.heartbeat_interval_seconds * self.missed_heartbeats

    @classmethod
    def from_env(cls) -> PreviewConfig:
        """Load configuration from PAGEDPREVIEW_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("PAGEDPREVIEW_")
        }
        if env_vars:
            logger.info(
                "PreviewConfig.from_env: env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(env_vars.items())),
            )
        else:
            logger.debug("PreviewConfig.from_env: no PAGEDPREVIEW_* env vars set, using defaults")

        artifact_raw = os.getenv("PAGEDPREVIEW_ARTIFACT_DIRS")
        return cls(
            host=os.getenv("PAGEDPREVIEW_HOST", cls.host),
            port=int(os.getenv("PAGEDPREVIEW_PORT", str(cls.port))),
            permitted_root=os.getenv("PAGEDPREVIEW_PERMITTED_ROOT", cls.permitted_root),
            watch=os.getenv("PAGEDPREVIEW_WATCH", "1").lower() not in {"0", "false", "no"},
            debounce_seconds=float(os.getenv(
                "PAGEDPREVIEW_DEBOUNCE_SECONDS", str(cls.debounce_seconds)
            )),
            max_watch_failures=int(os.getenv(
                "PAGEDPREVIEW_MAX_WATCH_FAILURES", str(cls.max_watch_failures)
            )),
            artifact_dirs=(
                _split_csv(artifact_raw) if artifact_raw is not None else cls.artifact_dirs
            ),
            shutdown_grace_seconds=float(os.getenv(
                "PAGEDPREVIEW_SHUTDOWN_GRACE_SECONDS", str(cls.shutdown_grace_seconds)
            )),
            heartbeat_interval_seconds=float(os.getenv(
                "PAGEDPREVIEW_HEARTBEAT_INTERVAL_SECONDS",
                str(cls.heartbeat_interval_seconds),
            )),
            missed_heartbeats=int(os.getenv(
                "PAGEDPREVIEW_MISSED_HEARTBEATS", str(cls.missed_heartbeats)
            )),
            startup_timeout_seconds=float(os.getenv(
                "PAGEDPREVIEW_STARTUP_TIMEOUT_SECONDS", str(cls.startup_timeout_seconds)
            )),
            proxy_wait_seconds=float(os.getenv(
                "PAGEDPREVIEW_PROXY_WAIT_SECONDS", str(cls.proxy_wait_seconds)
            )),
            upstream_timeout_seconds=float(os.getenv(
                "PAGEDPREVIEW_UPSTREAM_TIMEOUT_SECONDS", str(cls.upstream_timeout_seconds)
            )),
            scratch_base=os.getenv("PAGEDPREVIEW_SCRATCH_BASE", cls.scratch_base),
            log_level=os.getenv("PAGEDPREVIEW_LOG_LEVEL", cls.log_level),
        )
