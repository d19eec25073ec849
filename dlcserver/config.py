"""
Configuration for the DLC file server.

One frozen-in-spirit dataclass shared by the supervisor and every worker.
Workers receive a copy when they are spawned, so nothing in here may hold
process-local state (sockets, queues, loops).
"""

import logging
import multiprocessing
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


# ============================================================================
# RESTART STRATEGY
# ============================================================================

RESTART_MODES = ("always", "backoff", "never")


@dataclass
class RestartPolicy:
    """
    How the supervisor reacts when a worker process exits.

    - always:  respawn immediately, forever
    - backoff: respawn after a delay that doubles on every quick failure
    - never:   leave the slot empty (useful when debugging a crash loop)
    """

    mode: str = "always"
    backoff_initial: float = 0.5   # First delay in seconds (backoff mode)
    backoff_max: float = 30.0      # Cap on the delay; also the "stable" uptime

    def next_delay(self, previous_delay: float, uptime: float) -> Optional[float]:
        """
        Delay before respawning a worker that just died.

        Args:
            previous_delay: Delay used for the last restart of this slot
            uptime: How long the dead worker was alive, in seconds

        Returns:
            Seconds to wait, or None if the worker must not be restarted.
        """
        if self.mode == "never":
            return None
        if self.mode == "always":
            return 0.0

        # A worker that stayed up long enough is considered healthy again
        if uptime >= self.backoff_max or previous_delay <= 0:
            return self.backoff_initial
        return min(previous_delay * 2, self.backoff_max)


# ============================================================================
# SERVER CONFIGURATION
# ============================================================================

def _default_workers() -> int:
    # At least two workers so one crash never takes the service down
    return max(2, multiprocessing.cpu_count())


@dataclass
class ServerConfig:
    """
    Configuration class for the file server.
    Using dataclass makes it easy to validate and document settings.
    """

    # Network settings
    host: str = "0.0.0.0"
    port: int = 4242
    backlog: int = 4096

    # Process model
    workers: int = field(default_factory=_default_workers)
    max_connections_per_worker: int = 1000
    restart: RestartPolicy = field(default_factory=RestartPolicy)

    # Timeouts (seconds)
    keepalive_timeout: float = 75.0     # Idle time between requests
    request_timeout: float = 30 * 60.0  # Whole response; archives are big
    shutdown_grace: float = 30.0        # In-flight drain time on SIGTERM

    # File roots
    root: str = "dlc"                   # Primary root (DLC_DIRECTORY)
    fallback_subdir: str = "dlc"        # Fallback root, nested in primary
    mount_prefix: str = "/static"
    default_resource: str = "dlc/DLCIndex.zip"

    # Streaming
    chunk_size: int = 4 * 1024 * 1024            # Read granularity
    large_file_threshold: int = 100 * 1024 * 1024
    # Above this size the chunk size is halved

    # Compression
    gzip_min_size: int = 1024
    gzip_max_size: int = 100 * 1024 * 1024
    gzip_level: int = 4  # Speed over ratio

    # Connection-count telemetry
    report_interval: float = 10.0
    channel_size: int = 10000

    # Logging
    log_level: str = "INFO"
    slow_request_ms: int = 1000

    server_name: str = "dlcserver"
    use_uvloop: bool = True

    @classmethod
    def from_env(cls, **overrides) -> "ServerConfig":
        """
        Create configuration from environment variables.

        DLC_DIRECTORY   Primary file root (default: dlc)
        DLC_HOST        Bind address (default: 0.0.0.0)
        DLC_PORT        Port (default: 4242)
        DLC_WORKERS     Worker processes (default: max(2, cpu_count))
        DLC_LOG_LEVEL   Logging level (default: INFO)

        Keyword overrides win over the environment.
        """
        values = {}
        if os.getenv("DLC_DIRECTORY"):
            values["root"] = os.environ["DLC_DIRECTORY"]
        if os.getenv("DLC_HOST"):
            values["host"] = os.environ["DLC_HOST"]
        if os.getenv("DLC_PORT"):
            values["port"] = int(os.environ["DLC_PORT"])
        if os.getenv("DLC_WORKERS"):
            values["workers"] = int(os.environ["DLC_WORKERS"])
        if os.getenv("DLC_LOG_LEVEL"):
            values["log_level"] = os.environ["DLC_LOG_LEVEL"].upper()

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def primary_root(self) -> str:
        return os.path.abspath(self.root)

    @property
    def fallback_root(self) -> str:
        return os.path.abspath(os.path.join(self.primary_root, self.fallback_subdir))

    @property
    def roots(self) -> Tuple[str, ...]:
        """Candidate roots in lookup order."""
        return (self.primary_root, self.fallback_root)

    def validate(self) -> None:
        """Fail fast on values that would only blow up later in a worker."""
        if not 0 <= self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}. Must be 0-65535.")
        if self.workers < 1:
            raise ValueError("workers must be >= 1")
        if self.max_connections_per_worker < 1:
            raise ValueError("max_connections_per_worker must be >= 1")
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        if self.gzip_min_size > self.gzip_max_size:
            raise ValueError("gzip_min_size must be <= gzip_max_size")
        if not 1 <= self.gzip_level <= 9:
            raise ValueError("gzip_level must be between 1 and 9")
        for name in ("keepalive_timeout", "request_timeout", "shutdown_grace", "report_interval"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if not self.mount_prefix.startswith("/"):
            raise ValueError(f"mount_prefix must start with '/': {self.mount_prefix!r}")
        if self.restart.mode not in RESTART_MODES:
            raise ValueError(f"Unknown restart mode: {self.restart.mode!r}")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {self.log_level!r}")


def configure_logging(config: ServerConfig, role: str) -> None:
    """
    Configure logging for one process.

    Args:
        config: Server configuration
        role: Tag shown in every line ("Master", "Worker-3", ...)
    """
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format=f'%(asctime)s - {role} - %(levelname)s - %(message)s',
        force=True,
    )
