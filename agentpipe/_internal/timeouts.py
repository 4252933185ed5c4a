"""Bounded waits and buffer ceilings for the subprocess transport.

Each value can be overridden process-wide through an environment variable and
per session through ``AgentOptions``.
"""

from __future__ import annotations

import os

# Time the CLI gets to exit on its own after stdin is closed, before SIGTERM.
GRACEFUL_SHUTDOWN_TIMEOUT_SEC = float(os.getenv("AGENTPIPE_SHUTDOWN_TIMEOUT", "5"))
# Time between SIGTERM and SIGKILL.
TERMINATE_TIMEOUT_SEC = float(os.getenv("AGENTPIPE_TERMINATE_TIMEOUT", "2"))
CONTROL_REQUEST_TIMEOUT_SEC = float(os.getenv("AGENTPIPE_CONTROL_TIMEOUT", "60"))
INTERRUPT_TIMEOUT_SEC = float(os.getenv("AGENTPIPE_INTERRUPT_TIMEOUT", "10"))
# How long to wait for stderr EOF before reporting a process failure.
STDERR_FLUSH_TIMEOUT_SEC = float(os.getenv("AGENTPIPE_STDERR_FLUSH_TIMEOUT", "1"))

DEFAULT_MAX_BUFFER_SIZE = 1024 * 1024  # 1MB
DEFAULT_MAX_STDERR_SIZE = 1024 * 1024  # 1MB


__all__ = [
    "GRACEFUL_SHUTDOWN_TIMEOUT_SEC",
    "TERMINATE_TIMEOUT_SEC",
    "CONTROL_REQUEST_TIMEOUT_SEC",
    "INTERRUPT_TIMEOUT_SEC",
    "STDERR_FLUSH_TIMEOUT_SEC",
    "DEFAULT_MAX_BUFFER_SIZE",
    "DEFAULT_MAX_STDERR_SIZE",
]
