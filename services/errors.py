# services/errors.py
"""
Error taxonomy for sandbox lifecycle and preview health.

Each error carries an ``error_type`` string and a ``retry_possible`` flag so
route handlers and the preview session can report failures uniformly.
"""

from typing import Any, Dict, Optional


class PreviewError(Exception):
    """Base class for sandbox/preview errors"""

    error_type = "preview_error"
    retry_possible = True

    def __init__(self, message: str, sandbox_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.sandbox_id = sandbox_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.error_type,
            "message": self.message,
            "sandbox_id": self.sandbox_id,
            "retry_possible": self.retry_possible,
        }


class SandboxUnreachable(PreviewError):
    """
    Connect or exec failed: the sandbox is gone (expired, killed) or the
    control plane could not reach it. Triggers recreation.
    """

    error_type = "sandbox_unreachable"


class LaunchTimeout(PreviewError):
    """
    Readiness was never confirmed within the launch window.

    Non-fatal: the URLs are still returned and recorded, the health monitor
    takes over from there.
    """

    error_type = "launch_timeout"


class RecoveryExhausted(PreviewError):
    """Automatic recreation reached its retry cap; only a manual retry resumes."""

    error_type = "recovery_exhausted"
    retry_possible = False

    def __init__(
        self, message: str, sandbox_id: Optional[str] = None, attempts: int = 0
    ):
        super().__init__(message, sandbox_id)
        self.attempts = attempts

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["attempts"] = self.attempts
        return data


class TransientCommandError(PreviewError):
    """A best-effort in-sandbox command failed or timed out"""

    error_type = "transient_command_error"

    def __init__(
        self,
        message: str,
        sandbox_id: Optional[str] = None,
        command: Optional[str] = None,
    ):
        super().__init__(message, sandbox_id)
        self.command = command
