"""Error types shared by the build orchestrator."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class FailureKind(Enum):
    """Classification of a remote session / probe failure."""
    SESSION = "session"
    SHELL = "shell"
    CONNECT = "connect"
    MALFORMED_STATUS = "malformed_status"
    BUILD_FAILED = "build_failed"
    UNKNOWN = "unknown"

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    FailureKind.SESSION: "connection failure",
    FailureKind.SHELL: "connection failure",
    FailureKind.CONNECT: "connection failure",
    FailureKind.MALFORMED_STATUS: "malformed status",
    FailureKind.BUILD_FAILED: "build failure",
    FailureKind.UNKNOWN: "unknown error",
}


class HamError(Exception):
    """Base class for every error raised by ham."""


# ── Local preconditions ──────────────────────────────────────────

class PreconditionError(HamError):
    """Raised before any cloud resource is created."""


class ConfigError(PreconditionError):
    pass


class RecipeNotFoundError(PreconditionError):
    pass


class MissingVariableError(PreconditionError):
    pass


class MissingFileError(PreconditionError):
    pass


class UserDeclinedError(PreconditionError):
    pass


class AlreadyBuiltError(PreconditionError):
    pass


class SSHKeyMismatchError(PreconditionError):
    pass


# ── Cloud provider ───────────────────────────────────────────────

class CloudError(HamError):
    """A cloud API call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.code = code

    @property
    def is_conflict(self) -> bool:
        """The name is already taken, e.g. by a concurrent run of the same recipe."""
        return self.code == "uniqueness_error" or self.status_code == 409


class ActionFailedError(CloudError):
    """An asynchronous provider action finished with an error."""


# ── Remote execution ─────────────────────────────────────────────

class RemoteError(HamError):
    """A remote session or command failed; carries its classification."""

    def __init__(self, message: str, kind: FailureKind = FailureKind.UNKNOWN):
        super().__init__(message)
        self.kind = kind


class RemoteCommandError(RemoteError):
    """A remote command exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int, stderr: str = ""):
        super().__init__(
            f"Remote command failed (exit={exit_code}): {command[:80]} {stderr[:200]}".rstrip(),
            FailureKind.UNKNOWN,
        )
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


# ── Teardown and terminal outcomes ───────────────────────────────

class DestroyError(HamError):
    """The server could not be deleted; it is still running and billed."""


class TerminalBuildError(HamError):
    """
    A tracked build ended in a terminal failure.

    The message always names the failure class and whether the server
    was destroyed or kept, so the operator knows what is still billed.
    """

    def __init__(self, label: str, destroyed: bool, detail: str = "",
                 kind: Optional[FailureKind] = None):
        self.label = label
        self.destroyed = destroyed
        self.detail = detail
        self.kind = kind
        fate = "destroyed" if destroyed else "server kept and still running"
        message = f"{label}, {fate}."
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
