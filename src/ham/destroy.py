#!/usr/bin/env python3
"""
Destroy Policy Engine — the only code allowed to delete a build server

Three pieces:

- should_destroy(kind, flags): the policy table mapping a terminal failure
  class plus the user's keep-flags to a destroy/keep decision.
- ServerDestroyer: deletes a server (and its data volume) by name with
  bounded retries.
- CleanupGuard: owned by one orchestration call. It is armed before any
  server is created, and its run() fires exactly once when the call
  unwinds, whether that is a normal return, an exception, Ctrl-C, or a
  trapped SIGTERM.
"""

import logging
import signal
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Optional

from .config import Settings
from .errors import CloudError, DestroyError, FailureKind
from .identity import is_build_identity, volume_name_for
from .retry import RetryPolicy, retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeepFlags:
    """User overrides; each one protects the server from one failure class."""
    keep: bool = False
    on_connect_failure: bool = False
    on_track_failure: bool = False
    on_build_failure: bool = False


CONNECTION_KINDS = (FailureKind.SESSION, FailureKind.SHELL, FailureKind.CONNECT)


def should_destroy(kind: Optional[FailureKind], flags: KeepFlags) -> bool:
    """
    Decide whether a terminal outcome of ``kind`` destroys the server.

    ``None`` means the probe finished without error. The generic keep
    flag wins over every class.
    """
    if kind is None or flags.keep:
        return False
    if kind in CONNECTION_KINDS:
        return not flags.on_connect_failure
    if kind is FailureKind.MALFORMED_STATUS:
        return not flags.on_track_failure
    if kind is FailureKind.BUILD_FAILED:
        return not flags.on_build_failure
    if kind is FailureKind.UNKNOWN:
        return True
    raise ValueError(f"Unhandled failure kind: {kind!r}")


class ServerDestroyer:
    """Deletes build servers and their volumes through the cloud client."""

    def __init__(self, client, lifecycle, settings: Settings = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self.lifecycle = lifecycle
        self.settings = settings or Settings()
        self._sleep = sleep

    def _delete_once(self, identity: str, server_id: Optional[int]) -> Optional[bool]:
        server = self.lifecycle.find_existing(identity)
        if server is None:
            return False
        if server_id is not None and server.id != server_id:
            return None
        action = self.client.delete_server(server.id)
        self.lifecycle.wait_for_action(action)
        return True

    def _delete_volume(self, identity: str):
        volume = self.lifecycle.find_volume(identity)
        if volume is not None:
            self.client.delete_volume(volume.id)

    def destroy(self, identity: str, policy: RetryPolicy = None,
                server_id: Optional[int] = None) -> bool:
        """
        Delete the server named ``identity`` and then its data volume.

        With ``server_id``, a server holding the name under a different id
        is left alone together with its volume.

        Returns True if a server was deleted, False if none existed.
        Raises DestroyError once the retry bound is exhausted.
        """
        policy = policy or self.settings.destroy
        try:
            deleted = retry(lambda: self._delete_once(identity, server_id), policy,
                            retry_on=(CloudError,), sleep=self._sleep,
                            describe=f"delete server {identity}")
            if deleted is None:
                logger.warning(f"{identity} is held by another server than id {server_id}; "
                               "leaving it and its volume")
                return False
            retry(lambda: self._delete_volume(identity), policy,
                  retry_on=(CloudError,), sleep=self._sleep,
                  describe=f"delete volume {volume_name_for(identity)}")
        except CloudError as e:
            raise DestroyError(
                f"Could not destroy {identity}; it may still be running and billed: {e}"
            ) from e
        if deleted:
            logger.warning(f"Destroyed build server {identity}")
        return deleted

    def reap_dead_servers(self):
        """Delete build servers that are powered off and will never report back."""
        for server in self.client.list_servers():
            if is_build_identity(server.name) and server.status == "off":
                logger.warning(f"Reaping dead build server {server.name}")
                self.destroy(server.name)


class CleanupGuard:
    """
    Carries the destroy decision for one orchestration call.

    Use as a context manager; run() executes once on exit and deletes
    the server only if the guard is still armed.
    """

    def __init__(self, destroyer: ServerDestroyer, identity: str,
                 flags: KeepFlags = None, exit_policy: RetryPolicy = None):
        self.destroyer = destroyer
        self.identity = identity
        self.flags = flags or KeepFlags()
        self.exit_policy = exit_policy
        self.armed = False
        self.destroyed = False
        self.reason = "not armed"
        self.server_id: Optional[int] = None
        self._ran = False

    def arm(self, server_id: Optional[int] = None):
        """
        Arm destruction unless the user asked to keep the server.

        ``server_id`` pins the guard to the server this run owns.
        """
        if server_id is not None:
            self.server_id = server_id
        if self.flags.keep:
            self.armed = False
            self.reason = "keep flag set"
            logger.info(f"Cleanup guard for {self.identity} not armed: keep flag set")
            return
        self.armed = True
        self.reason = "armed"
        logger.info(f"Cleanup guard armed for {self.identity}")

    def disarm(self, reason: str):
        self.armed = False
        self.reason = reason
        logger.info(f"Cleanup guard for {self.identity} disarmed: {reason}")

    def destroy_now(self, reason: str) -> bool:
        """Destroy immediately; on success the guard is disarmed."""
        deleted = self.destroyer.destroy(self.identity, server_id=self.server_id)
        self.destroyed = True
        self.disarm(f"destroyed: {reason}")
        return deleted

    def run(self):
        """Exit hook: destroy if still armed. Runs at most once."""
        if self._ran:
            return
        self._ran = True
        if not self.armed:
            return
        logger.warning(f"Cleanup guard still armed for {self.identity}; destroying server")
        try:
            self.destroyed = self.destroyer.destroy(self.identity, self.exit_policy, self.server_id)
            self.armed = False
        except DestroyError as e:
            # Running while another error unwinds; report it without masking that error.
            logger.error(str(e))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.run()
        return False


class TerminationRequested(SystemExit):
    pass


@contextmanager
def trap_termination_signals(signals=(signal.SIGTERM, signal.SIGHUP)):
    """
    Turn SIGTERM/SIGHUP into an exception so enclosing ``with`` blocks
    (and so the cleanup guard) unwind normally.
    """
    def _raise(signum, frame):
        raise TerminationRequested(128 + signum)

    previous = {}
    for sig in signals:
        try:
            previous[sig] = signal.signal(sig, _raise)
        except ValueError:
            # Not the main thread; handlers can only be installed there.
            pass
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
