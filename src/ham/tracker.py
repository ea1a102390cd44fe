#!/usr/bin/env python3
"""
Progress & Status Tracker — following a remote build to its end

Two cooperating activities per probe:

1. LogTail: a background thread tailing the agent log into a queue. It is
   only there for the operator to watch; if it dies the probe carries on.
2. The completion probe: its own session runs a command that blocks
   until the agent exits and then prints the status document. While it
   waits, the foreground drains the tail queue into the display.

Each probe is classified (FailureKind or None) and fed through the
retry/destroy table. Once a probe comes back clean, the label store is
polled for the final outcome, and the label wins: a clean probe followed
by a "failed" label is a failed build.
"""

import json
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import paramiko
from jsonschema import Draft7Validator

from .bootstrap import LOG_PATH, STATUS_PATH
from .config import Settings
from .destroy import CleanupGuard, KeepFlags, should_destroy
from .errors import CloudError, FailureKind, RemoteError, SSHKeyMismatchError, TerminalBuildError
from .labels import BuildOutcome
from .remote import LOST_EXIT_STATUS
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

WAIT_COMMAND = (
    f"while pgrep -x ham > /dev/null 2>&1; do sleep 15; done; cat {STATUS_PATH}"
)
TAIL_COMMAND = f"tail -n +1 -F {LOG_PATH} 2> /dev/null"

STATUS_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["status"],
    "properties": {
        "status": {"type": "string", "enum": ["successful", "failed", "inprogress"]},
        "message": {"type": "string"},
        "updated_at": {"type": "string"},
    },
}

_validator = Draft7Validator(STATUS_SCHEMA)

CANNOT_DETERMINE_STATUS = "cannot determine status"
BUILD_FAILURE = FailureKind.BUILD_FAILED.label


def parse_status(payload: str) -> Dict[str, Any]:
    """Decode and validate the agent's status document."""
    try:
        data = json.loads(payload)
    except ValueError as e:
        raise RemoteError(f"Status is not JSON: {e}", FailureKind.MALFORMED_STATUS) from e
    errors = sorted(_validator.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        messages = ", ".join(error.message for error in errors)
        raise RemoteError(f"Status validation failed: {messages}", FailureKind.MALFORMED_STATUS)
    return data


@dataclass
class ProbeResult:
    kind: Optional[FailureKind] = None
    error: Optional[BaseException] = None
    status: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.kind is None


def classify_status(payload: str) -> ProbeResult:
    try:
        status = parse_status(payload)
    except RemoteError as e:
        return ProbeResult(kind=e.kind, error=e)
    if status["status"] == BuildOutcome.FAILED.value:
        message = status.get("message", "remote build reported failure")
        return ProbeResult(kind=FailureKind.BUILD_FAILED,
                           error=RemoteError(message, FailureKind.BUILD_FAILED),
                           status=status)
    return ProbeResult(status=status)


def _lost_connection(session) -> ProbeResult:
    error = RemoteError(f"Connection to {session.host} lost while waiting for the build agent",
                        FailureKind.CONNECT)
    return ProbeResult(kind=FailureKind.CONNECT, error=error)


@dataclass
class TrackResult:
    outcome: BuildOutcome
    probes: int = 0
    status: Optional[Dict[str, Any]] = field(default=None, repr=False)


class TailStopped(Exception):
    """Raised inside the tail thread to abandon a connect retry on stop()."""


class LogTail:
    """
    Streams the remote agent log into a queue from a daemon thread.

    The tail's session sleeps between connect retries through _wait, so
    stop() ends the thread even while it is still trying to connect.
    """

    JOIN_TIMEOUT = 35.0

    def __init__(self, session_factory: Callable, address: str, command: str = TAIL_COMMAND):
        self.session_factory = session_factory
        self.address = address
        self.command = command
        self.lines: "queue.Queue[str]" = queue.Queue()
        self._stop = threading.Event()
        self._process = None
        self._thread: Optional[threading.Thread] = None

    def start(self):
        self._thread = threading.Thread(target=self._run, name=f"log-tail-{self.address}",
                                        daemon=True)
        self._thread.start()

    def _wait(self, seconds: float):
        if self._stop.wait(seconds):
            raise TailStopped()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        try:
            with self.session_factory(self.address, sleep=self._wait) as session:
                if self._stop.is_set():
                    return
                self._process = session.start(self.command)
                if self._stop.is_set():
                    self._process.close()
                    return
                for line in self._process.lines():
                    if self._stop.is_set():
                        break
                    self.lines.put(line)
        except TailStopped:
            logger.debug(f"Log tail on {self.address} stopped while connecting")
        except (RemoteError, OSError, EOFError, paramiko.SSHException) as e:
            if not self._stop.is_set():
                logger.warning(f"Log tail on {self.address} stopped: {e}")

    def drain(self) -> List[str]:
        drained = []
        while True:
            try:
                drained.append(self.lines.get_nowait())
            except queue.Empty:
                return drained

    def stop(self):
        self._stop.set()
        if self._process is not None:
            self._process.close()
        if self._thread is not None:
            self._thread.join(self.JOIN_TIMEOUT)
            if self._thread.is_alive():
                logger.warning(f"Log tail on {self.address} did not stop within {self.JOIN_TIMEOUT:g}s")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False


class ProgressTracker:
    """Runs the probe loop and the label poll for one build."""

    def __init__(
        self,
        session_factory: Callable,
        label_store,
        settings: Settings = None,
        display: Callable[[str], None] = None,
        stream_logs: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.labels = label_store
        self.settings = settings or Settings()
        self.display = display or (lambda line: logger.info(f"[remote] {line}"))
        self.stream_logs = stream_logs
        self._sleep = sleep

    def policy_for(self, kind: FailureKind) -> RetryPolicy:
        """Retry bound and backoff for one failure class."""
        if kind in (FailureKind.SESSION, FailureKind.SHELL, FailureKind.CONNECT):
            return self.settings.connect_failure
        if kind is FailureKind.MALFORMED_STATUS:
            return self.settings.malformed_status
        if kind is FailureKind.BUILD_FAILED:
            return RetryPolicy(attempts=1, interval=0)
        return self.settings.unknown_failure

    # ── Probe ────────────────────────────────────────────────────

    def _show(self, lines: List[str]):
        for line in lines:
            self.display(line)

    def _wait_for_agent(self, session, tail: Optional[LogTail]) -> ProbeResult:
        try:
            process = session.start(WAIT_COMMAND)
        except RemoteError as e:
            return ProbeResult(kind=e.kind, error=e)
        try:
            while not process.done:
                if process.connection_lost:
                    return _lost_connection(session)
                if tail is not None:
                    self._show(tail.drain())
                self._sleep(self.settings.probe_poll_interval)
            result = process.wait()
        finally:
            process.close()
        if tail is not None:
            self._show(tail.drain())
        if result.exit_code == LOST_EXIT_STATUS:
            return _lost_connection(session)
        return classify_status(result.stdout)

    def probe(self, address: str) -> ProbeResult:
        """Wait for the remote agent to exit and classify what it left behind."""
        session = self.session_factory(address)
        try:
            session.connect()
        except RemoteError as e:
            return ProbeResult(kind=e.kind, error=e)

        try:
            if not self.stream_logs:
                return self._wait_for_agent(session, None)
            with LogTail(self.session_factory, address) as tail:
                result = self._wait_for_agent(session, tail)
            self._show(tail.drain())
            return result
        except RemoteError as e:
            return ProbeResult(kind=e.kind, error=e)
        except (OSError, EOFError, paramiko.SSHException) as e:
            return ProbeResult(kind=FailureKind.CONNECT, error=e)
        finally:
            session.close()

    # ── Terminal outcomes ────────────────────────────────────────

    def _terminal(self, label: str, destroy: bool, guard: Optional[CleanupGuard],
                  detail: str = "", kind: FailureKind = None):
        if destroy and guard is not None:
            guard.arm()
            guard.destroy_now(label)
            raise TerminalBuildError(label, destroyed=True, detail=detail, kind=kind)
        if guard is not None:
            guard.disarm(f"{label}: server kept")
        logger.error(f"{label}; server kept for inspection")
        raise TerminalBuildError(label, destroyed=False, detail=detail, kind=kind)

    # ── Label poll ───────────────────────────────────────────────

    def poll_outcome(self, identity: str) -> Optional[BuildOutcome]:
        """Read the outcome label, polling within the label_poll bound."""
        policy = self.settings.label_poll
        for attempt in range(1, policy.attempts + 1):
            try:
                value = self.labels.get(identity)
            except (CloudError, SSHKeyMismatchError) as e:
                logger.warning(f"Reading build status label failed (attempt {attempt}): {e}")
                value = None
            if value is not None:
                return BuildOutcome.from_label(value)
            if attempt < policy.attempts:
                self._sleep(policy.interval)
        return None

    # ── Main loop ────────────────────────────────────────────────

    def track(self, address: str, identity: str, flags: KeepFlags = None,
              guard: Optional[CleanupGuard] = None) -> TrackResult:
        """
        Follow the build on ``address`` to a final outcome.

        Returns on success or in-progress; raises TerminalBuildError (or
        DestroyError if a decided destroy fails) otherwise.
        """
        flags = flags or KeepFlags()
        last_kind: Optional[FailureKind] = None
        streak = 0
        probes = 0

        while True:
            result = self.probe(address)
            probes += 1
            if result.ok:
                break

            kind = result.kind
            streak = streak + 1 if kind is last_kind else 1
            last_kind = kind
            policy = self.policy_for(kind)
            if streak < policy.attempts:
                logger.warning(
                    f"Probe of {address}: {kind.label} ({result.error}); "
                    f"retry {streak}/{policy.attempts - 1} in {policy.interval:g}s"
                )
                self._sleep(policy.interval)
                continue

            self._terminal(kind.label, should_destroy(kind, flags), guard,
                           detail=str(result.error or ""), kind=kind)

        if guard is not None:
            guard.disarm("remote agent finished")

        outcome = self.poll_outcome(identity)
        if outcome is None:
            self._terminal(CANNOT_DETERMINE_STATUS,
                           should_destroy(FailureKind.MALFORMED_STATUS, flags), guard,
                           detail=f"no status label for {identity}",
                           kind=FailureKind.MALFORMED_STATUS)
        if outcome is BuildOutcome.FAILED:
            self._terminal(BUILD_FAILURE,
                           should_destroy(FailureKind.BUILD_FAILED, flags), guard,
                           detail="status label reports failure",
                           kind=FailureKind.BUILD_FAILED)

        if outcome is BuildOutcome.SUCCESSFUL:
            logger.info(f"Build {identity} successful")
        else:
            logger.info(f"Build {identity} still in progress")
        return TrackResult(outcome=outcome, probes=probes, status=result.status)
