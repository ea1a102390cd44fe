#!/usr/bin/env python3
"""
Resilient Remote Executor — SSH/SFTP sessions against a build server

Wraps paramiko with the retry discipline a freshly booted cloud server
needs: its sshd is not reachable the instant the provider reports the
server as running, and a flaky link must not abort a deployment.

Every operation that can fail is retried with a bounded fixed backoff
(ham.retry) and, once the bound is exhausted, raises RemoteError tagged
with a FailureKind so callers can apply per-class policy:

- CONNECT: TCP connect / DNS / socket failure
- SESSION: SSH handshake or authentication failure, SFTP unavailable
- SHELL: session up, but a command channel could not be opened
- UNKNOWN: anything else (including non-zero exits of checked commands)

Usage:
    with RemoteSession("203.0.113.10", private_key) as session:
        session.run("apt-get update -y -qq")
        session.put("/tmp/vars.json", "/ham-files/vars.json")
"""

import io
import logging
import posixpath
import shlex
import socket
import stat
import time
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List, Callable, Iterator

import paramiko

from .errors import ConfigError, FailureKind, RemoteCommandError, RemoteError
from .retry import REMOTE_POLICY, RetryPolicy, retry

logger = logging.getLogger(__name__)

KEY_CLASSES = [paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey]

# paramiko reports this exit status when the channel closed without one.
LOST_EXIT_STATUS = -1


@dataclass
class ExecResult:
    """Result of a remote command execution."""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    success: bool
    duration_ms: float
    host: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_private_key(content: str) -> paramiko.PKey:
    """Parse an OpenSSH/PEM private key held as a string."""
    key_file = io.StringIO(content)
    for key_class in KEY_CLASSES:
        try:
            key_file.seek(0)
            return key_class.from_private_key(key_file)
        except (paramiko.SSHException, ValueError):
            continue
    raise ConfigError("Could not parse SSH private key (expected Ed25519, RSA or ECDSA)")


def classify_connect_error(error: BaseException) -> FailureKind:
    """Map an exception raised while connecting to its failure class."""
    if isinstance(error, paramiko.ssh_exception.NoValidConnectionsError):
        return FailureKind.CONNECT
    if isinstance(error, paramiko.SSHException):
        return FailureKind.SESSION
    if isinstance(error, (socket.timeout, socket.gaierror, OSError)):
        return FailureKind.CONNECT
    return FailureKind.UNKNOWN


class RemoteProcess:
    """A command started on its own channel, polled instead of blocked on."""

    def __init__(self, channel, command: str, host: str = ""):
        self.channel = channel
        self.command = command
        self.host = host
        self._stdout = channel.makefile("rb")
        self._started = time.time()

    @property
    def done(self) -> bool:
        return self.channel.exit_status_ready()

    @property
    def connection_lost(self) -> bool:
        """True once the SSH transport carrying this channel has gone away."""
        transport = self.channel.get_transport()
        return transport is None or not transport.is_active()

    def lines(self) -> Iterator[str]:
        """Yield stdout lines until the channel closes."""
        for raw in self._stdout:
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")

    def wait(self) -> ExecResult:
        exit_code = self.channel.recv_exit_status()
        stdout = self._stdout.read().decode("utf-8", errors="replace").strip()
        stderr = self.channel.makefile_stderr("rb").read().decode("utf-8", errors="replace").strip()
        return ExecResult(
            command=self.command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            success=exit_code == 0,
            duration_ms=round((time.time() - self._started) * 1000, 1),
            host=self.host,
        )

    def close(self):
        try:
            self.channel.close()
        except (OSError, EOFError, paramiko.SSHException) as e:
            logger.debug(f"Closing channel for {self.command[:40]}: {e}")


class RemoteSession:
    """
    One authenticated SSH connection (plus lazily opened SFTP) to a server.

    Sessions are cheap to recreate; when a connection dies the next call
    reconnects inside the retry loop.
    """

    DEFAULT_TIMEOUT = 30
    DEFAULT_PORT = 22
    KEEPALIVE_INTERVAL = 30

    def __init__(
        self,
        host: str,
        private_key: paramiko.PKey,
        username: str = "root",
        port: int = None,
        timeout: int = None,
        policy: RetryPolicy = REMOTE_POLICY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.host = host
        self.username = username
        self.port = port or self.DEFAULT_PORT
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.policy = policy
        self._sleep = sleep
        self._key = private_key
        self._client: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None
        self._exec_log: List[ExecResult] = []

    # ── Connection Management ────────────────────────────────────

    def _connect_once(self):
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                pkey=self._key,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise RemoteError(
                f"Cannot connect to {self.username}@{self.host}:{self.port}: {e}",
                classify_connect_error(e),
            ) from e
        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(self.KEEPALIVE_INTERVAL)
        self._client = client
        logger.info(f"SSH connected to {self.username}@{self.host}:{self.port}")

    def connect(self):
        """Establish the SSH session, retrying within the policy bound."""
        if self.connected:
            return
        retry(self._connect_once, self.policy, retry_on=(RemoteError,),
              sleep=self._sleep, describe=f"SSH connect {self.host}")

    def close(self):
        """Close SFTP and SSH; safe to call more than once."""
        if self._sftp is not None:
            try:
                self._sftp.close()
            except (OSError, EOFError, paramiko.SSHException) as e:
                logger.debug(f"Closing SFTP to {self.host}: {e}")
            self._sftp = None
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.info(f"SSH connection to {self.host} closed")

    @property
    def connected(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def _ensure_connected(self):
        if not self.connected:
            self._sftp = None
            self._connect_once()

    # ── File Transfer ────────────────────────────────────────────

    def _open_sftp_once(self) -> paramiko.SFTPClient:
        self._ensure_connected()
        if self._sftp is None:
            try:
                self._sftp = self._client.open_sftp()
            except (paramiko.SSHException, OSError, EOFError) as e:
                raise RemoteError(f"Cannot open SFTP on {self.host}: {e}",
                                  FailureKind.SESSION) from e
        return self._sftp

    def open_sftp(self) -> paramiko.SFTPClient:
        return retry(self._open_sftp_once, self.policy, retry_on=(RemoteError,),
                     sleep=self._sleep, describe=f"SFTP open {self.host}")

    def put(self, local_path: str, remote_path: str):
        """Copy one local file to the server."""
        def _put():
            sftp = self._open_sftp_once()
            try:
                sftp.put(local_path, remote_path)
            except (OSError, EOFError, paramiko.SSHException) as e:
                self._sftp = None
                raise RemoteError(f"SFTP put {local_path} -> {remote_path} failed: {e}",
                                  FailureKind.SESSION) from e

        retry(_put, self.policy, retry_on=(RemoteError,), sleep=self._sleep,
              describe=f"SFTP put {remote_path}")
        logger.info(f"[SFTP] {local_path} -> {self.host}:{remote_path}")

    def mkdir_p(self, remote_dir: str):
        """Create a remote directory and any missing parents."""
        def _mkdir():
            sftp = self._open_sftp_once()
            current = "/"
            try:
                for part in [p for p in remote_dir.split("/") if p]:
                    current = posixpath.join(current, part)
                    try:
                        if not stat.S_ISDIR(sftp.stat(current).st_mode):
                            raise NotADirectoryError(f"{current} exists and is not a directory")
                    except FileNotFoundError:
                        sftp.mkdir(current)
            except (EOFError, paramiko.SSHException) as e:
                self._sftp = None
                raise RemoteError(f"SFTP mkdir {remote_dir} failed: {e}",
                                  FailureKind.SESSION) from e

        retry(_mkdir, self.policy, retry_on=(RemoteError,), sleep=self._sleep,
              describe=f"SFTP mkdir {remote_dir}")

    # ── Command Execution ────────────────────────────────────────

    def _run_once(self, command: str, check: bool, timeout: Optional[int]) -> ExecResult:
        self._ensure_connected()
        start = time.time()
        try:
            _, stdout_ch, stderr_ch = self._client.exec_command(command, timeout=timeout)
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise RemoteError(f"Cannot open shell on {self.host}: {e}", FailureKind.SHELL) from e

        try:
            exit_code = stdout_ch.channel.recv_exit_status()
            stdout = stdout_ch.read().decode("utf-8", errors="replace").strip()
            stderr = stderr_ch.read().decode("utf-8", errors="replace").strip()
        except (OSError, EOFError, paramiko.SSHException) as e:
            raise RemoteError(f"Lost connection running {command[:80]}: {e}",
                              FailureKind.CONNECT) from e

        result = ExecResult(
            command=command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            success=exit_code == 0,
            duration_ms=round((time.time() - start) * 1000, 1),
            host=self.host,
        )
        self._exec_log.append(result)

        level = logging.INFO if result.success else logging.WARNING
        logger.log(
            level,
            f"[SSH] {command[:80]} -> exit={result.exit_code} "
            f"({result.duration_ms:.0f}ms)"
        )

        if check and not result.success:
            raise RemoteCommandError(command, exit_code, stderr)
        return result

    def run(self, command: str, check: bool = True, timeout: int = None) -> ExecResult:
        """
        Execute a command, retrying transport failures (and non-zero exits
        when ``check`` is set) within the policy bound.
        """
        return retry(lambda: self._run_once(command, check, timeout), self.policy,
                     retry_on=(RemoteError,), sleep=self._sleep,
                     describe=f"[SSH] {command[:60]}")

    def exists(self, remote_path: str) -> bool:
        return self.run(f"test -e {shlex.quote(remote_path)}", check=False).exit_code == 0

    def start(self, command: str) -> RemoteProcess:
        """Start a command on a dedicated channel without waiting for it."""
        self._ensure_connected()
        try:
            channel = self._client.get_transport().open_session()
            channel.exec_command(command)
        except (paramiko.SSHException, OSError, EOFError, AttributeError) as e:
            raise RemoteError(f"Cannot open shell on {self.host}: {e}", FailureKind.SHELL) from e
        logger.info(f"[SSH] started {command[:80]}")
        return RemoteProcess(channel, command, self.host)

    # ── Audit ────────────────────────────────────────────────────

    def get_exec_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        entries = self._exec_log[-limit:]
        return [e.to_dict() for e in reversed(entries)]

    # ── Context Manager ──────────────────────────────────────────

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        status = "connected" if self.connected else "disconnected"
        return f"RemoteSession({self.username}@{self.host}:{self.port}, {status})"


class SessionFactory:
    """Builds sessions to one server with shared key and retry settings."""

    def __init__(self, private_key: paramiko.PKey, policy: RetryPolicy = REMOTE_POLICY,
                 username: str = "root", port: int = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.private_key = private_key
        self.policy = policy
        self.username = username
        self.port = port
        self.sleep = sleep

    def __call__(self, host: str, sleep: Callable[[float], None] = None) -> RemoteSession:
        return RemoteSession(host, self.private_key, username=self.username,
                             port=self.port, policy=self.policy, sleep=sleep or self.sleep)
