"""
Shared fakes for the orchestrator tests: an in-memory cloud account and
a scripted build guest reachable through a session factory.
"""

import sys
from collections import deque
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from ham.cloud import ActionInfo, ServerInfo, SSHKeyInfo, ServerTypeInfo, VolumeInfo
from ham.config import HamConfig, Settings
from ham.errors import CloudError, RemoteCommandError, RemoteError
from ham.labels import fingerprint
from ham.remote import ExecResult
from ham.tracker import TAIL_COMMAND, WAIT_COMMAND

PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIHhhbS10ZXN0LWtleS1ieXRlcy0xMjM0NTY3ODkw ham@test"


# ── Cloud ────────────────────────────────────────────────────────

class FakeCloud:
    """In-memory stand-in for HetznerCloudClient."""

    def __init__(self, public_key: str = PUBLIC_KEY):
        self.servers = {}
        self.volumes = {}
        self.ssh_keys = {
            1: SSHKeyInfo(id=1, name="ham-ssh-key",
                          fingerprint=fingerprint(public_key), public_key=public_key),
        }
        self.server_types = [
            ServerTypeInfo(id=1, name="cx22", cores=2, memory=4.0, disk=40,
                           monthly_gross={"nbg1": 4.5}),
            ServerTypeInfo(id=2, name="ccx33", cores=8, memory=32.0, disk=240,
                           monthly_gross={"nbg1": 55.0}),
            ServerTypeInfo(id=3, name="cx11", cores=1, memory=2.0, disk=20,
                           deprecated=True, monthly_gross={"nbg1": 3.0}),
        ]
        self.calls = []
        self.failures = {}
        self._next_id = 100

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    def _call(self, method, *args):
        self.calls.append((method,) + args)
        pending = self.failures.get(method)
        if pending:
            raise pending.popleft()

    def fail(self, method: str, *errors):
        """Queue errors raised by the next calls to ``method``."""
        self.failures.setdefault(method, deque()).extend(
            errors or [CloudError(f"{method} failed", status_code=500)]
        )

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    def add_server(self, name: str, status: str = "running") -> ServerInfo:
        server = ServerInfo(id=self._id(), name=name, status=status,
                            ipv4=f"203.0.113.{len(self.servers) + 10}")
        self.servers[server.id] = server
        return server

    def set_label(self, name: str, value: str):
        self.ssh_keys[1].labels[name] = value

    # HetznerCloudClient surface

    def list_servers(self, name=None):
        self._call("list_servers", name)
        return [s for s in self.servers.values() if name is None or s.name == name]

    def create_server(self, request):
        self._call("create_server", request.name)
        server = self.add_server(request.name)
        server.server_type = request.server_type
        server.volume_ids = list(request.volume_ids)
        return server, ActionInfo(id=self._id(), command="create_server", status="success")

    def delete_server(self, server_id):
        self._call("delete_server", server_id)
        self.servers.pop(server_id, None)
        return ActionInfo(id=self._id(), command="delete_server", status="success")

    def list_volumes(self, name=None):
        self._call("list_volumes", name)
        return [v for v in self.volumes.values() if name is None or v.name == name]

    def create_volume(self, request):
        self._call("create_volume", request.name)
        volume = VolumeInfo(id=self._id(), name=request.name, size=request.size,
                            linux_device=f"/dev/disk/by-id/scsi-0HC_Volume_{self._next_id}",
                            location=request.location)
        self.volumes[volume.id] = volume
        return volume, ActionInfo(id=self._id(), command="create_volume", status="success")

    def delete_volume(self, volume_id):
        self._call("delete_volume", volume_id)
        self.volumes.pop(volume_id, None)

    def get_action(self, action_id):
        self._call("get_action", action_id)
        return ActionInfo(id=action_id, status="success")

    def list_ssh_keys(self, name=None):
        self._call("list_ssh_keys", name)
        return [k for k in self.ssh_keys.values() if name is None or k.name == name]

    def update_ssh_key_labels(self, key_id, labels):
        self._call("update_ssh_key_labels", key_id, dict(labels))
        self.ssh_keys[key_id].labels = dict(labels)
        return self.ssh_keys[key_id]

    def get_image(self, name):
        self._call("get_image", name)
        return {"id": 1, "name": name}

    def get_location(self, name):
        self._call("get_location", name)
        return {"id": 1, "name": name}

    def list_server_types(self):
        self._call("list_server_types")
        return list(self.server_types)


# ── Guest ────────────────────────────────────────────────────────

class FakeProcess:
    def __init__(self, command: str, stdout: str = "", lines=None, polls: int = 0,
                 exit_code: int = 0, connection_lost: bool = False):
        self.command = command
        self.stdout = stdout
        self.exit_code = exit_code
        self.connection_lost = connection_lost
        self._lines = list(lines or [])
        self._polls = polls
        self.closed = False

    @property
    def done(self) -> bool:
        if self._polls > 0:
            self._polls -= 1
            return False
        return True

    def lines(self):
        for line in self._lines:
            yield line

    def wait(self) -> ExecResult:
        return ExecResult(command=self.command, exit_code=self.exit_code, stdout=self.stdout,
                          stderr="", success=self.exit_code == 0, duration_ms=1.0)

    def close(self):
        self.closed = True


class FakeGuest:
    """
    A scripted build server.

    ``probes`` holds one entry per completion probe: a status payload
    string, or a RemoteError raised when the probe opens its channel.
    """

    def __init__(self):
        self.commands = []
        self.puts = []
        self.dirs = []
        self.files = set()
        self.exit_codes = {"mountpoint": 1}
        self.probes = deque()
        self.log_lines = ["[ham] starting build", "[ham] build finished"]
        self.on_build = None
        self.sessions = 0

    def run(self, command: str) -> int:
        self.commands.append(command)
        if command.startswith("test -e "):
            return 0 if command.split(" ", 2)[2].strip("'") in self.files else 1
        if command.startswith("touch "):
            self.files.add(command.split(" ", 1)[1])
        if "ham build" in command and self.on_build is not None:
            self.on_build()
        for prefix, code in self.exit_codes.items():
            if command.startswith(prefix):
                return code
        return 0

    def ran(self, fragment: str) -> int:
        return sum(1 for c in self.commands if fragment in c)


class FakeSession:
    def __init__(self, guest: FakeGuest, host: str):
        self.guest = guest
        self.host = host
        self.connected = False

    def connect(self):
        self.guest.sessions += 1
        self.connected = True

    def close(self):
        self.connected = False

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def run(self, command, check=True, timeout=None):
        code = self.guest.run(command)
        if check and code != 0:
            raise RemoteCommandError(command, code)
        return ExecResult(command=command, exit_code=code, stdout="", stderr="",
                          success=code == 0, duration_ms=1.0, host=self.host)

    def exists(self, path):
        return self.run(f"test -e {path}", check=False).exit_code == 0

    def put(self, local_path, remote_path):
        self.guest.puts.append((local_path, remote_path))

    def mkdir_p(self, remote_dir):
        self.guest.dirs.append(remote_dir)

    def start(self, command):
        if command == TAIL_COMMAND:
            return FakeProcess(command, lines=self.guest.log_lines)
        if command == WAIT_COMMAND:
            item = self.guest.probes.popleft()
            if isinstance(item, RemoteError):
                raise item
            if isinstance(item, FakeProcess):
                return item
            return FakeProcess(command, stdout=item)
        self.guest.commands.append(command)
        return FakeProcess(command)


class FakeSessionFactory:
    def __init__(self, guest: FakeGuest):
        self.guest = guest
        self.hosts = []

    def __call__(self, host: str, sleep=None) -> FakeSession:
        self.hosts.append(host)
        return FakeSession(self.guest, host)


class SleepRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


# ── Fixtures ─────────────────────────────────────────────────────

@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def guest():
    return FakeGuest()


@pytest.fixture
def session_factory(guest):
    return FakeSessionFactory(guest)


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def ham_config(tmp_path, settings):
    path = tmp_path / ".ham.json"
    path.write_text('{"api_key": "token"}', encoding="utf-8")
    return HamConfig(api_key="token", ssh_public_key=PUBLIC_KEY,
                     ssh_private_key="unused", path=path, settings=settings)


@pytest.fixture
def recipe_dir(tmp_path):
    directory = tmp_path / "recipe"
    directory.mkdir()
    (directory / "ham.yml").write_text(
        "title: Test ROM\nversion: 1.0.0\nargs: []\n", encoding="utf-8",
    )
    (directory / "build.sh").write_text("#!/bin/sh\necho build\n", encoding="utf-8")
    return directory
