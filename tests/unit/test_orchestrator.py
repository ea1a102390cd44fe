#!/usr/bin/env python3
"""
Unit tests for the build orchestrator (end-to-end against the fakes)
"""

import json
import sys
import pytest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from conftest import FakeSession
from ham.bootstrap import PACKAGE_COMMANDS, SENTINEL_PATH
from ham.destroy import KeepFlags
from ham.errors import (
    AlreadyBuiltError, CloudError, RemoteCommandError, SSHKeyMismatchError, TerminalBuildError,
    UserDeclinedError,
)
from ham.identity import name_for
from ham.labels import BuildOutcome
from ham.orchestrator import BuildOptions, BuildOrchestrator
from ham.recipe import load_recipe
from ham.variables import REMOTE_VARS_PATH

OK = '{"status": "successful"}'


@pytest.fixture
def identity(recipe_dir):
    return name_for(load_recipe(recipe_dir).content_hash)


@pytest.fixture
def agent(cloud, guest, identity):
    """The remote agent: records success on the label store when the build starts."""
    guest.on_build = lambda: cloud.set_label(identity, "successful")
    guest.probes.append(OK)
    return guest


def _orchestrator(ham_config, cloud, session_factory, sleep, **kwargs):
    return BuildOrchestrator(ham_config, client=cloud, session_factory=session_factory,
                             sleep=sleep, **kwargs)


class TestHappyPath:

    def test_creates_bootstraps_builds_and_tracks(self, ham_config, cloud, agent,
                                                   session_factory, sleep, recipe_dir, identity):
        orchestrator = _orchestrator(ham_config, cloud, session_factory, sleep)
        result = orchestrator.get(str(recipe_dir), BuildOptions(no_confirm=True))

        assert result.outcome is BuildOutcome.SUCCESSFUL
        assert result.identity == identity
        assert result.created is True
        assert result.destroy_armed is False
        assert cloud.count("create_server") == 1
        assert cloud.count("create_volume") == 1
        assert agent.ran(PACKAGE_COMMANDS[0]) == 1
        assert agent.ran("ham build") == 1
        assert 10 in sleep.calls
        assert [s.name for s in cloud.servers.values()] == [identity]

    def test_result_serializes(self, ham_config, cloud, agent, session_factory, sleep,
                               recipe_dir):
        result = _orchestrator(ham_config, cloud, session_factory, sleep).get(
            str(recipe_dir), BuildOptions(no_confirm=True))
        d = result.to_dict()
        assert d["outcome"] == "successful"
        assert any(step["action"] == "start_build" for step in d["steps"])

    def test_confirm_shows_price(self, ham_config, cloud, agent, session_factory, sleep,
                                 recipe_dir):
        messages = []

        def confirm(message):
            messages.append(message)
            return True

        _orchestrator(ham_config, cloud, session_factory, sleep, confirm=confirm).get(
            str(recipe_dir))
        assert messages == ["Create a CCX33 server at 55.00/month?"]

    def test_vars_document_uploaded_and_removed(self, ham_config, cloud, agent,
                                                session_factory, sleep, recipe_dir):
        _orchestrator(ham_config, cloud, session_factory, sleep).get(
            str(recipe_dir), BuildOptions(no_confirm=True))
        local_vars = [local for local, remote in agent.puts if remote == REMOTE_VARS_PATH]
        assert len(local_vars) == 1
        assert not Path(local_vars[0]).exists()

    def test_recipe_arguments_answered(self, ham_config, cloud, agent, session_factory,
                                       sleep, recipe_dir, monkeypatch):
        (recipe_dir / "ham.yml").write_text(
            "title: Args\nversion: 1\nargs:\n  - id: device\n    prompt: Device\n",
            encoding="utf-8",
        )
        identity = name_for(load_recipe(recipe_dir).content_hash)
        agent.on_build = lambda: cloud.set_label(identity, "successful")
        captured = {}
        original_put = FakeSession.put

        def put(session, local, remote):
            if remote == REMOTE_VARS_PATH:
                captured.update(json.loads(Path(local).read_text(encoding="utf-8")))
            original_put(session, local, remote)

        monkeypatch.setattr(FakeSession, "put", put)
        _orchestrator(ham_config, cloud, session_factory, sleep).get(
            str(recipe_dir), BuildOptions(no_confirm=True, answers={"device": "enchilada"}))
        assert captured == {"device": "enchilada"}

    def test_keep_server_passed_to_agent(self, ham_config, cloud, agent, session_factory,
                                         sleep, recipe_dir):
        options = BuildOptions(no_confirm=True, keep=KeepFlags(on_build_failure=True))
        _orchestrator(ham_config, cloud, session_factory, sleep).get(str(recipe_dir), options)
        assert agent.ran("ham build --keep-server") == 1


class TestExistingServer:

    def test_reuses_initialized_server_without_bootstrap(self, ham_config, cloud, guest,
                                                         session_factory, sleep, recipe_dir,
                                                         identity):
        cloud.add_server(identity)
        guest.files.add(SENTINEL_PATH)
        cloud.set_label(identity, "inprogress")
        guest.probes.append(OK)

        result = _orchestrator(ham_config, cloud, session_factory, sleep).get(
            str(recipe_dir), BuildOptions(no_confirm=True))

        assert result.reused is True
        assert result.outcome is BuildOutcome.IN_PROGRESS
        assert cloud.count("create_server") == 0
        assert guest.ran("apt-get") == 0
        assert guest.ran("ham build") == 0

    def test_finishes_half_bootstrapped_server(self, ham_config, cloud, agent, session_factory,
                                               sleep, recipe_dir, identity):
        server = cloud.add_server(identity)

        result = _orchestrator(ham_config, cloud, session_factory, sleep).get(
            str(recipe_dir), BuildOptions(no_confirm=True))

        assert result.reused is True
        assert result.outcome is BuildOutcome.SUCCESSFUL
        assert cloud.count("create_server") == 0
        assert agent.ran(PACKAGE_COMMANDS[0]) == 1
        assert agent.ran("ham build") == 1
        assert SENTINEL_PATH in agent.files
        assert server.id in cloud.servers

    def test_reused_server_failure_destroys(self, ham_config, cloud, guest, session_factory,
                                            sleep, recipe_dir, identity):
        server = cloud.add_server(identity)
        guest.files.add(SENTINEL_PATH)
        cloud.set_label(identity, "failed")
        guest.probes.append(OK)
        with pytest.raises(TerminalBuildError):
            _orchestrator(ham_config, cloud, session_factory, sleep).get(
                str(recipe_dir), BuildOptions(no_confirm=True))
        assert server.id not in cloud.servers


class TestCreationRace:

    def _rival_creates_first(self, cloud, identity):
        def create_volume(request):
            cloud.calls.append(("create_volume", request.name))
            cloud.add_server(identity)
            cloud.set_label(identity, "successful")
            raise CloudError("volume name is already used", status_code=409,
                             code="uniqueness_error")
        cloud.create_volume = create_volume

    def test_follows_rival_server(self, ham_config, cloud, guest, session_factory, sleep,
                                  recipe_dir, identity):
        self._rival_creates_first(cloud, identity)
        guest.probes.append(OK)

        result = _orchestrator(ham_config, cloud, session_factory, sleep).get(
            str(recipe_dir), BuildOptions(no_confirm=True))

        assert result.reused is True
        assert result.created is False
        assert result.outcome is BuildOutcome.SUCCESSFUL
        assert [s.name for s in cloud.servers.values()] == [identity]
        assert cloud.count("delete_server") == 0
        assert guest.ran("ham build") == 0

    def test_interrupted_while_joining_spares_rival(self, ham_config, cloud, guest,
                                                    session_factory, sleep, recipe_dir, identity):
        self._rival_creates_first(cloud, identity)
        rival_ids = []

        def interrupt(name, policy):
            rival_ids.extend(s.id for s in cloud.servers.values())
            raise KeyboardInterrupt()

        orchestrator = _orchestrator(ham_config, cloud, session_factory, sleep)
        orchestrator.lifecycle.wait_for_existing = interrupt
        with pytest.raises(KeyboardInterrupt):
            orchestrator.get(str(recipe_dir), BuildOptions(no_confirm=True))
        assert list(cloud.servers) == rival_ids
        assert cloud.count("delete_server") == 0

    def test_conflict_without_rival_server_raises(self, ham_config, cloud, guest,
                                                  session_factory, sleep, recipe_dir):
        cloud.fail("create_volume", CloudError("name already used", status_code=409,
                                               code="uniqueness_error"))
        with pytest.raises(CloudError):
            _orchestrator(ham_config, cloud, session_factory, sleep).get(
                str(recipe_dir), BuildOptions(no_confirm=True))
        assert cloud.count("delete_server") == 0
        assert sleep.calls == [3] * 19


class TestPreconditions:

    def test_previous_build_refused(self, ham_config, cloud, guest, session_factory, sleep,
                                    recipe_dir, identity):
        cloud.set_label(identity, "successful")
        with pytest.raises(AlreadyBuiltError):
            _orchestrator(ham_config, cloud, session_factory, sleep).get(
                str(recipe_dir), BuildOptions(no_confirm=True))
        assert cloud.count("create_volume") == 0

    def test_force_clears_previous_status(self, ham_config, cloud, agent, session_factory,
                                          sleep, recipe_dir, identity):
        cloud.set_label(identity, "failed")
        result = _orchestrator(ham_config, cloud, session_factory, sleep).get(
            str(recipe_dir), BuildOptions(no_confirm=True, force=True))
        assert result.outcome is BuildOutcome.SUCCESSFUL
        assert cloud.count("update_ssh_key_labels") == 1

    def test_declined_confirmation(self, ham_config, cloud, guest, session_factory, sleep,
                                   recipe_dir):
        with pytest.raises(UserDeclinedError):
            _orchestrator(ham_config, cloud, session_factory, sleep,
                          confirm=lambda message: False).get(str(recipe_dir))
        assert cloud.count("create_volume") == 0
        assert cloud.servers == {}

    def test_ssh_key_mismatch(self, ham_config, cloud, guest, session_factory, sleep,
                              recipe_dir):
        cloud.ssh_keys[1].fingerprint = "00:11"
        with pytest.raises(SSHKeyMismatchError):
            _orchestrator(ham_config, cloud, session_factory, sleep).get(
                str(recipe_dir), BuildOptions(no_confirm=True))
        assert cloud.count("list_servers") == 0

    def test_reaps_dead_servers(self, ham_config, cloud, agent, session_factory, sleep,
                                recipe_dir):
        dead = cloud.add_server(name_for("some-old-recipe"), status="off")
        _orchestrator(ham_config, cloud, session_factory, sleep).get(
            str(recipe_dir), BuildOptions(no_confirm=True))
        assert dead.id not in cloud.servers


class TestFailureCleanup:

    def test_bootstrap_failure_destroys_server(self, ham_config, cloud, guest, session_factory,
                                               sleep, recipe_dir):
        guest.exit_codes[PACKAGE_COMMANDS[0]] = 100
        with pytest.raises(RemoteCommandError):
            _orchestrator(ham_config, cloud, session_factory, sleep).get(
                str(recipe_dir), BuildOptions(no_confirm=True))
        assert cloud.count("create_server") == 1
        assert cloud.servers == {}
        assert cloud.volumes == {}

    def test_bootstrap_failure_kept_with_keep_flag(self, ham_config, cloud, guest,
                                                   session_factory, sleep, recipe_dir):
        guest.exit_codes[PACKAGE_COMMANDS[0]] = 100
        with pytest.raises(RemoteCommandError):
            _orchestrator(ham_config, cloud, session_factory, sleep).get(
                str(recipe_dir), BuildOptions(no_confirm=True, keep=KeepFlags(keep=True)))
        assert len(cloud.servers) == 1

    def test_interrupt_after_create_destroys(self, ham_config, cloud, guest, session_factory,
                                             sleep, recipe_dir):
        def interrupt():
            raise KeyboardInterrupt()

        guest.on_build = interrupt
        with pytest.raises(KeyboardInterrupt):
            _orchestrator(ham_config, cloud, session_factory, sleep).get(
                str(recipe_dir), BuildOptions(no_confirm=True))
        assert cloud.servers == {}


class TestTestingMode:

    def test_uses_given_address_without_cloud_resources(self, ham_config, cloud, agent,
                                                        session_factory, sleep, recipe_dir):
        options = BuildOptions(no_confirm=True, testing_address="192.0.2.50",
                               agent_binary="/build/ham")
        result = _orchestrator(ham_config, cloud, session_factory, sleep).get(
            str(recipe_dir), options)

        assert result.outcome is BuildOutcome.SUCCESSFUL
        assert result.created is False
        assert result.address == "192.0.2.50"
        assert cloud.count("create_server") == 0
        assert cloud.count("list_servers") == 0
        assert set(session_factory.hosts) == {"192.0.2.50"}
        assert ("/build/ham", "/usr/bin/ham") in agent.puts
        assert agent.ran("mount ") == 0
