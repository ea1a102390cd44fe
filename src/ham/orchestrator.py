#!/usr/bin/env python3
"""
Build Orchestrator — `ham get` from recipe location to finished build

Ties the pieces together for one invocation:

1. Resolve the recipe (local directory or git clone) and derive its
   build identity.
2. Verify the account's SSH key, reap dead build servers, and look for a
   server already running this identity.
3. No server: collect variables, price and confirm, create the server,
   bootstrap it and start the build. Losing the name to a concurrent run
   of the same recipe means following that run's server instead.
   A reused server whose bootstrap never finished is bootstrapped and
   its build started.
4. Track the build to its final outcome.

A CleanupGuard wraps steps 3-4. It is armed before the server is
created, pinned to the server id once known, and runs on every exit
path, so an interrupted or failed invocation never silently leaves a
billed server behind unless a keep-flag says so.

Usage:
    orchestrator = BuildOrchestrator(load_config())
    result = orchestrator.get("~@gh/enchilada_los18.1")
"""

import getpass
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List, Callable, Iterator, Tuple

from .bootstrap import Bootstrapper, DeploymentPlan
from .cloud import HetznerCloudClient, ServerInfo
from .config import HamConfig
from .destroy import CleanupGuard, KeepFlags, ServerDestroyer, trap_termination_signals
from .errors import AlreadyBuiltError, CloudError, UserDeclinedError
from .identity import name_for
from .labels import BuildOutcome, SSHKeyLabelStore
from .lifecycle import ServerLifecycleManager
from .recipe import Argument, ArgumentKind, Recipe, RecipeSource, clone_recipe, load_recipe, open_recipe_source
from .remote import SessionFactory, load_private_key
from .tracker import ProgressTracker
from .variables import Prompt, collect_variables, write_document

logger = logging.getLogger(__name__)


# ── Data Models ──────────────────────────────────────────────────

@dataclass
class BuildOptions:
    """Per-invocation switches."""
    no_confirm: bool = False
    force: bool = False
    keep: KeepFlags = field(default_factory=KeepFlags)
    answers: Dict[str, Any] = field(default_factory=dict)
    testing_address: Optional[str] = None
    agent_binary: Optional[str] = None
    price_ceiling: Optional[float] = None

    @property
    def testing(self) -> bool:
        return bool(self.testing_address)

    @property
    def keep_server_hint(self) -> bool:
        return self.keep.keep or self.keep.on_build_failure


@dataclass
class AuditEntry:
    """Record of a step taken by the orchestrator."""
    timestamp: float = field(default_factory=time.time)
    action: str = ""
    target: str = ""
    success: bool = True
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BuildResult:
    identity: str
    title: str
    version: str
    address: str
    outcome: BuildOutcome
    created: bool = False
    reused: bool = False
    destroy_armed: bool = False
    steps: List[AuditEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["outcome"] = self.outcome.value
        return d


# ── Orchestrator ─────────────────────────────────────────────────

class BuildOrchestrator:
    """Runs one recipe build end to end against the cloud account."""

    def __init__(
        self,
        config: HamConfig,
        client=None,
        session_factory: Callable = None,
        prompt: Optional[Prompt] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        display: Optional[Callable[[str], None]] = None,
        clone: Callable = clone_recipe,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.settings = config.settings
        self.client = client or HetznerCloudClient(api_token=config.api_key)
        self.session_factory = session_factory or SessionFactory(
            load_private_key(config.ssh_private_key), self.settings.remote, sleep=sleep,
        )
        self.prompt = prompt
        self.confirm = confirm
        self._clone = clone
        self._sleep = sleep

        self.lifecycle = ServerLifecycleManager(self.client, self.settings, sleep=sleep)
        self.destroyer = ServerDestroyer(self.client, self.lifecycle, self.settings, sleep=sleep)
        self.labels = SSHKeyLabelStore(self.client, self.settings.ssh_key_name)
        self.bootstrapper = Bootstrapper(self.session_factory, self.settings.agent_url)
        self.tracker = ProgressTracker(self.session_factory, self.labels, self.settings,
                                       display=display, sleep=sleep)
        self._audit_log: List[AuditEntry] = []

    def _audit(self, action: str, target: str, success: bool = True, detail: str = ""):
        entry = AuditEntry(action=action, target=target, success=success, detail=detail)
        self._audit_log.append(entry)
        level = logging.INFO if success else logging.WARNING
        logger.log(level, f"[AUDIT] {action} {target}: {'ok' if success else 'FAIL'} {detail}")

    # ── Entry points ─────────────────────────────────────────────

    def get(self, location: str, options: BuildOptions = None) -> BuildResult:
        """Build the recipe at ``location`` (path, git URL or short form)."""
        options = options or BuildOptions()
        with trap_termination_signals():
            with open_recipe_source(location, self._clone) as source:
                recipe = load_recipe(source.directory)
                self._audit("parse_recipe", location, detail=f"{recipe.title} {recipe.version}")
                return self.build(recipe, source, options)

    def build(self, recipe: Recipe, source: RecipeSource, options: BuildOptions) -> BuildResult:
        identity = name_for(recipe.content_hash)
        logger.info(f"Recipe {recipe.title} {recipe.version} -> build identity {identity}")

        self.labels.verify(self.config.ssh_public_key)

        server = None
        if not options.testing:
            if self.settings.reap_dead_servers:
                self.destroyer.reap_dead_servers()
            server = self.lifecycle.find_existing(identity)

        result = BuildResult(identity=identity, title=recipe.title, version=recipe.version,
                             address="", outcome=BuildOutcome.UNKNOWN)

        guard = CleanupGuard(self.destroyer, identity, options.keep, self.settings.exit_destroy)
        with guard:
            if server is not None:
                self._adopt(server, guard, result, "reuse_server")
                self._resume(recipe, source, options, identity, server.address)
            else:
                self._provision_and_start(recipe, source, options, identity, guard, result)

            tracked = self.tracker.track(result.address, identity, options.keep,
                                         None if options.testing else guard)
            result.outcome = tracked.outcome
            result.destroy_armed = guard.armed

        result.steps = list(self._audit_log)
        return result

    # ── Provisioning ─────────────────────────────────────────────

    def _check_previous_build(self, identity: str, options: BuildOptions):
        previous = self.labels.get(identity)
        if previous is None:
            return
        if options.testing:
            return
        if not options.force:
            raise AlreadyBuiltError(
                f"A {previous} build already ran for this recipe; use force to build again."
            )
        self.labels.delete(identity)
        self._audit("clear_status", identity, detail=f"previous={previous}")

    def _confirm_create(self, server_type: str, price: float, options: BuildOptions):
        if options.no_confirm:
            return
        message = f"Create a {server_type.upper()} server at {price:.2f}/month?"
        if self.confirm is None or not self.confirm(message):
            raise UserDeclinedError("User declined to create a new server.")

    def _adopt(self, server: ServerInfo, guard: CleanupGuard, result: BuildResult, action: str):
        guard.arm(server.id)
        result.reused = True
        result.address = server.address
        self._audit(action, result.identity, detail=server.address)

    def _create(self, identity: str, options: BuildOptions,
                guard: CleanupGuard) -> Tuple[ServerInfo, bool]:
        """
        Create the server, or join the one a concurrent run of the same
        recipe created first. Returns (server, created).
        """
        price, server_type = self.lifecycle.select_server_type(options.price_ceiling)
        self._confirm_create(server_type.name, price, options)
        guard.arm()
        try:
            server = self.lifecycle.create_server(identity, server_type.name)
        except CloudError as e:
            if not e.is_conflict:
                raise
            guard.disarm(f"{identity} is being created by another run")
            server = self.lifecycle.wait_for_existing(identity, self.settings.remote)
            if server is None:
                raise
            logger.warning(f"Another run created {identity} first; following its build")
            return server, False
        guard.arm(server.id)
        self._audit("create_server", identity, detail=f"{server_type.name} {server.address}")
        return server, True

    def _provision_and_start(self, recipe: Recipe, source: RecipeSource,
                             options: BuildOptions, identity: str,
                             guard: CleanupGuard, result: BuildResult):
        self._check_previous_build(identity, options)
        document, uploads = self._collect(recipe, options)

        volume_device = None
        if options.testing:
            result.address = options.testing_address
            self._audit("testing_server", result.address)
        else:
            server, created = self._create(identity, options, guard)
            if not created:
                self._adopt(server, guard, result, "join_server")
                return
            result.created = True
            result.address = server.address
            volume_device = self.lifecycle.volume_device_for(identity)

        self._deploy(recipe, source, options, identity, result.address, document, uploads,
                     volume_device)

    def _resume(self, recipe: Recipe, source: RecipeSource, options: BuildOptions,
                identity: str, address: str):
        """Finish bootstrapping a reused server that an earlier run left half done."""
        if self.bootstrapper.initialized(address):
            self._audit("bootstrap", address, detail="already initialized")
            return
        logger.warning(f"{address} was never fully initialized; bootstrapping it now")
        document, uploads = self._collect(recipe, options)
        volume_device = self.lifecycle.volume_device_for(identity, required=False)
        self._deploy(recipe, source, options, identity, address, document, uploads,
                     volume_device, resume=True)

    def _collect(self, recipe: Recipe, options: BuildOptions):
        build_vars = collect_variables(recipe, options.answers, self.prompt, options.no_confirm)
        return build_vars.to_document()

    def _deploy(self, recipe: Recipe, source: RecipeSource, options: BuildOptions,
                identity: str, address: str, document: Dict[str, str],
                uploads: Dict[str, str], volume_device: Optional[str], resume: bool = False):
        with _vars_document(document, identity) as vars_path:
            plan = DeploymentPlan(
                source=source,
                vars_path=vars_path,
                config_path=self.config.path,
                uploads=uploads,
                volume_device=volume_device,
                agent_binary=options.agent_binary,
            )
            ran = self.bootstrapper.bootstrap(address, plan)
            self._audit("bootstrap", address, detail="ran" if ran else "already initialized")
            if resume and not ran:
                return

            self.bootstrapper.start_build(address, recipe.content_hash, options.keep_server_hint)
            self._audit("start_build", identity)

        self._sleep(self.settings.build_settle_seconds)

    def get_audit_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        entries = self._audit_log[-limit:]
        return [e.to_dict() for e in reversed(entries)]

    def __repr__(self) -> str:
        return f"BuildOrchestrator(actions={len(self._audit_log)})"


@contextmanager
def _vars_document(document: Dict[str, str], identity: str) -> Iterator[str]:
    """Write the variables document to a private temp file, removed on exit."""
    fd, path = tempfile.mkstemp(prefix=f"{identity}-", suffix="-vars.json")
    os.close(fd)
    try:
        write_document(document, path)
        yield path
    finally:
        os.remove(path)


def terminal_prompt(argument: Argument) -> Optional[str]:
    """Ask for one argument on the terminal; secrets are not echoed."""
    suffix = "" if argument.required else " (optional, press ENTER to skip)"
    question = f"{argument.prompt}{suffix}: "
    try:
        if argument.kind is ArgumentKind.SECRET:
            return getpass.getpass(question)
        return input(question)
    except EOFError:
        return None


def terminal_confirm(message: str) -> bool:
    try:
        return input(f"{message} [y/N] ").strip().lower() in ("y", "yes")
    except EOFError:
        return False


# ── Standalone runner ────────────────────────────────────────────

if __name__ == "__main__":
    import json
    import sys
    from .config import load_config

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")

    if len(sys.argv) != 2:
        print("usage: python -m ham.orchestrator RECIPE_LOCATION")
        sys.exit(2)

    orchestrator = BuildOrchestrator(
        load_config(),
        prompt=terminal_prompt,
        confirm=terminal_confirm,
        display=print,
    )
    build = orchestrator.get(sys.argv[1])
    print(json.dumps(build.to_dict(), indent=2, default=str))
