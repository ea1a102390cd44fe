#!/usr/bin/env python3
"""
Deployment Pipeline — one-time guest setup and build start

Bootstrap is idempotent and safe to re-enter: it ends by writing a
sentinel file, and any later run that finds the sentinel skips the
whole phase. A failure part-way leaves the guest as it is; the next run
simply repeats the steps (each of them tolerates being run twice).

Guest layout:
- /ham-build           build tree (data volume mounted here)
- /ham-recipe          recipe checkout or mirror
- /ham-files           file arguments and vars.json
- /ham-output          agent log and status document
- /root/.ham.json      mirror of the local credential file
- /tmp/ham.init.finished   sentinel
"""

import logging
import os
import posixpath
import shlex
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

from .config import DEFAULT_AGENT_URL
from .recipe import RecipeSource
from .variables import REMOTE_VARS_PATH

logger = logging.getLogger(__name__)

SENTINEL_PATH = "/tmp/ham.init.finished"
CONFIG_MIRROR_PATH = "/root/.ham.json"
AGENT_PATH = "/usr/bin/ham"
BUILD_DIR = "/ham-build"
RECIPE_DIR = "/ham-recipe"
FILES_DIR = "/ham-files"
OUTPUT_DIR = "/ham-output"
WORK_DIRS = (BUILD_DIR, RECIPE_DIR, FILES_DIR, OUTPUT_DIR)
LOG_PATH = f"{OUTPUT_DIR}/ham.log"
STATUS_PATH = f"{OUTPUT_DIR}/status.json"
MOUNT_POINT = BUILD_DIR
MOUNT_OPTIONS = "defaults,noatime,nodiratime,data=writeback"

APT = "DEBIAN_FRONTEND=noninteractive apt-get"
PACKAGE_COMMANDS = (
    f"{APT} update -y -qq",
    f"{APT} upgrade -y -qq",
    f"{APT} install -y -qq git wget curl",
)


@dataclass
class DeploymentPlan:
    """Everything bootstrap pushes to the guest."""
    source: RecipeSource
    vars_path: str
    config_path: Path
    uploads: Dict[str, str] = field(default_factory=dict)
    volume_device: Optional[str] = None
    agent_binary: Optional[str] = None


def build_command(content_hash: str, keep_server: bool) -> str:
    """Command line that starts the agent detached from the SSH session."""
    keep = " --keep-server" if keep_server else ""
    return (
        f"setsid nohup ham build{keep} --sum {shlex.quote(content_hash)} "
        f"--recipe {RECIPE_DIR} --vars {REMOTE_VARS_PATH} "
        f"< /dev/null > {LOG_PATH} 2>&1 &"
    )


class Bootstrapper:
    """Pushes a recipe and its inputs to a build server and starts the build."""

    def __init__(self, session_factory: Callable, agent_url: str = DEFAULT_AGENT_URL):
        self.session_factory = session_factory
        self.agent_url = agent_url

    def initialized(self, address: str) -> bool:
        with self.session_factory(address) as shell:
            return shell.exists(SENTINEL_PATH)

    def bootstrap(self, address: str, plan: DeploymentPlan) -> bool:
        """
        Initialize the guest. Returns False when the sentinel shows it
        was already initialized and nothing was done.
        """
        with ExitStack() as stack:
            shell = stack.enter_context(self.session_factory(address))
            files = stack.enter_context(self.session_factory(address))

            if shell.exists(SENTINEL_PATH):
                logger.info(f"{address} already initialized; skipping bootstrap")
                return False

            logger.info(f"Bootstrapping {address}")
            for command in PACKAGE_COMMANDS:
                shell.run(command)

            self._install_agent(shell, files, plan.agent_binary)
            files.put(str(plan.config_path), CONFIG_MIRROR_PATH)
            shell.run(f"chmod 600 {CONFIG_MIRROR_PATH}")
            shell.run("mkdir -p " + " ".join(WORK_DIRS))

            self._deploy_recipe(shell, files, plan.source)

            for remote_path, local_path in plan.uploads.items():
                files.put(local_path, remote_path)
            files.put(plan.vars_path, REMOTE_VARS_PATH)

            if plan.volume_device:
                self._mount_volume(shell, plan.volume_device)

            shell.run(f"touch {SENTINEL_PATH}")
            logger.info(f"Bootstrap of {address} finished")
        return True

    def _install_agent(self, shell, files, agent_binary: Optional[str]):
        if agent_binary:
            files.put(agent_binary, AGENT_PATH)
        else:
            shell.run(f"wget -q -O {AGENT_PATH} {shlex.quote(self.agent_url)}")
        shell.run(f"chmod a+x {AGENT_PATH}")

    def _deploy_recipe(self, shell, files, source: RecipeSource):
        if source.is_git:
            shell.run(f"rm -rf {RECIPE_DIR}")
            shell.run(f"git clone {shlex.quote(source.git_url)} {RECIPE_DIR}")
            if source.git_branch:
                shell.run(f"git -C {RECIPE_DIR} checkout {shlex.quote(source.git_branch)}")
            return

        root = os.path.abspath(source.directory)
        count = 0
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if d != ".git"]
            relative = os.path.relpath(dirpath, root)
            remote_dir = RECIPE_DIR if relative == "." else posixpath.join(
                RECIPE_DIR, *relative.split(os.sep))
            files.mkdir_p(remote_dir)
            for name in sorted(filenames):
                files.put(os.path.join(dirpath, name), posixpath.join(remote_dir, name))
                count += 1
        logger.info(f"Mirrored {count} recipe files to {RECIPE_DIR}")

    def _mount_volume(self, shell, device: str):
        if shell.run(f"mountpoint -q {MOUNT_POINT}", check=False).exit_code == 0:
            logger.info(f"{MOUNT_POINT} already mounted")
            return
        quoted = shlex.quote(device)
        if shell.run(f"blkid {quoted}", check=False).exit_code != 0:
            shell.run(f"mkfs.ext4 -F -q {quoted}")
        shell.run(f"mount -o {MOUNT_OPTIONS} {quoted} {MOUNT_POINT}")
        logger.info(f"Mounted {device} on {MOUNT_POINT}")

    def start_build(self, address: str, content_hash: str, keep_server: bool):
        """Start the remote build agent once; it keeps running after we disconnect."""
        with self.session_factory(address) as shell:
            shell.run(build_command(content_hash, keep_server))
        logger.info(f"Build started on {address} (keep_server={keep_server})")
