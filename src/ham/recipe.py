"""
Recipes: what to build plus the inputs the build needs.

A recipe is a directory holding ``ham.yml`` (or ``ham.yaml``)::

    title: LineageOS 18.1 for enchilada
    version: 1.0.0
    args:
      - id: github_token
        prompt: GitHub token used to fetch private blobs
        type: secret
      - id: signing_key
        prompt: Path to the release signing key
        type: file
        required: false

The recipe may live locally or in a git repository; remote locations
use the short forms ``user@gh/repo[:branch]`` and ``~@gh/repo`` (the
community organisation) or a full git URL with an optional ``:branch``.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional, Tuple

import yaml

from .errors import RecipeNotFoundError

logger = logging.getLogger(__name__)

RECIPE_FILES = ("ham.yml", "ham.yaml")
COMMUNITY_ORG = "ham-community"


class ArgumentKind(Enum):
    VALUE = "value"
    SECRET = "secret"
    FILE = "file"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "ArgumentKind":
        raw = (raw or "").strip().lower()
        for kind in cls:
            if raw == kind.value:
                return kind
        return cls.VALUE


@dataclass(frozen=True)
class Argument:
    id: str
    prompt: str
    kind: ArgumentKind = ArgumentKind.VALUE
    required: bool = True


@dataclass(frozen=True)
class Recipe:
    title: str
    version: str
    content_hash: str
    args: Tuple[Argument, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class RecipeSource:
    """Where the recipe came from; git sources are cloned again on the guest."""
    location: str
    directory: Path
    git_url: Optional[str] = None
    git_branch: Optional[str] = None

    @property
    def is_git(self) -> bool:
        return self.git_url is not None


def load_recipe(directory: str | Path) -> Recipe:
    """Parse the recipe file in ``directory``."""
    root = Path(directory)
    for name in RECIPE_FILES:
        path = root / name
        if path.is_file():
            break
    else:
        raise RecipeNotFoundError(f"No {' or '.join(RECIPE_FILES)} in {root}")

    content = path.read_bytes()
    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        raise RecipeNotFoundError(f"Invalid recipe file {path}: {e}") from e
    if not isinstance(data, dict):
        raise RecipeNotFoundError(f"Invalid recipe file {path}: expected a mapping")

    args = []
    for raw in data.get("args") or []:
        if not raw.get("id"):
            raise RecipeNotFoundError(f"Recipe argument without id in {path}")
        args.append(Argument(
            id=str(raw["id"]),
            prompt=str(raw.get("prompt", raw["id"])),
            kind=ArgumentKind.parse(raw.get("type")),
            required=bool(raw.get("required", True)),
        ))

    return Recipe(
        title=str(data.get("title", root.name)),
        version=str(data.get("version", "0")),
        content_hash=hashlib.sha256(content).hexdigest(),
        args=tuple(args),
    )


def parse_git_remote(remote: str) -> Tuple[str, str]:
    """
    Split a recipe location into (git url, branch).

    ``antony-jr@gh/enchilada:dev`` -> (``https://github.com/antony-jr/enchilada``, ``dev``)
    ``~@gh/enchilada``             -> (``https://github.com/ham-community/enchilada``, ``""``)
    """
    scheme = ""
    rest = remote
    if "://" in remote:
        scheme, rest = remote.split("://", 1)

    url, branch = rest, ""
    head, sep, tail = rest.rpartition(":")
    if sep and "/" not in tail and tail:
        url, branch = head, tail

    if scheme:
        url = f"{scheme}://{url}"

    parts = url.split("/") if not scheme else []
    if len(parts) != 2:
        return url, branch

    user, repo = parts
    uname, at, host = user.partition("@")
    if not at or host.lower() != "gh":
        return url, branch

    if uname == "~":
        return f"https://github.com/{COMMUNITY_ORG}/{repo}", branch
    return f"https://github.com/{uname}/{repo}", branch


def _git(*args: str):
    result = subprocess.run(["git", *args], capture_output=True, text=True)
    if result.returncode != 0:
        raise RecipeNotFoundError(f"git {' '.join(args[:2])} failed: {result.stderr.strip()[:300]}")


def clone_recipe(url: str, branch: str = "") -> Path:
    """Clone a recipe repository into a fresh temp dir and return it."""
    directory = Path(tempfile.mkdtemp(suffix="-ham-recipe"))
    logger.info(f"Cloning {url} into {directory}")
    try:
        _git("clone", url, str(directory))
        if branch:
            _git("-C", str(directory), "checkout", branch)
    except RecipeNotFoundError:
        shutil.rmtree(directory, ignore_errors=True)
        raise
    return directory


@contextmanager
def open_recipe_source(
    location: str,
    clone: Callable[[str, str], Path] = clone_recipe,
) -> Iterator[RecipeSource]:
    """
    Resolve a recipe location to a local directory for the duration of
    the block. Cloned directories are removed on exit.
    """
    if os.path.exists(location):
        if not os.path.isdir(location):
            raise RecipeNotFoundError(f"Recipe location is not a directory: {location}")
        yield RecipeSource(location=location, directory=Path(location))
        return

    url, branch = parse_git_remote(location)
    logger.info(f"Recipe {location} is not local; using git {url} (branch={branch or 'default'})")
    directory = clone(url, branch)
    try:
        yield RecipeSource(location=location, directory=directory,
                           git_url=url, git_branch=branch or None)
    finally:
        shutil.rmtree(directory, ignore_errors=True)
