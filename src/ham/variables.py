"""
Build variables: collecting the recipe's arguments and packaging them
for the build server.

Values and secrets end up in a small JSON document (``vars.json``).
File arguments are uploaded one by one to ``/ham-files/<n>`` and the
document only holds that destination path. Everything here runs before
any server exists, so a bad file path fails fast and costs nothing.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import yaml

from .errors import MissingFileError, MissingVariableError, UserDeclinedError
from .recipe import Argument, ArgumentKind, Recipe

logger = logging.getLogger(__name__)

REMOTE_FILES_DIR = "/ham-files"
REMOTE_VARS_PATH = f"{REMOTE_FILES_DIR}/vars.json"

# Returns the answer, "" to skip an optional argument, or None when the user declines.
Prompt = Callable[[Argument], Optional[str]]


@dataclass(frozen=True)
class Variable:
    value: str
    kind: ArgumentKind


@dataclass
class BuildVariables:
    """Resolved arguments in recipe declaration order."""
    vars: Dict[str, Variable] = field(default_factory=dict)

    def put(self, name: str, value: str, kind: ArgumentKind):
        self.vars[name] = Variable(value=value, kind=kind)

    def to_document(self) -> Tuple[Dict[str, str], Dict[str, str]]:
        """
        Return (document, uploads).

        ``uploads`` maps each remote destination to the local file copied
        there; the Nth file argument (counting from 1) goes to
        ``/ham-files/N``, even when two arguments name the same file.
        """
        document: Dict[str, str] = {}
        uploads: Dict[str, str] = {}
        file_index = 0
        for name, var in self.vars.items():
            if var.kind is ArgumentKind.FILE:
                file_index += 1
                destination = f"{REMOTE_FILES_DIR}/{file_index}"
                document[name] = destination
                uploads[destination] = var.value
            elif var.value:
                document[name] = var.value
        return document, uploads


def load_answers(path: str | Path) -> Dict[str, str]:
    """Load a pre-supplied answers document (JSON or YAML mapping)."""
    with Path(path).open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise MissingVariableError(f"Answers document {path} must be a mapping")
    return {str(k): "" if v is None else str(v) for k, v in data.items()}


def _check_file(argument: Argument, value: str) -> str:
    path = os.path.expanduser(value)
    if not os.path.isfile(path):
        raise MissingFileError(
            f"File given for {argument.id!r} does not exist: {value}"
        )
    return os.path.abspath(path)


def collect_variables(
    recipe: Recipe,
    answers: Optional[Mapping[str, Any]] = None,
    prompt: Optional[Prompt] = None,
    no_confirm: bool = False,
) -> BuildVariables:
    """
    Resolve every recipe argument.

    Order: the answers document, then (unless ``no_confirm`` is set and
    the argument is optional) the interactive prompt.
    """
    answers = answers or {}
    build_vars = BuildVariables()

    for argument in recipe.args:
        value: Optional[str] = None
        if argument.id in answers and answers[argument.id] not in (None, ""):
            value = str(answers[argument.id])
        elif no_confirm and not argument.required:
            logger.info(f"Skipping optional argument {argument.id} (non-interactive)")
            continue
        elif prompt is not None:
            value = prompt(argument)
            if value is None:
                raise UserDeclinedError(f"User declined to answer {argument.id!r}")
        elif argument.required:
            raise MissingVariableError(f"No value for required argument {argument.id!r}")

        if not value:
            if argument.required:
                raise MissingVariableError(f"Required argument {argument.id!r} is empty")
            continue

        if argument.kind is ArgumentKind.FILE:
            value = _check_file(argument, value)
        build_vars.put(argument.id, value, argument.kind)

    logger.info(f"Collected {len(build_vars.vars)}/{len(recipe.args)} build variables")
    return build_vars


def write_document(document: Dict[str, str], path: str | Path):
    with Path(path).open("w", encoding="utf-8") as handle:
        json.dump(document, handle, indent=2)
    os.chmod(path, 0o600)
