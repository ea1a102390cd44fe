"""
Build Identity — deterministic names derived from a recipe's content hash.

The same recipe always maps to the same name, which is what lets two
invocations against one recipe converge on a single cloud server.
"""

import hashlib
import re

PREFIX = "ham-"
DIGEST_CHARS = 48
VOLUME_SUFFIX = "-vol"

_HEX = re.compile(r"^[0-9a-fA-F]{%d,}$" % DIGEST_CHARS)


def name_for(content_hash: str) -> str:
    """
    Return the build identity for a content hash.

    A hex digest is used as-is (lower-cased); anything else is hashed
    with SHA-256 first so the name stays a valid hostname and label key.
    """
    digest = content_hash.strip()
    if not _HEX.match(digest):
        digest = hashlib.sha256(digest.encode("utf-8")).hexdigest()
    return f"{PREFIX}{digest[:DIGEST_CHARS].lower()}"


def volume_name_for(identity: str) -> str:
    return f"{identity}{VOLUME_SUFFIX}"


def is_build_identity(name: str) -> bool:
    return name.startswith(PREFIX) and not name.endswith(VOLUME_SUFFIX)
