"""
Durable build-status store backed by labels on a long-lived cloud object.

The cloud account keeps one SSH key (``ham-ssh-key``) around for every
build; its labels are a small key-value map that survives the build
servers. Keys are build identities, values are build outcomes. Callers
only see get/set/list and never reason about SSH-key semantics.
"""

import base64
import binascii
import hashlib
import logging
from enum import Enum
from typing import Dict, Optional

from .cloud import SSHKeyInfo
from .errors import SSHKeyMismatchError

logger = logging.getLogger(__name__)

DEFAULT_KEY_NAME = "ham-ssh-key"


class BuildOutcome(Enum):
    IN_PROGRESS = "inprogress"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @classmethod
    def from_label(cls, value: Optional[str]) -> "BuildOutcome":
        if value is None:
            return cls.UNKNOWN
        for outcome in (cls.IN_PROGRESS, cls.SUCCESSFUL):
            if value == outcome.value:
                return outcome
        return cls.FAILED


def fingerprint(public_key: str) -> str:
    """MD5 colon-hex fingerprint of an OpenSSH public key line."""
    parts = public_key.strip().split()
    if len(parts) < 2:
        raise SSHKeyMismatchError("SSH public key is not in OpenSSH format")
    try:
        blob = base64.b64decode(parts[1].encode("ascii"), validate=True)
    except (binascii.Error, ValueError) as e:
        raise SSHKeyMismatchError(f"SSH public key is not valid base64: {e}") from e
    digest = hashlib.md5(blob).hexdigest()
    return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))


class SSHKeyLabelStore:
    """Key-value store over the labels of one named SSH key."""

    def __init__(self, client, key_name: str = DEFAULT_KEY_NAME):
        self.client = client
        self.key_name = key_name

    def _key(self) -> SSHKeyInfo:
        for key in self.client.list_ssh_keys(name=self.key_name):
            if key.name == self.key_name:
                return key
        raise SSHKeyMismatchError(f"SSH key {self.key_name!r} not found, please re-initialize.")

    def verify(self, public_key: str) -> SSHKeyInfo:
        """Check the cloud key matches the locally configured public key."""
        key = self._key()
        if key.fingerprint != fingerprint(public_key):
            raise SSHKeyMismatchError(
                f"SSH key {self.key_name!r} does not match the configured key, please re-initialize."
            )
        logger.info(f"Verified SSH key {self.key_name}")
        return key

    def list(self) -> Dict[str, str]:
        return dict(self._key().labels)

    def get(self, name: str) -> Optional[str]:
        return self._key().labels.get(name)

    def set(self, name: str, value: str):
        key = self._key()
        labels = dict(key.labels)
        labels[name] = value
        self.client.update_ssh_key_labels(key.id, labels)
        logger.info(f"Label {name}={value} recorded on {self.key_name}")

    def delete(self, name: str):
        key = self._key()
        if name not in key.labels:
            return
        labels = {k: v for k, v in key.labels.items() if k != name}
        self.client.update_ssh_key_labels(key.id, labels)
