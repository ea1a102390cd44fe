#!/usr/bin/env python3
"""
Server Lifecycle Manager — find-or-create the build server for an identity

One build identity maps to at most one server. Discovery always runs
before creation, and a server that already exists (perhaps created by a
concurrent invocation of the same recipe) is a normal outcome.

Creation order is volume first, then server. If anything after the
volume succeeds fails, the volume is deleted before the error is
re-raised, so this path never leaves a billed orphan behind.

Provider errors are not retried here; they propagate unchanged.
"""

import logging
import time
from typing import Callable, Optional, Tuple

from .cloud import (
    ACTION_ERROR, ACTION_SUCCESS, ActionInfo, ServerInfo, ServerRequest,
    ServerTypeInfo, VolumeInfo, VolumeRequest,
)
from .config import Settings
from .errors import ActionFailedError, CloudError
from .identity import volume_name_for
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class ServerLifecycleManager:
    """Locates, creates and inspects build servers through the cloud client."""

    def __init__(self, client, settings: Settings = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self.settings = settings or Settings()
        self._sleep = sleep

    # ── Discovery ────────────────────────────────────────────────

    def find_existing(self, identity: str) -> Optional[ServerInfo]:
        """Return the server named exactly ``identity``, if one exists."""
        for server in self.client.list_servers(name=identity):
            if server.name == identity:
                logger.info(f"Found existing build server {identity} ({server.address})")
                return server
        return None

    def wait_for_existing(self, identity: str, policy: RetryPolicy) -> Optional[ServerInfo]:
        """Poll for a server another invocation is still creating under ``identity``."""
        for attempt in range(1, policy.attempts + 1):
            server = self.find_existing(identity)
            if server is not None:
                return server
            if attempt < policy.attempts:
                self._sleep(policy.interval)
        return None

    def find_volume(self, identity: str) -> Optional[VolumeInfo]:
        name = volume_name_for(identity)
        for volume in self.client.list_volumes(name=name):
            if volume.name == name:
                return volume
        return None

    def volume_device_for(self, identity: str, required: bool = True) -> Optional[str]:
        """Linux block device the server sees for this identity's volume."""
        volume = self.find_volume(identity)
        if volume is None and not required:
            return None
        if volume is None:
            raise CloudError(f"No volume found for {identity}", status_code=404, code="not_found")
        if volume.linux_device:
            return volume.linux_device
        return f"/dev/disk/by-id/scsi-0HC_Volume_{volume.id}"

    # ── Pricing ──────────────────────────────────────────────────

    def select_server_type(self, price_ceiling: float = None) -> Tuple[float, ServerTypeInfo]:
        """
        Pick the highest-performance server type priced at the target location.

        Returns (gross monthly price, server type).
        """
        ceiling = price_ceiling if price_ceiling is not None else self.settings.price_ceiling
        location = self.settings.location
        candidates = []
        for server_type in self.client.list_server_types():
            price = server_type.monthly_gross.get(location)
            if price is None or server_type.deprecated:
                continue
            if ceiling is not None and price > ceiling:
                continue
            candidates.append((price, server_type))

        if not candidates:
            raise CloudError(f"No server type available at {location}"
                             + (f" under {ceiling:.2f}" if ceiling is not None else ""))

        price, best = max(candidates, key=lambda c: (c[1].performance, -c[0]))
        logger.info(f"Selected server type {best.name} at {price:.2f}/month")
        return price, best

    # ── Actions ──────────────────────────────────────────────────

    def wait_for_action(self, action: Optional[ActionInfo]):
        """Block until an action succeeds; raise ActionFailedError if it errors."""
        current = action
        while current is not None:
            if current.status == ACTION_SUCCESS:
                return
            if current.status == ACTION_ERROR:
                raise ActionFailedError(f"Action Failed ({current.error_message})")
            self._sleep(self.settings.action_poll_interval)
            current = self.client.get_action(current.id)

    # ── Creation ─────────────────────────────────────────────────

    def _ssh_keys(self):
        keys = [self.settings.ssh_key_name]
        default = self.settings.default_key_name
        if default and any(k.name == default for k in self.client.list_ssh_keys(name=default)):
            keys.append(default)
        return keys

    def create_server(self, identity: str, server_type: str) -> ServerInfo:
        """Create the data volume, then the server that mounts it."""
        image = self.client.get_image(self.settings.image)
        location = self.client.get_location(self.settings.location)
        ssh_keys = self._ssh_keys()

        volume_request = VolumeRequest(
            name=volume_name_for(identity),
            size=self.settings.volume_size_gb,
            location=location["name"],
            automount=False,
        )
        volume_request.validate()
        volume, action = self.client.create_volume(volume_request)
        try:
            self.wait_for_action(action)

            server_request = ServerRequest(
                name=identity,
                server_type=server_type,
                image=image.get("name") or str(image["id"]),
                location=location["name"],
                ssh_keys=ssh_keys,
                volume_ids=[volume.id],
            )
            server_request.validate()
            server, action = self.client.create_server(server_request)
            self.wait_for_action(action)
        except CloudError:
            self._rollback_volume(volume)
            raise

        logger.info(f"Created build server {identity} ({server.address}) with volume {volume.name}")
        return server

    def _rollback_volume(self, volume: VolumeInfo):
        try:
            self.client.delete_volume(volume.id)
            logger.warning(f"Rolled back volume {volume.name} after failed server creation")
        except CloudError as e:
            logger.error(f"Could not delete orphaned volume {volume.name} (id={volume.id}): {e}")
