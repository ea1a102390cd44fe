#!/usr/bin/env python3
"""
Hetzner Cloud API Client — compute, storage and key management for ham
Wraps the public API (api.hetzner.cloud/v1) for the operations the
build orchestrator needs.

Implements:
- list_servers(name) -> list[ServerInfo]
- create_server(request) -> (ServerInfo, ActionInfo)
- delete_server(server_id) -> ActionInfo
- list_volumes(name) -> list[VolumeInfo]
- create_volume(request) -> (VolumeInfo, ActionInfo)
- delete_volume(volume_id)
- get_action(action_id) -> ActionInfo
- list_ssh_keys(name) -> list[SSHKeyInfo]
- update_ssh_key_labels(key_id, labels) -> SSHKeyInfo
- get_image(name) -> dict
- get_location(name) -> dict
- list_server_types() -> list[ServerTypeInfo]

Unlike a dashboard client, every failure raises CloudError: callers decide
whether to retry, roll back or give up.
"""

import ipaddress
import logging
import os
import re
import requests
from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass, field, asdict

from .errors import CloudError

logger = logging.getLogger(__name__)

BASE_URL = "https://api.hetzner.cloud/v1"

ACTION_RUNNING = "running"
ACTION_SUCCESS = "success"
ACTION_ERROR = "error"

_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")


@dataclass
class ServerInfo:
    """Server information from the cloud API."""
    id: int
    name: str
    status: str
    ipv4: Optional[str] = None
    ipv6_network: Optional[str] = None
    server_type: Optional[str] = None
    volume_ids: List[int] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    raw: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @property
    def address(self) -> str:
        """Public address to SSH into: IPv4 when enabled, else the first IPv6 host."""
        if self.ipv4:
            return self.ipv4
        if self.ipv6_network:
            network = ipaddress.ip_network(self.ipv6_network, strict=False)
            return str(network.network_address + 1)
        return ""

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("raw", None)
        return d


@dataclass
class VolumeInfo:
    """Block storage volume."""
    id: int
    name: str
    size: int = 0
    linux_device: Optional[str] = None
    server_id: Optional[int] = None
    location: Optional[str] = None


@dataclass
class ActionInfo:
    """Handle of an asynchronous provider action."""
    id: int
    command: str = ""
    status: str = ACTION_RUNNING
    error_message: str = ""

    @property
    def finished(self) -> bool:
        return self.status != ACTION_RUNNING


@dataclass
class SSHKeyInfo:
    """SSH key object; its labels double as the durable build status store."""
    id: int
    name: str
    fingerprint: str = ""
    public_key: str = ""
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class ServerTypeInfo:
    """Server type with its gross monthly price per location."""
    id: int
    name: str
    cores: int = 0
    memory: float = 0.0
    disk: int = 0
    deprecated: bool = False
    monthly_gross: Dict[str, float] = field(default_factory=dict)

    @property
    def performance(self) -> Tuple[int, float, int]:
        return (self.cores, self.memory, self.disk)


@dataclass
class VolumeRequest:
    name: str
    size: int
    location: str
    automount: bool = False
    labels: Dict[str, str] = field(default_factory=dict)

    def validate(self):
        if not _NAME_RE.match(self.name):
            raise CloudError(f"Invalid volume name: {self.name!r}")
        if self.size < 10:
            raise CloudError(f"Volume size must be at least 10 GB (got {self.size})")
        if not self.location:
            raise CloudError("Volume location is required")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size,
            "location": self.location,
            "automount": self.automount,
            "labels": self.labels,
        }


@dataclass
class ServerRequest:
    name: str
    server_type: str
    image: str
    location: str
    ssh_keys: List[str] = field(default_factory=list)
    volume_ids: List[int] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    start_after_create: bool = True
    enable_ipv4: bool = True
    enable_ipv6: bool = False

    def validate(self):
        if not _NAME_RE.match(self.name):
            raise CloudError(f"Invalid server name: {self.name!r}")
        if not self.server_type:
            raise CloudError("Server type is required")
        if not self.image:
            raise CloudError("Server image is required")
        if not self.ssh_keys:
            raise CloudError("At least one SSH key is required")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "server_type": self.server_type,
            "image": self.image,
            "location": self.location,
            "ssh_keys": self.ssh_keys,
            "volumes": self.volume_ids,
            "automount": False,
            "start_after_create": self.start_after_create,
            "labels": self.labels,
            "public_net": {
                "enable_ipv4": self.enable_ipv4,
                "enable_ipv6": self.enable_ipv6,
            },
        }


class HetznerCloudClient:
    """
    Hetzner Cloud API client.

    Used by the orchestrator for:
    - Server discovery, creation and deletion
    - Data volume creation and deletion
    - Action polling
    - SSH key lookup and label updates (build status store)
    - Image, location and server type/price lookup

    Auth: Bearer token from HCLOUD_TOKEN env var or constructor arg.
    """

    DEFAULT_TIMEOUT = 30
    PER_PAGE = 50

    def __init__(self, api_token: str = None, timeout: int = None, base_url: str = None):
        self.api_token = api_token or os.environ.get("HCLOUD_TOKEN")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.base_url = (base_url or BASE_URL).rstrip("/")

        if not self.api_token:
            logger.warning("No Hetzner API token configured. Set HCLOUD_TOKEN env var.")

        self._request_count = 0
        self._error_count = 0

        logger.info(
            f"HetznerCloudClient initialized "
            f"(token={'configured' if self.api_token else 'missing'})"
        )

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Make an authenticated request. Returns the decoded body, raises CloudError."""
        url = f"{self.base_url}{path}"
        self._request_count += 1

        try:
            resp = requests.request(
                method, url,
                headers=self._headers(),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.Timeout as e:
            self._error_count += 1
            logger.error(f"Cloud API timeout: {method} {path}")
            raise CloudError(f"Cloud API timeout: {method} {path}") from e
        except requests.ConnectionError as e:
            self._error_count += 1
            logger.error(f"Cloud API connection error: {method} {path}")
            raise CloudError(f"Cloud API connection error: {method} {path}") from e

        if resp.status_code >= 400:
            self._error_count += 1
            code, message = "", resp.text[:300]
            try:
                error = resp.json().get("error", {})
                code = error.get("code", "")
                message = error.get("message", message)
            except ValueError:
                pass
            logger.warning(
                f"Cloud API error: {method} {path} -> {resp.status_code} {code} {message}"
            )
            raise CloudError(
                f"{method} {path} failed ({resp.status_code} {code}): {message}",
                status_code=resp.status_code, code=code,
            )

        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            self._error_count += 1
            raise CloudError(f"Invalid JSON from {method} {path}") from e

    def _paginate(self, path: str, key: str, params: Dict[str, Any] = None) -> List[Dict[str, Any]]:
        """Collect every page of a list endpoint."""
        params = dict(params or {})
        params["per_page"] = self.PER_PAGE
        page = 1
        items: List[Dict[str, Any]] = []
        while page:
            params["page"] = page
            data = self._request("GET", path, params=params)
            items.extend(data.get(key, []))
            pagination = (data.get("meta") or {}).get("pagination") or {}
            page = pagination.get("next_page")
        return items

    # ── Servers ──────────────────────────────────────────────────

    def list_servers(self, name: str = None) -> List[ServerInfo]:
        """List servers, optionally filtered by exact name."""
        params = {"name": name} if name else {}
        servers = [self._parse_server(s) for s in self._paginate("/servers", "servers", params)]
        logger.info(f"Listed {len(servers)} servers")
        return servers

    def create_server(self, request: ServerRequest) -> Tuple[ServerInfo, Optional[ActionInfo]]:
        request.validate()
        data = self._request("POST", "/servers", json=request.to_payload())
        server = self._parse_server(data.get("server", {}))
        logger.info(f"Server create requested: {server.name} (id={server.id})")
        return server, self._parse_action(data.get("action"))

    def delete_server(self, server_id: int) -> Optional[ActionInfo]:
        data = self._request("DELETE", f"/servers/{server_id}")
        logger.info(f"Server delete requested: id={server_id}")
        return self._parse_action(data.get("action"))

    # ── Volumes ──────────────────────────────────────────────────

    def list_volumes(self, name: str = None) -> List[VolumeInfo]:
        params = {"name": name} if name else {}
        return [self._parse_volume(v) for v in self._paginate("/volumes", "volumes", params)]

    def create_volume(self, request: VolumeRequest) -> Tuple[VolumeInfo, Optional[ActionInfo]]:
        request.validate()
        data = self._request("POST", "/volumes", json=request.to_payload())
        volume = self._parse_volume(data.get("volume", {}))
        logger.info(f"Volume create requested: {volume.name} ({request.size} GB)")
        return volume, self._parse_action(data.get("action"))

    def delete_volume(self, volume_id: int):
        self._request("DELETE", f"/volumes/{volume_id}")
        logger.info(f"Volume deleted: id={volume_id}")

    # ── Actions ──────────────────────────────────────────────────

    def get_action(self, action_id: int) -> ActionInfo:
        data = self._request("GET", f"/actions/{action_id}")
        return self._parse_action(data.get("action", {}))

    # ── SSH Keys ─────────────────────────────────────────────────

    def list_ssh_keys(self, name: str = None) -> List[SSHKeyInfo]:
        params = {"name": name} if name else {}
        return [self._parse_ssh_key(k) for k in self._paginate("/ssh_keys", "ssh_keys", params)]

    def update_ssh_key_labels(self, key_id: int, labels: Dict[str, str]) -> SSHKeyInfo:
        """Replace the full label set of an SSH key."""
        data = self._request("PUT", f"/ssh_keys/{key_id}", json={"labels": labels})
        return self._parse_ssh_key(data.get("ssh_key", {}))

    # ── Images, Locations, Server Types ──────────────────────────

    def get_image(self, name: str) -> Dict[str, Any]:
        images = self._request("GET", "/images", params={"name": name}).get("images", [])
        if not images:
            raise CloudError(f"Image not found: {name}", status_code=404, code="not_found")
        return images[0]

    def get_location(self, name: str) -> Dict[str, Any]:
        locations = self._request("GET", "/locations", params={"name": name}).get("locations", [])
        if not locations:
            raise CloudError(f"Location not found: {name}", status_code=404, code="not_found")
        return locations[0]

    def list_server_types(self) -> List[ServerTypeInfo]:
        return [self._parse_server_type(t) for t in self._paginate("/server_types", "server_types")]

    # ── Helpers ──────────────────────────────────────────────────

    @staticmethod
    def _parse_server(data: Dict[str, Any]) -> ServerInfo:
        public_net = data.get("public_net") or {}
        ipv4 = (public_net.get("ipv4") or {}).get("ip")
        ipv6 = (public_net.get("ipv6") or {}).get("ip")
        server_type = data.get("server_type")
        return ServerInfo(
            id=data.get("id", 0),
            name=data.get("name", ""),
            status=data.get("status", "unknown"),
            ipv4=ipv4,
            ipv6_network=ipv6,
            server_type=server_type.get("name") if isinstance(server_type, dict) else server_type,
            volume_ids=list(data.get("volumes") or []),
            labels=dict(data.get("labels") or {}),
            raw=data,
        )

    @staticmethod
    def _parse_volume(data: Dict[str, Any]) -> VolumeInfo:
        location = data.get("location")
        return VolumeInfo(
            id=data.get("id", 0),
            name=data.get("name", ""),
            size=data.get("size", 0),
            linux_device=data.get("linux_device"),
            server_id=data.get("server"),
            location=location.get("name") if isinstance(location, dict) else location,
        )

    @staticmethod
    def _parse_action(data: Optional[Dict[str, Any]]) -> Optional[ActionInfo]:
        if not data:
            return None
        error = data.get("error") or {}
        return ActionInfo(
            id=data.get("id", 0),
            command=data.get("command", ""),
            status=data.get("status", ACTION_RUNNING),
            error_message=error.get("message", ""),
        )

    @staticmethod
    def _parse_ssh_key(data: Dict[str, Any]) -> SSHKeyInfo:
        return SSHKeyInfo(
            id=data.get("id", 0),
            name=data.get("name", ""),
            fingerprint=data.get("fingerprint", ""),
            public_key=data.get("public_key", ""),
            labels=dict(data.get("labels") or {}),
        )

    @staticmethod
    def _parse_server_type(data: Dict[str, Any]) -> ServerTypeInfo:
        prices = {}
        for price in data.get("prices") or []:
            gross = (price.get("price_monthly") or {}).get("gross")
            if price.get("location") and gross is not None:
                prices[price["location"]] = float(gross)
        return ServerTypeInfo(
            id=data.get("id", 0),
            name=data.get("name", ""),
            cores=data.get("cores", 0),
            memory=float(data.get("memory", 0)),
            disk=data.get("disk", 0),
            deprecated=bool(data.get("deprecated") or data.get("deprecation")),
            monthly_gross=prices,
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get client-side stats."""
        return {
            "token_configured": bool(self.api_token),
            "total_requests": self._request_count,
            "total_errors": self._error_count,
            "error_rate_percent": (
                round(self._error_count / self._request_count * 100, 1)
                if self._request_count > 0 else 0
            ),
        }


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    client = HetznerCloudClient()

    servers = client.list_servers()
    print(f"\nServers ({len(servers)}):")
    for s in servers:
        print(f"  - [{s.id}] {s.name}: {s.status} ({s.address})")

    import json
    print(f"\nClient stats: {json.dumps(client.get_stats(), indent=2)}")
