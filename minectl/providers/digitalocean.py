"""
minectl DigitalOcean Provider Adapter
=====================================

DigitalOcean integration using direct REST API calls via httpx.

Volume, key and firewall creation complete synchronously. Droplet
creation and volume detach return an action id which is polled until
"completed". The firewall is scoped to the system tag, so it covers
every droplet minectl creates.

API Docs: https://docs.digitalocean.com/reference/api/api-reference/
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..errors import (
    PreconditionError,
    ProviderAuthError,
    ProviderError,
    ProviderTransientError,
    ResourceNotFoundError,
)
from ..template import TemplateFormat, TemplateRenderer
from .base import (
    INSTANCE_TAG,
    MinectlProviderInterface,
    ResourceDescriptor,
    ServerSpec,
    TeardownReport,
    derive_auxiliary_names,
    tags_to_string,
)
from .registry import register_provider

logger = logging.getLogger(__name__)

DEFAULT_IMAGE = "ubuntu-22-04-x64"
PAGE_SIZE = 200


@register_provider
class DigitalOceanProvider(MinectlProviderInterface):
    """DigitalOcean driver: account key, block volume, droplet, cloud firewall."""

    PROVIDER_ID = "do"
    LOGIN_USER = "root"

    API_BASE_URL = "https://api.digitalocean.com/v2"

    def __init__(self, client: httpx.Client, image: str = DEFAULT_IMAGE, **kwargs):
        """
        Args:
            client: httpx.Client with base_url and bearer auth configured
            image: Droplet image slug
            **kwargs: Passed through to MinectlProviderInterface
        """
        kwargs.setdefault("renderer", TemplateRenderer(mount="sda"))
        super().__init__(**kwargs)
        self.client = client
        self.image = image

    @classmethod
    def from_config(cls, config, cancel_event=None) -> "DigitalOceanProvider":
        if not config.providers.digitalocean:
            raise PreconditionError("DIGITALOCEAN_TOKEN is not set")
        client = httpx.Client(
            base_url=cls.API_BASE_URL,
            headers={
                "Authorization": f"Bearer {config.providers.digitalocean}",
                "Content-Type": "application/json",
            },
            timeout=30.0,
        )
        return cls(
            client,
            poller=config.polling.build_poller(cancel_event),
            retry_attempts=config.retry.attempts,
            retry_max_wait=config.retry.max_wait,
        )

    def _translate_error(self, action: str, error: Exception) -> ProviderError:
        if isinstance(error, httpx.TransportError):
            return ProviderTransientError(self.PROVIDER_ID, f"{action} failed: {error}")
        return super()._translate_error(action, error)

    def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        """Make one authenticated API request, mapping status codes to errors."""
        response = self.client.request(method=method, url=endpoint, json=data, params=params)

        if response.status_code in (401, 403):
            raise ProviderAuthError(self.PROVIDER_ID, f"{method} {endpoint}: authentication failed")
        if response.status_code == 404:
            raise ResourceNotFoundError(self.PROVIDER_ID, f"{method} {endpoint}: not found")
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderTransientError(
                self.PROVIDER_ID,
                f"{method} {endpoint}: HTTP {response.status_code}",
            )
        if response.status_code >= 400:
            error_msg = f"HTTP {response.status_code}"
            try:
                error_msg = response.json().get("message", error_msg)
            except ValueError:
                pass
            raise ProviderError(self.PROVIDER_ID, f"{method} {endpoint}: {error_msg}")

        if response.content:
            return response.json()
        return {}

    def _request(self, action: str, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        return self._call(action, self._make_request, method, endpoint, **kwargs)

    # =========================================
    # HELPERS
    # =========================================

    def _await_action(self, action_id: int, description: str) -> None:
        self._wait(
            "get action",
            lambda: self._make_request("GET", f"/actions/{action_id}")["action"],
            done={"completed"},
            failed={"errored"},
            status=lambda action: action["status"],
            description=description,
        )

    @staticmethod
    def _public_ip(droplet: Dict[str, Any]) -> str:
        for network in droplet.get("networks", {}).get("v4", []):
            if network.get("type") == "public":
                return network.get("ip_address", "")
        return ""

    def _describe(self, droplet: Dict[str, Any]) -> ResourceDescriptor:
        return ResourceDescriptor(
            id=str(droplet["id"]),
            name=droplet["name"],
            region=droplet.get("region", {}).get("slug", ""),
            public_ip=self._public_ip(droplet),
            tags=tags_to_string(droplet.get("tags", [])),
        )

    def _list_all(self, action: str, endpoint: str, key: str, params: Optional[Dict] = None) -> List[Dict]:
        """Collect every page of a list endpoint, following links.pages.next."""
        items = []
        page = 1
        while True:
            query = {"per_page": PAGE_SIZE, "page": page}
            query.update(params or {})
            response = self._request(action, "GET", endpoint, params=query)
            items.extend(response.get(key, []))
            if not response.get("links", {}).get("pages", {}).get("next"):
                return items
            page += 1

    def _tagged_droplets(self) -> List[Dict[str, Any]]:
        droplets = self._list_all("list droplets", "/droplets", "droplets", {"tag_name": INSTANCE_TAG})
        return [d for d in droplets if self._is_tagged(d.get("tags"))]

    def _find_droplet(self, server_id: str) -> Optional[Dict[str, Any]]:
        """Droplet with that id carrying the system tag, else None."""
        try:
            droplet = self._request("get droplet", "GET", f"/droplets/{server_id}")["droplet"]
        except ResourceNotFoundError:
            return None
        if not self._is_tagged(droplet.get("tags")):
            logger.warning(f"[do] Droplet {server_id} is not tagged {INSTANCE_TAG}, ignoring")
            return None
        return droplet

    def _find_by_name(self, action: str, endpoint: str, key: str, name: str, params=None) -> List[Dict]:
        return [item for item in self._list_all(action, endpoint, key, params) if item.get("name") == name]

    # =========================================
    # LIFECYCLE
    # =========================================

    def create_server(self, spec: ServerSpec) -> ResourceDescriptor:
        public_key = self._prepare(spec)
        names = derive_auxiliary_names(spec.name)
        user_data = self.renderer.render(spec, TemplateFormat.CLOUD_CONFIG)

        logger.info(f"[do] Registering SSH key {names.ssh_key}")
        key = self._request(
            "create ssh key",
            "POST",
            "/account/keys",
            data={"name": names.ssh_key, "public_key": public_key},
        )["ssh_key"]

        logger.info(f"[do] Creating {spec.volume_size}GB volume {names.volume} in {spec.region}")
        volume = self._request(
            "create volume",
            "POST",
            "/volumes",
            data={
                "name": names.volume,
                "size_gigabytes": spec.volume_size,
                "region": spec.region,
                "filesystem_type": "ext4",
                "tags": [INSTANCE_TAG],
            },
        )["volume"]

        logger.info(f"[do] Creating droplet {spec.name} ({spec.size})")
        response = self._request(
            "create droplet",
            "POST",
            "/droplets",
            data={
                "name": spec.name,
                "region": spec.region,
                "size": spec.size,
                "image": self.image,
                "ssh_keys": [key["id"]],
                "volumes": [volume["id"]],
                "user_data": user_data,
                "tags": [INSTANCE_TAG, spec.edition],
                "monitoring": True,
            },
        )
        droplet_id = response["droplet"]["id"]
        for action in response.get("links", {}).get("actions", []):
            self._await_action(action["id"], f"create droplet {spec.name}")
        self._wait(
            "get droplet",
            lambda: self._make_request("GET", f"/droplets/{droplet_id}")["droplet"],
            done={"active"},
            status=lambda droplet: droplet["status"],
            description=f"droplet {spec.name} active",
        )

        logger.info(f"[do] Creating firewall {names.firewall}")
        self._request(
            "create firewall",
            "POST",
            "/firewalls",
            data={
                "name": names.firewall,
                "inbound_rules": [
                    {"protocol": "tcp", "ports": "0", "sources": {"addresses": ["0.0.0.0/0", "::/0"]}},
                    {"protocol": "udp", "ports": "0", "sources": {"addresses": ["0.0.0.0/0", "::/0"]}},
                ],
                "outbound_rules": [
                    {"protocol": "tcp", "ports": "0", "destinations": {"addresses": ["0.0.0.0/0", "::/0"]}},
                    {"protocol": "udp", "ports": "0", "destinations": {"addresses": ["0.0.0.0/0", "::/0"]}},
                    {"protocol": "icmp", "destinations": {"addresses": ["0.0.0.0/0", "::/0"]}},
                ],
                "tags": [INSTANCE_TAG],
            },
        )

        matches = [d for d in self._tagged_droplets() if d["name"] == spec.name]
        droplet = self._single_match(matches, spec.name)
        logger.info(f"[do] Droplet {spec.name} active ({droplet['id']})")
        return self._describe(droplet)

    def delete_server(self, server_id: str, spec: ServerSpec) -> TeardownReport:
        names = derive_auxiliary_names(spec.name)
        report = TeardownReport(server_id=server_id)
        droplet = self._find_droplet(server_id)

        def remove_volume():
            volumes = self._find_by_name(
                "list volumes", "/volumes", "volumes", names.volume,
                params={"name": names.volume, "region": spec.region},
            )
            if not volumes:
                raise ResourceNotFoundError(self.PROVIDER_ID, "volume not found", resource=names.volume)
            for volume in volumes:
                for attached_id in volume.get("droplet_ids") or []:
                    action = self._request(
                        "detach volume",
                        "POST",
                        f"/volumes/{volume['id']}/actions",
                        data={"type": "detach", "droplet_id": attached_id, "region": spec.region},
                    )["action"]
                    self._await_action(action["id"], f"detach {names.volume}")
                self._request("delete volume", "DELETE", f"/volumes/{volume['id']}")

        def remove_droplet():
            if droplet is None:
                raise ResourceNotFoundError(self.PROVIDER_ID, "droplet not found", resource=server_id)
            self._request("delete droplet", "DELETE", f"/droplets/{server_id}")

        def remove_firewall():
            rules = self._find_by_name("list firewalls", "/firewalls", "firewalls", names.firewall)
            if not rules:
                raise ResourceNotFoundError(self.PROVIDER_ID, "firewall not found", resource=names.firewall)
            for rule in rules:
                self._request("delete firewall", "DELETE", f"/firewalls/{rule['id']}")

        def remove_ssh_key():
            keys = self._find_by_name("list ssh keys", "/account/keys", "ssh_keys", names.ssh_key)
            if not keys:
                raise ResourceNotFoundError(self.PROVIDER_ID, "ssh key not found", resource=names.ssh_key)
            for key in keys:
                self._request("delete ssh key", "DELETE", f"/account/keys/{key['id']}")

        self._teardown_step(report, names.volume, remove_volume)
        self._teardown_step(report, f"droplet {server_id}", remove_droplet)
        self._teardown_step(report, names.firewall, remove_firewall)
        self._teardown_step(report, names.ssh_key, remove_ssh_key)
        return report

    def list_servers(self) -> List[ResourceDescriptor]:
        return [self._describe(droplet) for droplet in self._tagged_droplets()]

    def update_server(self, server_id: str, spec: ServerSpec) -> None:
        droplet = self._find_droplet(server_id)
        if droplet is None:
            raise ResourceNotFoundError(self.PROVIDER_ID, "droplet not found", resource=server_id)
        self._dispatch_update(self._public_ip(droplet) or None, self.LOGIN_USER, spec, server_id)

    def __del__(self):
        """Cleanup HTTP client."""
        if hasattr(self, "client"):
            self.client.close()
