"""
minectl Hetzner Cloud Provider Adapter
======================================

Official Hetzner Cloud integration using the hcloud-python SDK.

Hetzner calls return immediately with an action handle; volume
creation, server creation, volume detach and server deletion are each
awaited by polling their action to "success". Hetzner networking is
open by default, so no firewall is created.

Requires: pip install hcloud
Docs: https://hcloud-python.readthedocs.io/
"""

import logging
from typing import List

from hcloud import APIException, Client

from .. import __version__
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

# hcloud error codes worth retrying
TRANSIENT_CODES = {
    "rate_limit_exceeded",
    "conflict",
    "locked",
    "server_error",
    "service_error",
    "timeout",
    "unavailable",
}
AUTH_CODES = {"unauthorized", "forbidden", "token_readonly"}


@register_provider
class HetznerProvider(MinectlProviderInterface):
    """Hetzner Cloud driver: SSH key, ext4 volume, cloud-init server."""

    PROVIDER_ID = "hetzner"
    LOGIN_USER = "root"

    DEFAULT_IMAGE = "ubuntu-22.04"
    VOLUME_FORMAT = "ext4"

    def __init__(self, client: Client, image: str = DEFAULT_IMAGE, **kwargs):
        """
        Args:
            client: Authenticated hcloud Client
            image: Image name to boot from
            **kwargs: Passed through to MinectlProviderInterface
        """
        kwargs.setdefault("renderer", TemplateRenderer(mount="sdb"))
        super().__init__(**kwargs)
        self.client = client
        self.image = image

    @classmethod
    def from_config(cls, config, cancel_event=None) -> "HetznerProvider":
        if not config.providers.hetzner:
            raise PreconditionError("HCLOUD_TOKEN is not set")
        client = Client(
            token=config.providers.hetzner,
            application_name="minectl",
            application_version=__version__,
        )
        return cls(
            client,
            poller=config.polling.build_poller(cancel_event),
            retry_attempts=config.retry.attempts,
            retry_max_wait=config.retry.max_wait,
        )

    def _translate_error(self, action: str, error: Exception) -> ProviderError:
        if isinstance(error, APIException):
            message = f"{action} failed: {error.message} ({error.code})"
            if error.code == "not_found":
                return ResourceNotFoundError(self.PROVIDER_ID, message)
            if error.code in AUTH_CODES:
                return ProviderAuthError(self.PROVIDER_ID, message)
            if error.code in TRANSIENT_CODES:
                return ProviderTransientError(self.PROVIDER_ID, message)
            return ProviderError(self.PROVIDER_ID, message, details={"code": error.code})
        if isinstance(error, OSError):
            # requests' connection errors derive from OSError
            return ProviderTransientError(self.PROVIDER_ID, f"{action} failed: {error}")
        return super()._translate_error(action, error)

    # =========================================
    # HELPERS
    # =========================================

    def _await_action(self, action, description: str) -> None:
        if action is None:
            return
        self._wait(
            "get action",
            lambda: self.client.actions.get_by_id(action.id),
            done={"success"},
            failed={"error"},
            status=lambda a: a.status,
            description=description,
        )

    def _labels(self, spec: ServerSpec) -> dict:
        return {INSTANCE_TAG: "true", spec.edition: "true"}

    def _server_id(self, server_id: str) -> int:
        try:
            return int(server_id)
        except (TypeError, ValueError):
            raise PreconditionError(f"Invalid Hetzner server id: {server_id!r}") from None

    def _find_server(self, server_id: str):
        """Server with that id carrying the system label, else None."""
        try:
            server = self._call("get server", self.client.servers.get_by_id, self._server_id(server_id))
        except ResourceNotFoundError:
            return None
        if not self._is_tagged(server.labels):
            logger.warning(f"[hetzner] Server {server_id} is not labelled {INSTANCE_TAG}, ignoring")
            return None
        return server

    def _describe(self, server) -> ResourceDescriptor:
        ipv4 = server.public_net.ipv4 if server.public_net else None
        return ResourceDescriptor(
            id=str(server.id),
            name=server.name,
            region=server.datacenter.location.name,
            public_ip=ipv4.ip if ipv4 else "",
            tags=tags_to_string(server.labels.keys()),
        )

    def _lookup(self, action: str, fn, name: str):
        found = self._call(action, fn, name)
        if found is None:
            raise ProviderError(self.PROVIDER_ID, f"{action}: not found", resource=name)
        return found

    # =========================================
    # LIFECYCLE
    # =========================================

    def create_server(self, spec: ServerSpec) -> ResourceDescriptor:
        public_key = self._prepare(spec)
        names = derive_auxiliary_names(spec.name)
        user_data = self.renderer.render(spec, TemplateFormat.CLOUD_CONFIG)

        logger.info(f"[hetzner] Registering SSH key {names.ssh_key}")
        ssh_key = self._call(
            "create ssh key",
            self.client.ssh_keys.create,
            name=names.ssh_key,
            public_key=public_key,
            labels={INSTANCE_TAG: "true"},
        )

        location = self._lookup("get location", self.client.locations.get_by_name, spec.region)

        logger.info(f"[hetzner] Creating {spec.volume_size}GB volume {names.volume} in {spec.region}")
        volume_response = self._call(
            "create volume",
            self.client.volumes.create,
            size=spec.volume_size,
            name=names.volume,
            location=location,
            format=self.VOLUME_FORMAT,
            labels={INSTANCE_TAG: "true"},
        )
        self._await_action(volume_response.action, f"volume {names.volume}")

        server_type = self._lookup("get server type", self.client.server_types.get_by_name, spec.size)
        image = self._call(
            "get image",
            self.client.images.get_by_name_and_architecture,
            self.image,
            server_type.architecture,
        )
        if image is None:
            raise ProviderError(self.PROVIDER_ID, "image not found", resource=self.image)

        logger.info(f"[hetzner] Creating server {spec.name} ({spec.size})")
        response = self._call(
            "create server",
            self.client.servers.create,
            name=spec.name,
            server_type=server_type,
            image=image,
            location=location,
            ssh_keys=[ssh_key],
            volumes=[volume_response.volume],
            user_data=user_data,
            labels=self._labels(spec),
            automount=True,
        )
        self._await_action(response.action, f"create server {spec.name}")

        server_id = response.server.id
        self._wait(
            "get server",
            lambda: self.client.servers.get_by_id(server_id),
            done={"running"},
            status=lambda s: s.status,
            description=f"server {spec.name} running",
        )

        matches = [
            server
            for server in self._call(
                "list servers",
                self.client.servers.get_all,
                name=spec.name,
                label_selector=INSTANCE_TAG,
            )
            if server.name == spec.name
        ]
        server = self._single_match(matches, spec.name)
        logger.info(f"[hetzner] Server {spec.name} running ({server.id})")
        return self._describe(server)

    def delete_server(self, server_id: str, spec: ServerSpec) -> TeardownReport:
        names = derive_auxiliary_names(spec.name)
        report = TeardownReport(server_id=server_id)
        server = self._find_server(server_id)

        def remove_volume():
            volume = self._call("get volume", self.client.volumes.get_by_name, names.volume)
            if volume is None:
                raise ResourceNotFoundError(self.PROVIDER_ID, "volume not found", resource=names.volume)
            if volume.server is not None:
                action = self._call("detach volume", self.client.volumes.detach, volume)
                self._await_action(action, f"detach {names.volume}")
            self._call("delete volume", self.client.volumes.delete, volume)

        def remove_server():
            if server is None:
                raise ResourceNotFoundError(self.PROVIDER_ID, "server not found", resource=server_id)
            action = self._call("delete server", self.client.servers.delete, server)
            self._await_action(action, f"delete server {server_id}")

        def remove_ssh_key():
            key = self._call("get ssh key", self.client.ssh_keys.get_by_name, names.ssh_key)
            if key is None:
                raise ResourceNotFoundError(self.PROVIDER_ID, "ssh key not found", resource=names.ssh_key)
            self._call("delete ssh key", self.client.ssh_keys.delete, key)

        self._teardown_step(report, names.volume, remove_volume)
        self._teardown_step(report, f"server {server_id}", remove_server)
        self._teardown_step(report, names.ssh_key, remove_ssh_key)
        return report

    def list_servers(self) -> List[ResourceDescriptor]:
        servers = self._call("list servers", self.client.servers.get_all, label_selector=INSTANCE_TAG)
        return [self._describe(server) for server in servers if self._is_tagged(server.labels)]

    def update_server(self, server_id: str, spec: ServerSpec) -> None:
        server = self._find_server(server_id)
        if server is None:
            raise ResourceNotFoundError(self.PROVIDER_ID, "server not found", resource=server_id)
        ipv4 = server.public_net.ipv4 if server.public_net else None
        self._dispatch_update(ipv4.ip if ipv4 else None, self.LOGIN_USER, spec, server_id)
