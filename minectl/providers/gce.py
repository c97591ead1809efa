"""
minectl Google Compute Engine Provider Adapter
==============================================

GCE integration using the google-cloud-compute and google-cloud-os-login
client libraries, authenticated with a service-account JSON key.

Every mutating Compute call returns a long-running operation; the driver
awaits each one by polling the zone (or global, for firewalls) operation
until it is DONE, and a new instance is further polled until it reports
RUNNING. SSH access goes through OS Login, so the public key is
imported for the service account instead of being attached to the
instance, and the login user is the service account's POSIX name.

Requires: pip install google-cloud-compute google-cloud-os-login google-auth
"""

import json
import logging
from pathlib import Path
from typing import List

from google.api_core import exceptions as api_exceptions
from google.cloud import compute_v1, oslogin_v1
from google.oauth2 import service_account

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

IMAGE_URL = "projects/ubuntu-os-cloud/global/images/family/ubuntu-2204-lts"
BOOT_DISK_GB = 10
SERVICE_ACCOUNT_SCOPES = [
    "https://www.googleapis.com/auth/devstorage.full_control",
    "https://www.googleapis.com/auth/compute",
]

TRANSIENT_ERRORS = (
    api_exceptions.TooManyRequests,
    api_exceptions.InternalServerError,
    api_exceptions.BadGateway,
    api_exceptions.ServiceUnavailable,
    api_exceptions.GatewayTimeout,
    api_exceptions.DeadlineExceeded,
)
AUTH_ERRORS = (
    api_exceptions.Unauthenticated,
    api_exceptions.Unauthorized,
    api_exceptions.PermissionDenied,
    api_exceptions.Forbidden,
)


def operation_status(operation) -> str:
    """DONE/PENDING/RUNNING, or FAILED for a DONE operation carrying errors."""
    status = getattr(operation.status, "name", operation.status)
    error = getattr(operation, "error", None)
    if status == "DONE" and error is not None and list(error.errors or []):
        return "FAILED"
    return status


def zone_name(zone_url: str) -> str:
    return zone_url.rstrip("/").rsplit("/", 1)[-1] if zone_url else ""


@register_provider
class GCEProvider(MinectlProviderInterface):
    """Google Compute Engine driver: OS Login key, pd-standard disk, instance, firewall."""

    PROVIDER_ID = "gce"

    def __init__(
        self,
        project_id: str,
        service_account_email: str,
        service_account_id: str,
        zone: str,
        instances_client,
        disks_client,
        firewalls_client,
        zone_operations_client,
        global_operations_client,
        oslogin_client,
        **kwargs,
    ):
        """
        Args:
            project_id: GCP project holding the instances
            service_account_email: client_email of the service account
            service_account_id: client_id of the service account (login user suffix)
            zone: Zone listed by list_servers
            *_client: google-cloud client instances
            **kwargs: Passed through to MinectlProviderInterface
        """
        kwargs.setdefault("renderer", TemplateRenderer(mount="sdb"))
        super().__init__(**kwargs)
        self.project_id = project_id
        self.service_account_email = service_account_email
        self.service_account_id = service_account_id
        self.zone = zone
        self.instances = instances_client
        self.disks = disks_client
        self.firewalls = firewalls_client
        self.zone_operations = zone_operations_client
        self.global_operations = global_operations_client
        self.oslogin = oslogin_client

    @classmethod
    def from_config(cls, config, cancel_event=None) -> "GCEProvider":
        keyfile = config.providers.gce_keyfile
        if not keyfile:
            raise PreconditionError("GCE_KEY is not set")
        try:
            info = json.loads(Path(keyfile).read_text())
            credentials = service_account.Credentials.from_service_account_info(info)
        except OSError as e:
            raise PreconditionError(f"Cannot read GCE credentials {keyfile}: {e}") from e
        except (ValueError, KeyError) as e:
            raise PreconditionError(f"Invalid GCE credentials {keyfile}: {e}") from e
        if not info.get("project_id"):
            raise PreconditionError(f"Invalid GCE credentials {keyfile}: no project_id")

        return cls(
            project_id=info["project_id"],
            service_account_email=credentials.service_account_email,
            service_account_id=info.get("client_id", ""),
            zone=config.providers.gce_zone,
            instances_client=compute_v1.InstancesClient(credentials=credentials),
            disks_client=compute_v1.DisksClient(credentials=credentials),
            firewalls_client=compute_v1.FirewallsClient(credentials=credentials),
            zone_operations_client=compute_v1.ZoneOperationsClient(credentials=credentials),
            global_operations_client=compute_v1.GlobalOperationsClient(credentials=credentials),
            oslogin_client=oslogin_v1.OsLoginServiceClient(credentials=credentials),
            poller=config.polling.build_poller(cancel_event),
            retry_attempts=config.retry.attempts,
            retry_max_wait=config.retry.max_wait,
        )

    @property
    def login_user(self) -> str:
        return f"sa_{self.service_account_id}"

    def _translate_error(self, action: str, error: Exception) -> ProviderError:
        message = f"{action} failed: {error}"
        if isinstance(error, api_exceptions.NotFound):
            return ResourceNotFoundError(self.PROVIDER_ID, message)
        if isinstance(error, AUTH_ERRORS):
            return ProviderAuthError(self.PROVIDER_ID, message)
        if isinstance(error, TRANSIENT_ERRORS):
            return ProviderTransientError(self.PROVIDER_ID, message)
        return super()._translate_error(action, error)

    # =========================================
    # HELPERS
    # =========================================

    def _await_zone_operation(self, zone: str, operation, description: str) -> None:
        self._wait(
            "get zone operation",
            lambda: self.zone_operations.get(
                project=self.project_id,
                zone=zone,
                operation=operation.name,
            ),
            done={"DONE"},
            failed={"FAILED"},
            status=operation_status,
            description=description,
        )

    def _await_global_operation(self, operation, description: str) -> None:
        self._wait(
            "get global operation",
            lambda: self.global_operations.get(
                project=self.project_id,
                operation=operation.name,
            ),
            done={"DONE"},
            failed={"FAILED"},
            status=operation_status,
            description=description,
        )

    def _await_running(self, zone: str, name: str) -> None:
        self._wait(
            "get instance",
            lambda: self.instances.get(project=self.project_id, zone=zone, instance=name),
            done={"RUNNING"},
            failed={"TERMINATED", "SUSPENDED"},
            status=lambda instance: getattr(instance.status, "name", instance.status),
            description=f"instance {name} running",
        )

    def _list_instances(self, zone: str, filter_expr: str) -> list:
        request = compute_v1.ListInstancesRequest(
            project=self.project_id,
            zone=zone,
            filter=filter_expr,
        )
        return list(self._call("list instances", self.instances.list, request=request))

    def _find_instance(self, server_id: str, zone: str):
        """Instance with that id carrying the system label, else None."""
        matches = self._list_instances(zone, f"id = {server_id}")
        if len(matches) != 1:
            return None
        instance = matches[0]
        if not self._is_tagged(instance.labels):
            logger.warning(f"[gce] Instance {server_id} is not labelled {INSTANCE_TAG}, ignoring")
            return None
        return instance

    @staticmethod
    def _public_ip(instance) -> str:
        for interface in instance.network_interfaces:
            for access in interface.access_configs:
                if access.nat_i_p:
                    return access.nat_i_p
        return ""

    def _describe(self, instance) -> ResourceDescriptor:
        return ResourceDescriptor(
            id=str(instance.id),
            name=instance.name,
            region=zone_name(instance.zone),
            public_ip=self._public_ip(instance),
            tags=tags_to_string(instance.tags.items if instance.tags else []),
        )

    def _build_instance(self, spec: ServerSpec, startup_script: str):
        zone = spec.region
        names = derive_auxiliary_names(spec.name)
        return compute_v1.Instance(
            name=spec.name,
            machine_type=f"zones/{zone}/machineTypes/{spec.size}",
            disks=[
                compute_v1.AttachedDisk(
                    auto_delete=True,
                    boot=True,
                    type_="PERSISTENT",
                    disk_size_gb=BOOT_DISK_GB,
                    initialize_params=compute_v1.AttachedDiskInitializeParams(
                        source_image=IMAGE_URL,
                    ),
                ),
                compute_v1.AttachedDisk(
                    source=f"zones/{zone}/disks/{names.volume}",
                ),
            ],
            metadata=compute_v1.Metadata(
                items=[
                    compute_v1.Items(key="enable-oslogin", value="TRUE"),
                    compute_v1.Items(key="startup-script", value=startup_script),
                ],
            ),
            scheduling=compute_v1.Scheduling(
                automatic_restart=True,
                on_host_maintenance="MIGRATE",
                preemptible=False,
            ),
            network_interfaces=[
                compute_v1.NetworkInterface(
                    network="global/networks/default",
                    access_configs=[
                        compute_v1.AccessConfig(type_="ONE_TO_ONE_NAT", name="External NAT"),
                    ],
                ),
            ],
            service_accounts=[
                compute_v1.ServiceAccount(
                    email=self.service_account_email,
                    scopes=SERVICE_ACCOUNT_SCOPES,
                ),
            ],
            labels={INSTANCE_TAG: "true"},
            tags=compute_v1.Tags(items=[INSTANCE_TAG, spec.edition]),
        )

    def _build_firewall(self, spec: ServerSpec):
        return compute_v1.Firewall(
            name=derive_auxiliary_names(spec.name).firewall,
            description="Firewall rule created by minectl",
            network=f"projects/{self.project_id}/global/networks/default",
            allowed=[compute_v1.Allowed(I_p_protocol="tcp")],
            source_ranges=["0.0.0.0/0"],
            direction="INGRESS",
            target_tags=[INSTANCE_TAG],
        )

    # =========================================
    # LIFECYCLE
    # =========================================

    def create_server(self, spec: ServerSpec) -> ResourceDescriptor:
        public_key = self._prepare(spec)
        names = derive_auxiliary_names(spec.name)
        zone = spec.region
        startup_script = self.renderer.render(spec, TemplateFormat.BASH)

        logger.info(f"[gce] Importing SSH key for {self.service_account_email}")
        self._call(
            "import ssh key",
            self.oslogin.import_ssh_public_key,
            request={
                "parent": f"users/{self.service_account_email}",
                "ssh_public_key": {"key": public_key},
                "project_id": self.project_id,
            },
        )

        logger.info(f"[gce] Creating {spec.volume_size}GB disk {names.volume} in {zone}")
        disk_op = self._call(
            "create disk",
            self.disks.insert,
            project=self.project_id,
            zone=zone,
            disk_resource=compute_v1.Disk(
                name=names.volume,
                size_gb=spec.volume_size,
                type_=f"zones/{zone}/diskTypes/pd-standard",
            ),
        )
        self._await_zone_operation(zone, disk_op, f"disk {names.volume}")

        logger.info(f"[gce] Creating instance {spec.name} ({spec.size})")
        instance_op = self._call(
            "create instance",
            self.instances.insert,
            project=self.project_id,
            zone=zone,
            instance_resource=self._build_instance(spec, startup_script),
        )
        self._await_zone_operation(zone, instance_op, f"instance {spec.name}")
        self._await_running(zone, spec.name)

        logger.info(f"[gce] Creating firewall rule {names.firewall}")
        firewall_op = self._call(
            "create firewall",
            self.firewalls.insert,
            project=self.project_id,
            firewall_resource=self._build_firewall(spec),
        )
        self._await_global_operation(firewall_op, f"firewall {names.firewall}")

        matches = self._list_instances(zone, f"name = {spec.name}")
        instance = self._single_match(matches, spec.name)
        logger.info(f"[gce] Instance {spec.name} running ({instance.id})")
        return self._describe(instance)

    def delete_server(self, server_id: str, spec: ServerSpec) -> TeardownReport:
        names = derive_auxiliary_names(spec.name)
        zone = spec.region
        report = TeardownReport(server_id=server_id)
        instance = self._find_instance(server_id, zone)

        def remove_volume():
            disks = list(self._call(
                "list disks",
                self.disks.list,
                request=compute_v1.ListDisksRequest(
                    project=self.project_id,
                    zone=zone,
                    filter=f"name = {names.volume}",
                ),
            ))
            if not disks:
                raise ResourceNotFoundError(self.PROVIDER_ID, "disk not found", resource=names.volume)
            for disk in disks:
                self._detach_disk(instance, zone, disk.name)
                op = self._call(
                    "delete disk",
                    self.disks.delete,
                    project=self.project_id,
                    zone=zone,
                    disk=disk.name,
                )
                self._await_zone_operation(zone, op, f"delete disk {disk.name}")

        def remove_instance():
            if instance is None:
                raise ResourceNotFoundError(self.PROVIDER_ID, "instance not found", resource=server_id)
            op = self._call(
                "delete instance",
                self.instances.delete,
                project=self.project_id,
                zone=zone,
                instance=instance.name,
            )
            self._await_zone_operation(zone, op, f"delete instance {instance.name}")

        def remove_firewall():
            rules = list(self._call(
                "list firewalls",
                self.firewalls.list,
                request=compute_v1.ListFirewallsRequest(
                    project=self.project_id,
                    filter=f"name = {names.firewall}",
                ),
            ))
            if not rules:
                raise ResourceNotFoundError(self.PROVIDER_ID, "firewall not found", resource=names.firewall)
            for rule in rules:
                op = self._call("delete firewall", self.firewalls.delete, project=self.project_id, firewall=rule.name)
                self._await_global_operation(op, f"delete firewall {rule.name}")

        self._teardown_step(report, names.volume, remove_volume)
        self._teardown_step(report, f"instance {server_id}", remove_instance)
        self._teardown_step(report, names.firewall, remove_firewall)
        self._teardown_step(report, names.ssh_key, lambda: self._remove_ssh_key(spec, names.ssh_key))
        return report

    def _detach_disk(self, instance, zone: str, disk_name: str) -> None:
        if instance is None:
            return
        suffix = f"/disks/{disk_name}"
        for attached in instance.disks:
            if attached.source.endswith(suffix) and not attached.boot:
                op = self._call(
                    "detach disk",
                    self.instances.detach_disk,
                    project=self.project_id,
                    zone=zone,
                    instance=instance.name,
                    device_name=attached.device_name,
                )
                self._await_zone_operation(zone, op, f"detach disk {disk_name}")

    def _remove_ssh_key(self, spec: ServerSpec, resource: str) -> None:
        # OS Login keys are unnamed; match the registration by key content.
        try:
            public_key = spec.read_public_key()
        except PreconditionError as e:
            raise ResourceNotFoundError(self.PROVIDER_ID, f"cannot identify key: {e}", resource=resource) from e

        profile = self._call(
            "get login profile",
            self.oslogin.get_login_profile,
            name=f"users/{self.service_account_email}",
        )
        matching = [
            key for key in profile.ssh_public_keys.values()
            if key.key.strip() == public_key
        ]
        if not matching:
            raise ResourceNotFoundError(self.PROVIDER_ID, "ssh key not registered", resource=resource)
        for key in matching:
            self._call("delete ssh key", self.oslogin.delete_ssh_public_key, name=key.name)

    def list_servers(self) -> List[ResourceDescriptor]:
        instances = self._list_instances(self.zone, f"labels.{INSTANCE_TAG} = true")
        return [
            self._describe(instance)
            for instance in instances
            if self._is_tagged(instance.labels)
        ]

    def update_server(self, server_id: str, spec: ServerSpec) -> None:
        instance = self._find_instance(server_id, spec.region)
        if instance is None:
            raise ResourceNotFoundError(self.PROVIDER_ID, "instance not found", resource=server_id)
        self._dispatch_update(self._public_ip(instance) or None, self.login_user, spec, server_id)
