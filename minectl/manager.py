"""
minectl Lifecycle Façade
========================

Caller-facing entry point. Selects a driver by backend id and forwards
lifecycle calls to it unchanged. All orchestration lives in the drivers.
"""

import logging
from typing import List, Optional

from .config import MinectlConfig, get_config
from .errors import ResourceNotFoundError
from .logging_config import OperationLogger
from .providers import (
    MinectlProviderInterface,
    ProviderRegistry,
    ResourceDescriptor,
    ServerSpec,
    TeardownReport,
)

logger = logging.getLogger(__name__)


class ServerManager:
    """Run create/delete/list/update against one selected backend."""

    def __init__(self, provider: MinectlProviderInterface):
        self.provider = provider
        self.log = OperationLogger(logger, {"provider": provider.PROVIDER_ID})

    @classmethod
    def for_provider(
        cls,
        provider_id: str,
        config: Optional[MinectlConfig] = None,
        cancel_event=None,
    ) -> "ServerManager":
        """
        Build a manager for a backend id.

        Args:
            provider_id: Backend identifier ('hetzner', 'gce', 'do')
            config: Configuration, loaded from the environment when omitted
            cancel_event: threading.Event that aborts in-flight waits when set

        Raises:
            ProviderError: Unknown backend id
            PreconditionError: Backend credentials missing or unreadable
        """
        driver = ProviderRegistry.instantiate(
            provider_id,
            config or get_config(),
            cancel_event=cancel_event,
        )
        return cls(driver)

    @property
    def provider_id(self) -> str:
        return self.provider.PROVIDER_ID

    def create_server(self, spec: ServerSpec) -> ResourceDescriptor:
        log = self.log.bind(server=spec.name, operation="create")
        log.info(f"Creating {spec.name}")
        descriptor = self.provider.create_server(spec)
        log.info(f"Created {descriptor}")
        return descriptor

    def delete_server(
        self,
        server_id: str,
        spec: ServerSpec,
        ignore_missing: bool = True,
    ) -> TeardownReport:
        """
        Tear down an instance and its volume, firewall and SSH key.

        Args:
            server_id: Backend instance id
            spec: Spec the instance was created from (names the auxiliaries)
            ignore_missing: Treat already-deleted resources as success

        Raises:
            ResourceNotFoundError: Something was missing and ignore_missing is False
        """
        log = self.log.bind(server=spec.name, operation="delete")
        log.info(f"Deleting {spec.name} ({server_id})")
        report = self.provider.delete_server(server_id, spec)
        for resource in report.missing:
            log.info(f"{resource} was already gone")
        if report.missing and not ignore_missing:
            raise ResourceNotFoundError(
                self.provider_id,
                f"already gone: {', '.join(report.missing)}",
                resource=server_id,
            )
        return report

    def list_servers(self) -> List[ResourceDescriptor]:
        return self.provider.list_servers()

    def update_server(self, server_id: str, spec: ServerSpec) -> None:
        self.log.bind(server=spec.name, operation="update").info(f"Updating {spec.name} ({server_id})")
        self.provider.update_server(server_id, spec)
