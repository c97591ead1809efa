"""
minectl Provider Base Classes and Interfaces
============================================

Defines the lifecycle contract every backend driver must implement,
the value types flowing through it, and the helpers drivers share:
per-call retry with error translation, name-derived auxiliary
resources, best-effort teardown bookkeeping and the exactly-one-match
check run after every create.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Container, Iterable, List, Mapping, Optional, Sequence, TypeVar

from ..errors import (
    PreconditionError,
    ProviderError,
    ProvisioningAmbiguousError,
    ResourceNotFoundError,
)
from ..poller import OperationPoller, PollResult
from ..remote import RemoteServer
from ..retry import DEFAULT_ATTEMPTS, DEFAULT_MAX_WAIT, call_with_retry
from ..template import TemplateRenderer

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Every instance created by minectl carries this tag/label.
INSTANCE_TAG = "minectl"


@dataclass(frozen=True)
class ServerSpec:
    """Desired game-server instance, identical input for every backend."""
    name: str
    region: str
    size: str
    volume_size: int
    edition: str
    ssh_key_path: str
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Freeze the extension fields along with the rest of the value.
        object.__setattr__(self, "extra", MappingProxyType(dict(self.extra)))

    @property
    def public_key_path(self) -> str:
        return f"{self.ssh_key_path}.pub"

    def validate(self) -> None:
        if not self.name or not self.name.strip():
            raise PreconditionError("Server name must not be empty")

    def read_public_key(self) -> str:
        """
        Read the SSH public key next to the configured private key.

        Raises:
            PreconditionError: If the .pub file is missing or unreadable
        """
        try:
            return Path(self.public_key_path).read_text().strip()
        except OSError as e:
            raise PreconditionError(
                f"Cannot read SSH public key {self.public_key_path}: {e}"
            ) from e


@dataclass(frozen=True)
class ResourceDescriptor:
    """Backend-independent view of a provisioned instance."""
    id: str
    name: str
    region: str
    public_ip: str
    tags: str

    def __str__(self) -> str:
        return f"{self.name} ({self.id}) {self.public_ip} [{self.region}] {self.tags}"


@dataclass(frozen=True)
class AuxiliaryNames:
    volume: str
    firewall: str
    ssh_key: str


def derive_auxiliary_names(name: str) -> AuxiliaryNames:
    """
    Names of the volume, firewall rule and SSH key belonging to an instance.

    Teardown recomputes these from the instance name alone; there is no
    other record linking them.
    """
    return AuxiliaryNames(
        volume=f"{name}-vol",
        firewall=f"{name}-fw",
        ssh_key=f"{name}-ssh",
    )


def tags_to_string(tags: Iterable[str]) -> str:
    """Comma-join tags, system tag first, duplicates dropped."""
    ordered = []
    for tag in tags:
        if tag and tag not in ordered:
            ordered.append(tag)
    if INSTANCE_TAG in ordered:
        ordered.remove(INSTANCE_TAG)
        ordered.insert(0, INSTANCE_TAG)
    return ",".join(ordered)


@dataclass
class TeardownReport:
    """What delete_server removed and what was already gone."""
    server_id: str
    deleted: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing


class MinectlProviderInterface(ABC):
    """
    Abstract lifecycle contract for backend drivers.

    Callers only ever see ServerSpec in, ResourceDescriptor (or a
    MinectlError) out, whatever the backend's own resource model and
    asynchrony look like.
    """

    # Provider metadata (override in subclasses)
    PROVIDER_ID: str = "base"
    LOGIN_USER: str = "root"

    def __init__(
        self,
        renderer: Optional[TemplateRenderer] = None,
        poller: Optional[OperationPoller] = None,
        remote_factory: Callable[..., RemoteServer] = RemoteServer,
        retry_attempts: int = DEFAULT_ATTEMPTS,
        retry_max_wait: float = DEFAULT_MAX_WAIT,
        retry_sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Args:
            renderer: Bootstrap payload renderer
            poller: Waits on asynchronous backend operations
            remote_factory: Builds the remote update dispatcher from
                (ssh_key_path, host, user)
            retry_attempts: Attempts per backend call for transient errors
            retry_max_wait: Backoff ceiling in seconds
            retry_sleep: Sleep used between retries (tests pass a no-op)
        """
        self.renderer = renderer or TemplateRenderer()
        self.poller = poller or OperationPoller()
        self.remote_factory = remote_factory
        self.retry_attempts = retry_attempts
        self.retry_max_wait = retry_max_wait
        self.retry_sleep = retry_sleep

    @classmethod
    @abstractmethod
    def from_config(cls, config, cancel_event=None) -> "MinectlProviderInterface":
        """Build an authenticated driver from MinectlConfig."""
        pass

    # =========================================
    # LIFECYCLE CONTRACT
    # =========================================

    @abstractmethod
    def create_server(self, spec: ServerSpec) -> ResourceDescriptor:
        """
        Provision the instance and its attached resources.

        Returns:
            Descriptor built from the instance as observed after it is running

        Raises:
            PreconditionError: Missing public key or invalid spec
            ProvisioningAmbiguousError: Not exactly one instance matches afterwards
            ProviderError: Any backend failure
        """
        pass

    @abstractmethod
    def delete_server(self, server_id: str, spec: ServerSpec) -> TeardownReport:
        """
        Tear down the instance and its attached resource set.

        Members that are already gone are recorded as missing instead of
        aborting the teardown.
        """
        pass

    @abstractmethod
    def list_servers(self) -> List[ResourceDescriptor]:
        """List instances carrying the system tag, in backend order."""
        pass

    @abstractmethod
    def update_server(self, server_id: str, spec: ServerSpec) -> None:
        """
        Run the remote update procedure on a running instance.

        Raises:
            ResourceNotFoundError: No instance with that id (no SSH attempted)
            RemoteUpdateError: Dispatcher failure
        """
        pass

    # =========================================
    # SHARED HELPERS
    # =========================================

    def _translate_error(self, action: str, error: Exception) -> ProviderError:
        """Map a backend library exception onto the minectl taxonomy."""
        return ProviderError(self.PROVIDER_ID, f"{action} failed: {error}")

    def _call_once(self, action: str, fn: Callable[..., T], *args, **kwargs) -> T:
        """Perform one backend call with error translation and no retry."""
        try:
            return fn(*args, **kwargs)
        except ProviderError:
            raise
        except Exception as e:
            raise self._translate_error(action, e) from e

    def _call(self, action: str, fn: Callable[..., T], *args, **kwargs) -> T:
        """Perform one backend call with error translation and transient retry."""
        return call_with_retry(
            lambda: self._call_once(action, fn, *args, **kwargs),
            attempts=self.retry_attempts,
            max_wait=self.retry_max_wait,
            sleep=self.retry_sleep,
        )

    def _wait(
        self,
        action: str,
        fetch: Callable[[], T],
        done: Container[Any],
        failed: Container[Any] = (),
        status: Callable[[T], Any] = lambda value: value,
        description: str = "operation",
    ) -> PollResult:
        """
        Poll a backend status call until it reports a terminal value.

        Each fetch is a single attempt; a failed status call ends the wait.
        """
        return self.poller.wait(
            lambda: self._call_once(action, fetch),
            done=done,
            failed=failed,
            status=status,
            description=description,
            provider=self.PROVIDER_ID,
        )

    @staticmethod
    def _is_tagged(tags: Optional[Iterable[str]]) -> bool:
        """Whether an instance carries the system tag (label keys or tag list)."""
        return INSTANCE_TAG in (tags or ())

    def _single_match(self, matches: Sequence[T], name: str) -> T:
        if len(matches) != 1:
            raise ProvisioningAmbiguousError(self.PROVIDER_ID, name, len(matches))
        return matches[0]

    def _teardown_step(
        self,
        report: TeardownReport,
        resource: str,
        fn: Callable[[], Any],
    ) -> bool:
        """
        Run one teardown step, recording the resource as deleted or missing.

        Returns:
            True if the step ran, False if the resource was already gone
        """
        try:
            fn()
        except ResourceNotFoundError:
            logger.warning(f"[{self.PROVIDER_ID}] {resource} not found, skipping")
            report.missing.append(resource)
            return False
        logger.info(f"[{self.PROVIDER_ID}] Deleted {resource}")
        report.deleted.append(resource)
        return True

    def _dispatch_update(self, host: Optional[str], user: str, spec: ServerSpec, server_id: str) -> None:
        if not host:
            raise ProviderError(
                self.PROVIDER_ID,
                "instance has no public IPv4 address",
                resource=server_id,
            )
        logger.info(f"[{self.PROVIDER_ID}] Updating {spec.name} at {host} as {user}")
        self.remote_factory(spec.ssh_key_path, host, user).update_server(spec)

    @staticmethod
    def _prepare(spec: ServerSpec) -> str:
        """Validate the spec and return the SSH public key contents."""
        spec.validate()
        return spec.read_public_key()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} ({self.PROVIDER_ID})>"
