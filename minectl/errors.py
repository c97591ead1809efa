"""
minectl Error Taxonomy
======================

Every failure surfaced by minectl derives from MinectlError.
Backend failures carry the backend display name and the resource name
so the message alone is enough to act on.
"""

from typing import Any, Dict, Optional


def backend_message(provider: Optional[str], message: str, resource: Optional[str] = None) -> str:
    """Prefix message with the backend display name and resource, when known."""
    if resource:
        message = f"{resource}: {message}"
    if not provider:
        return message
    # Local import: the registry imports provider modules, which import us.
    from .providers.registry import get_provider_full_name

    label = get_provider_full_name(provider) or provider
    return f"[{label}] {message}"


class MinectlError(Exception):
    """Base exception for all minectl errors."""
    pass


class PreconditionError(MinectlError):
    """Missing key file, unreadable credentials or invalid input. Never retried."""
    pass


class TemplateError(PreconditionError):
    """Bootstrap payload could not be rendered."""
    pass


class ProviderError(MinectlError):
    """Base exception for backend errors."""

    def __init__(
        self,
        provider: str,
        message: str,
        resource: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.provider = provider
        self.message = message
        self.resource = resource
        self.details = details or {}
        super().__init__(self._format())

    def _format(self) -> str:
        return backend_message(self.provider, self.message, self.resource)


class ProviderAuthError(ProviderError):
    """Authentication/authorization error."""
    pass


class ResourceNotFoundError(ProviderError):
    """The targeted backend resource does not exist (or no longer exists)."""
    pass


class ProviderTransientError(ProviderError):
    """Rate limiting, server-side or network errors worth retrying."""
    pass


class ProvisioningError(ProviderError):
    """Create did not yield a usable instance."""
    pass


class ProvisioningAmbiguousError(ProvisioningError):
    """Zero or several instances match a freshly created name."""

    def __init__(self, provider: str, resource: str, matches: int):
        self.matches = matches
        super().__init__(
            provider,
            f"expected exactly one instance after create, found {matches}",
            resource=resource,
            details={"matches": matches},
        )


class OperationError(MinectlError):
    """An awaited backend operation did not succeed."""

    def __init__(
        self,
        message: str,
        polls: int = 0,
        elapsed: float = 0.0,
        provider: Optional[str] = None,
    ):
        self.message = message
        self.polls = polls
        self.elapsed = elapsed
        self.provider = provider
        super().__init__(backend_message(provider, message))


class OperationFailedError(OperationError):
    """The backend reported a terminal failure status."""

    def __init__(
        self,
        message: str,
        status: Any = None,
        polls: int = 0,
        elapsed: float = 0.0,
        provider: Optional[str] = None,
    ):
        self.status = status
        super().__init__(message, polls=polls, elapsed=elapsed, provider=provider)


class OperationTimeoutError(OperationError):
    pass


class OperationCancelledError(OperationError):
    pass


class RemoteUpdateError(MinectlError):
    """Base exception for remote update failures."""

    def __init__(self, host: str, message: str):
        self.host = host
        super().__init__(f"{host}: {message}")


class SSHConnectionError(RemoteUpdateError):
    """Host unreachable or authentication refused. Safe to retry."""
    pass


class RemoteCommandError(RemoteUpdateError):
    """The remote command ran and exited non-zero. Not retried."""

    def __init__(self, host: str, command: str, exit_code: int, stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(host, f"command exited with status {exit_code}: {stderr.strip()}")
