"""
minectl Centralized Configuration
=================================

Single source of truth for credentials and tuning values.
Reads from environment variables with sensible defaults.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from .poller import OperationPoller


@dataclass
class ProviderCredentials:
    hetzner: str = ""
    digitalocean: str = ""
    gce_keyfile: str = ""  # path to a service-account JSON key
    gce_zone: str = "europe-west6-a"

    def available_providers(self) -> List[str]:
        providers = []
        if self.hetzner:
            providers.append("hetzner")
        if self.digitalocean:
            providers.append("do")
        if self.gce_keyfile:
            providers.append("gce")
        return providers


@dataclass
class PollingConfig:
    interval: float = 2.0
    timeout: Optional[float] = 900.0  # None/0 waits forever

    def build_poller(self, cancel_event=None) -> OperationPoller:
        return OperationPoller(
            interval=self.interval,
            timeout=self.timeout,
            cancel_event=cancel_event,
        )


@dataclass
class RetryConfig:
    attempts: int = 3
    max_wait: float = 10.0


@dataclass
class MinectlConfig:
    """Master configuration for minectl."""

    providers: ProviderCredentials = field(default_factory=ProviderCredentials)
    polling: PollingConfig = field(default_factory=PollingConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> "MinectlConfig":
        """Load configuration from environment variables."""
        timeout = float(os.environ.get("MINECTL_POLL_TIMEOUT", "900"))
        return cls(
            providers=ProviderCredentials(
                hetzner=os.environ.get("HCLOUD_TOKEN", ""),
                digitalocean=os.environ.get("DIGITALOCEAN_TOKEN", ""),
                gce_keyfile=os.environ.get("GCE_KEY", ""),
                gce_zone=os.environ.get("GCE_ZONE", "europe-west6-a"),
            ),
            polling=PollingConfig(
                interval=float(os.environ.get("MINECTL_POLL_INTERVAL", "2")),
                timeout=timeout or None,
            ),
            retry=RetryConfig(
                attempts=int(os.environ.get("MINECTL_RETRY_ATTEMPTS", "3")),
                max_wait=float(os.environ.get("MINECTL_RETRY_MAX_WAIT", "10")),
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_format=os.environ.get("LOG_FORMAT", "text"),
        )


_config: Optional[MinectlConfig] = None


def get_config() -> MinectlConfig:
    """Get or create the process-wide configuration."""
    global _config
    if _config is None:
        _config = MinectlConfig.from_env()
    return _config
