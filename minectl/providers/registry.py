"""
minectl Provider Registry
=========================

Two lookups live here: the fixed table of short backend ids to display
names used in messages, and the decorator-populated table of driver
classes the façade instantiates by id.
"""

import logging
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Type

from ..errors import ProviderError

logger = logging.getLogger(__name__)

PROVIDER_NAMES: Mapping[str, str] = MappingProxyType({
    "do": "DigitalOcean",
    "civo": "Civo",
    "scaleway": "Scaleway",
    "hetzner": "Hetzner",
    "linode": "Linode",
    "ovh": "OVHcloud",
    "equinix": "Equinix Metal",
    "gce": "Google Compute Engine",
})


def get_provider_full_name(provider_id: str) -> str:
    """Display name for a backend id, empty string when unknown."""
    return PROVIDER_NAMES.get(provider_id, "")


class ProviderRegistry:
    """
    Registry of available backend drivers.

    Driver modules register themselves on import through
    @register_provider; minectl.providers imports all of them.
    """

    _providers: Dict[str, Type] = {}

    @classmethod
    def register(cls, provider_class: Type) -> None:
        """
        Register a driver class under its PROVIDER_ID.

        Args:
            provider_class: Class implementing MinectlProviderInterface
        """
        cls._providers[provider_class.PROVIDER_ID] = provider_class

    @classmethod
    def get_provider_class(cls, provider_id: str) -> Optional[Type]:
        return cls._providers.get(provider_id)

    @classmethod
    def list_providers(cls) -> List[Dict[str, str]]:
        """
        List all registered drivers.

        Returns:
            List of {"id", "name"} dicts
        """
        return [
            {
                "id": provider_id,
                "name": get_provider_full_name(provider_id) or provider_id,
            }
            for provider_id in sorted(cls._providers)
        ]

    @classmethod
    def instantiate(cls, provider_id: str, config, cancel_event=None):
        """
        Build a driver for provider_id from configuration.

        Args:
            provider_id: Backend identifier (e.g. 'hetzner', 'gce', 'do')
            config: MinectlConfig holding credentials and tuning
            cancel_event: Optional threading.Event aborting long waits

        Returns:
            Configured driver

        Raises:
            ProviderError: If no driver is registered under provider_id
        """
        provider_class = cls.get_provider_class(provider_id)
        if not provider_class:
            raise ProviderError(
                provider_id,
                f"Provider not supported: {provider_id}. "
                f"Available: {sorted(cls._providers)}"
            )

        logger.debug(f"Instantiating {provider_class.__name__} for {provider_id}")
        return provider_class.from_config(config, cancel_event=cancel_event)


def register_provider(provider_class: Type) -> Type:
    """
    Decorator to register a driver class.

    Usage:
        @register_provider
        class HetznerProvider(MinectlProviderInterface):
            ...
    """
    ProviderRegistry.register(provider_class)
    return provider_class
