"""
minectl Provider Abstraction Layer
==================================

One driver per cloud backend behind a shared lifecycle contract.

Supported Providers:
- Hetzner Cloud (hcloud-python)
- Google Compute Engine (google-cloud-compute)
- DigitalOcean (REST via httpx)
"""

from .base import (
    INSTANCE_TAG,
    AuxiliaryNames,
    MinectlProviderInterface,
    ResourceDescriptor,
    ServerSpec,
    TeardownReport,
    derive_auxiliary_names,
)
from .registry import PROVIDER_NAMES, ProviderRegistry, get_provider_full_name, register_provider

# Importing the driver modules registers them.
from . import digitalocean, gce, hetzner  # noqa: E402,F401

__all__ = [
    "INSTANCE_TAG",
    "AuxiliaryNames",
    "MinectlProviderInterface",
    "ResourceDescriptor",
    "ServerSpec",
    "TeardownReport",
    "derive_auxiliary_names",
    "PROVIDER_NAMES",
    "ProviderRegistry",
    "get_provider_full_name",
    "register_provider",
]
