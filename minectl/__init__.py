"""
minectl
=======

Provision, update, list and tear down game-server instances across
Hetzner Cloud, Google Compute Engine and DigitalOcean behind one
lifecycle contract.
"""

__version__ = "0.5.0"
