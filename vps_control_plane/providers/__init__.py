"""
External Provider Adapters
==========================

- Proxmox VE (hypervisor, REST via httpx)
- OVHcloud (virtual MAC allocator, signed REST via httpx)
"""

from .base import ComputeProvisioner, NetworkIdentityProvisioner
from .ovh import OVHProvider
from .proxmox import ProxmoxProvider

__all__ = [
    "ComputeProvisioner",
    "NetworkIdentityProvisioner",
    "OVHProvider",
    "ProxmoxProvider",
]
