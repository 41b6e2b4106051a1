"""
VPS Control Plane
=================

Payment-driven provisioning and management for Proxmox-hosted VPS instances.

This package provides:
- Address pool reservation with atomic state transitions
- OVH virtual MAC allocation
- Proxmox template cloning, sizing and cloud-init
- Saga-style provisioning with compensation on failure
- Idempotent Stripe webhook handling
- Ownership-checked power control
"""

__version__ = "1.0.0"
