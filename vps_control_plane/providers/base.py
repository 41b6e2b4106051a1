"""
Provider Base Interfaces
========================

Narrow interfaces the orchestrator and control gateway depend on.
Concrete adapters (Proxmox, OVH) live next to this module; tests swap in
recording fakes so every failure point can be simulated without a network.

All methods are blocking. Callers on the event loop wrap them in
asyncio.to_thread.
"""

from abc import ABC, abstractmethod


class ComputeProvisioner(ABC):
    """
    Hypervisor control surface, keyed by (node, vmid).

    Implementations must wrap every failure, including timeouts, in
    ComputeProvisioningError.
    """

    PROVIDER_ID: str = "base"
    PROVIDER_NAME: str = "Base Hypervisor"

    @abstractmethod
    def next_instance_id(self, node: str) -> int:
        """Next free VMID on the node."""

    @abstractmethod
    def clone_template(self, node: str, template_id: int, new_id: int, name: str) -> None:
        """Full (non-linked) clone of a template into a new VMID."""

    @abstractmethod
    def configure_hardware(
        self,
        node: str,
        vmid: int,
        cores: int,
        memory_mib: int,
        network_config: str,
    ) -> None:
        pass

    @abstractmethod
    def resize_disk(self, node: str, vmid: int, disk: str, size_gib: int) -> None:
        pass

    @abstractmethod
    def configure_cloud_init(
        self,
        node: str,
        vmid: int,
        login_user: str,
        password: str,
        ssh_public_key: str,
        address_cidr: str,
        gateway: str,
    ) -> None:
        pass

    @abstractmethod
    def start(self, node: str, vmid: int) -> None:
        pass

    @abstractmethod
    def stop(self, node: str, vmid: int) -> None:
        pass

    @abstractmethod
    def reboot(self, node: str, vmid: int) -> None:
        pass

    @abstractmethod
    def destroy(self, node: str, vmid: int) -> None:
        pass


class NetworkIdentityProvisioner(ABC):
    """
    Network allocator surface, keyed by (address block, address).

    Implementations must wrap every failure, including timeouts, in
    NetworkProvisioningError.
    """

    PROVIDER_ID: str = "base"
    PROVIDER_NAME: str = "Base Allocator"

    @abstractmethod
    def create_virtual_identity(self, block: str, address: str, label: str) -> str:
        """
        Create a virtual MAC bound to ``address`` within ``block``.

        Returns:
            The allocated MAC address
        """

    @abstractmethod
    def destroy_virtual_identity(self, block: str, mac: str) -> None:
        pass
