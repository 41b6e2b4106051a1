"""
Provisioning Orchestrator
=========================

Turns a BUILDING service record into a running VPS:

1. Load service, order, product and OS template
2. Reserve a failover IP in the product's location
3. Bind a virtual MAC to that IP
4. Pick the next free VMID on the node
5. Full-clone the OS template
6. Configure cores / memory / NIC, grow the disk, write cloud-init
7. Boot the instance
8. Commit the address IN_USE and the service RUNNING

Any failure in steps 2-8 unwinds the compensation stack, marks the service
STOPPED and raises ProvisioningFailed. A failed attempt is terminal; there
is no resume.
"""

import asyncio
import logging
from functools import partial
from typing import List, Tuple

from .address_pool import AddressPool
from .compensation import CompensationStack
from .exceptions import ComputeProvisioningError, NotFound, ProvisioningFailed
from .models import (
    AddressRecord,
    Order,
    OSVersion,
    Product,
    ProvisioningSecrets,
    ServiceRecord,
    ServiceStatus,
)
from .providers.base import ComputeProvisioner, NetworkIdentityProvisioner
from .records import ServiceRecordStore

logger = logging.getLogger(__name__)


# Step names, as recorded on ProvisioningFailed.failed_step and in logs
STEP_RESERVE_ADDRESS = "reserve_address"
STEP_CREATE_VIRTUAL_MAC = "create_virtual_mac"
STEP_NEXT_VMID = "next_vmid"
STEP_CLONE_TEMPLATE = "clone_template"
STEP_CONFIGURE_HARDWARE = "configure_hardware"
STEP_RESIZE_DISK = "resize_disk"
STEP_CONFIGURE_CLOUD_INIT = "configure_cloud_init"
STEP_START = "start"
STEP_COMMIT = "commit"


class ProvisioningOrchestrator:
    """
    Saga coordinator for a single VPS.

    Stateless between runs: everything an attempt needs lives in its own
    CompensationStack, so concurrent attempts for different services
    never share state here.

    Usage:
        orchestrator = ProvisioningOrchestrator(
            store=store,
            address_pool=pool,
            network=OVHProvider(config.ovh),
            compute=ProxmoxProvider(config.proxmox),
            node="pve",
        )

        service = await orchestrator.provision(service_id, secrets)
    """

    def __init__(
        self,
        store: ServiceRecordStore,
        address_pool: AddressPool,
        network: NetworkIdentityProvisioner,
        compute: ComputeProvisioner,
        node: str = "pve",
        bridge: str = "vmbr0",
        disk: str = "scsi0",
    ):
        self.store = store
        self.address_pool = address_pool
        self.network = network
        self.compute = compute
        self.node = node
        self.bridge = bridge
        self.disk = disk

    async def provision(self, service_id: str, secrets: ProvisioningSecrets) -> ServiceRecord:
        """
        Provision the VPS behind ``service_id``.

        Returns:
            The RUNNING service record

        Raises:
            NotFound: service, order, product or OS version missing (no side effects)
            ProvisioningFailed: a later step failed; all compensations attempted
        """
        service, order, product, os_version = await self._load(service_id)
        log_extra = {"service_id": service_id, "node": self.node}
        logger.info(
            f"Provisioning {service.hostname} for order {order.id} "
            f"({product.name} in {product.specs.location})",
            extra=log_extra,
        )

        stack = CompensationStack()
        step = STEP_RESERVE_ADDRESS

        try:
            address = await self.address_pool.reserve(product.specs.location)
            stack.push(step, address.address, partial(self.address_pool.release, address.id))

            step = STEP_CREATE_VIRTUAL_MAC
            mac = await asyncio.to_thread(
                self.network.create_virtual_identity,
                address.block,
                address.address,
                service.hostname,
            )
            stack.push(step, mac, partial(self._destroy_virtual_mac, address, mac))

            step = STEP_NEXT_VMID
            vmid = await asyncio.to_thread(self.compute.next_instance_id, self.node)

            step = STEP_CLONE_TEMPLATE
            await asyncio.to_thread(
                self.compute.clone_template,
                self.node,
                os_version.template_vmid,
                vmid,
                service.hostname,
            )
            stack.push(step, f"vmid {vmid}", partial(self._destroy_instance, vmid))

            step = STEP_CONFIGURE_HARDWARE
            await asyncio.to_thread(
                self.compute.configure_hardware,
                self.node,
                vmid,
                product.specs.vcpus,
                product.specs.memory_mib,
                f"virtio={mac},bridge={self.bridge}",
            )

            step = STEP_RESIZE_DISK
            await asyncio.to_thread(
                self.compute.resize_disk,
                self.node,
                vmid,
                self.disk,
                product.specs.storage_gb,
            )

            step = STEP_CONFIGURE_CLOUD_INIT
            await asyncio.to_thread(
                self.compute.configure_cloud_init,
                self.node,
                vmid,
                os_version.default_user,
                secrets.password,
                secrets.ssh_key,
                address.host_cidr,
                address.gateway,
            )

            step = STEP_START
            await asyncio.to_thread(self.compute.start, self.node, vmid)

            step = STEP_COMMIT
            await self.address_pool.commit(address.id, vmid, mac)
            running = await self.store.mark_running(service.id, vmid, self.node, address.id)

        except Exception as e:
            logger.error(
                f"Provisioning {service.hostname} failed at {step}: {e}",
                extra={**log_extra, "step": step},
            )
            compensation_errors = await stack.unwind(service_id)
            compensation_errors.extend(await self._mark_stopped(service_id))
            raise ProvisioningFailed(service_id, step, e, compensation_errors) from e

        logger.info(
            f"Provisioned {service.hostname} as VM {vmid} at {address.address}",
            extra={**log_extra, "vmid": vmid},
        )
        return running

    # =========================================
    # STEP 1: LOAD
    # =========================================

    async def _load(self, service_id: str) -> Tuple[ServiceRecord, Order, Product, OSVersion]:
        service = await self.store.get_service(service_id)
        if service is None:
            raise NotFound(f"Service not found: {service_id}", {"service_id": service_id})

        order = await self.store.get_order(service.order_id)
        if order is None:
            raise NotFound(f"Order not found: {service.order_id}", {"service_id": service_id})

        product = await self.store.get_product(order.product_id)
        if product is None:
            raise NotFound(f"Product not found: {order.product_id}", {"service_id": service_id})

        os_version = await self.store.get_os_version(service.os_version_id)
        if os_version is None:
            raise NotFound(
                f"OS version not found: {service.os_version_id}",
                {"service_id": service_id},
            )

        return service, order, product, os_version

    # =========================================
    # COMPENSATIONS
    # =========================================

    async def _destroy_virtual_mac(self, address: AddressRecord, mac: str) -> None:
        await asyncio.to_thread(self.network.destroy_virtual_identity, address.block, mac)

    async def _destroy_instance(self, vmid: int) -> None:
        """Stop then delete. The VM may never have been started, so stop may fail."""
        try:
            await asyncio.to_thread(self.compute.stop, self.node, vmid)
        except ComputeProvisioningError as e:
            logger.warning(
                f"Stop before destroy of VM {vmid} failed: {e}",
                extra={"vmid": vmid, "node": self.node},
            )
        await asyncio.to_thread(self.compute.destroy, self.node, vmid)

    async def _mark_stopped(self, service_id: str) -> List[str]:
        try:
            await self.store.set_service_status(service_id, ServiceStatus.STOPPED)
        except Exception as e:
            logger.error(
                f"Could not mark service {service_id} STOPPED: {e}",
                extra={"service_id": service_id},
                exc_info=True,
            )
            return [f"mark_stopped: {e}"]
        return []
