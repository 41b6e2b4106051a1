"""
VPS Control Plane Test Fixtures
===============================

Shared fixtures for all test modules.

The hypervisor and network allocator are replaced by recording fakes:
every call is appended to ``calls`` and any method can be made to fail
by putting an exception in ``fail_on``.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Tuple
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from vps_control_plane.memory_store import InMemoryAddressPool, InMemoryRecordStore
from vps_control_plane.models import (
    AddressRecord,
    NewServiceRequest,
    OSVersion,
    Product,
    ProductSpecs,
    ProvisioningSecrets,
)
from vps_control_plane.orchestrator import ProvisioningOrchestrator
from vps_control_plane.providers.base import ComputeProvisioner, NetworkIdentityProvisioner

NODE = "pve-test"
NEXT_VMID = 101
ALLOCATED_MAC = "02:00:00:aa:bb:cc"
FIXED_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


# ============================================
# RECORDING FAKES
# ============================================

class _Recorder:
    def __init__(self):
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.fail_on: Dict[str, Exception] = {}

    def _record(self, name: str, *args):
        self.calls.append((name, args))
        if name in self.fail_on:
            raise self.fail_on[name]

    @property
    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def args_for(self, name: str) -> Tuple[Any, ...]:
        for call_name, args in self.calls:
            if call_name == name:
                return args
        raise AssertionError(f"{name} was never called")


class RecordingCompute(_Recorder, ComputeProvisioner):
    """Fake hypervisor."""
    PROVIDER_ID = "fake"
    PROVIDER_NAME = "Fake Hypervisor"

    def __init__(self, next_vmid: int = NEXT_VMID):
        super().__init__()
        self.next_vmid = next_vmid

    def next_instance_id(self, node):
        self._record("next_instance_id", node)
        return self.next_vmid

    def clone_template(self, node, template_id, new_id, name):
        self._record("clone_template", node, template_id, new_id, name)

    def configure_hardware(self, node, vmid, cores, memory_mib, network_config):
        self._record("configure_hardware", node, vmid, cores, memory_mib, network_config)

    def resize_disk(self, node, vmid, disk, size_gib):
        self._record("resize_disk", node, vmid, disk, size_gib)

    def configure_cloud_init(self, node, vmid, login_user, password, ssh_public_key,
                             address_cidr, gateway):
        self._record("configure_cloud_init", node, vmid, login_user, password,
                     ssh_public_key, address_cidr, gateway)

    def start(self, node, vmid):
        self._record("start", node, vmid)

    def stop(self, node, vmid):
        self._record("stop", node, vmid)

    def reboot(self, node, vmid):
        self._record("reboot", node, vmid)

    def destroy(self, node, vmid):
        self._record("destroy", node, vmid)


class RecordingNetwork(_Recorder, NetworkIdentityProvisioner):
    """Fake virtual MAC allocator."""
    PROVIDER_ID = "fake"
    PROVIDER_NAME = "Fake Allocator"

    def create_virtual_identity(self, block, address, label):
        self._record("create_virtual_identity", block, address, label)
        return ALLOCATED_MAC

    def destroy_virtual_identity(self, block, mac):
        self._record("destroy_virtual_identity", block, mac)


@pytest.fixture
def compute():
    return RecordingCompute()


@pytest.fixture
def network():
    return RecordingNetwork()


# ============================================
# STORES
# ============================================

@pytest.fixture
def address_pool():
    """Location Z1 with a single free address."""
    return InMemoryAddressPool([
        AddressRecord(
            id="ip-1",
            address="10.0.0.5",
            block="10.0.0.0/29",
            gateway="10.0.0.1",
            location="Z1",
        ),
    ])


@pytest.fixture
def store():
    """Record store seeded with one product and one OS template."""
    store = InMemoryRecordStore()
    store.add_product(Product(
        id="prod-small",
        name="VPS Small",
        price=Decimal("9.99"),
        specs=ProductSpecs(vcpus=2, ram_gb=4, storage_gb=50, location="Z1"),
    ))
    store.add_os_version(OSVersion(
        id="os-ubuntu-2404",
        name="Ubuntu 24.04",
        template_vmid=9000,
        default_user="ubuntu",
    ))
    return store


@pytest.fixture
def mock_db_pool():
    """Mock database connection pool."""
    pool = AsyncMock()
    pool.execute = AsyncMock()
    pool.fetch = AsyncMock(return_value=[])
    pool.fetchrow = AsyncMock(return_value=None)
    pool.fetchval = AsyncMock(return_value=0)
    pool.close = AsyncMock()
    return pool


def make_request(subscription_id: str = "sub_test_123", **overrides) -> NewServiceRequest:
    fields = dict(
        subscription_id=subscription_id,
        user_id="user-1",
        product_id="prod-small",
        hostname="web01.example.com",
        os_version_id="os-ubuntu-2404",
        total_amount=Decimal("9.99"),
        paid_until=FIXED_NOW + timedelta(days=30),
        billing_cycle="MONTHLY",
        invoice_id="in_first",
    )
    fields.update(overrides)
    return NewServiceRequest(**fields)


@pytest_asyncio.fixture
async def pending_service(store):
    """A BUILDING service with its ACTIVE order."""
    _, service = await store.create_pending_service(make_request())
    return service


@pytest_asyncio.fixture
async def running_service(store):
    """A RUNNING service on NODE as VM 101, owned by user-1."""
    _, service = await store.create_pending_service(make_request("sub_running"))
    return await store.mark_running(service.id, NEXT_VMID, NODE, "ip-1")


# ============================================
# ORCHESTRATOR
# ============================================

@pytest.fixture
def secrets():
    return ProvisioningSecrets(ssh_key="ssh-ed25519 AAAAC3Nz test@example", password="s3cret-pass")


@pytest.fixture
def orchestrator(store, address_pool, network, compute):
    return ProvisioningOrchestrator(
        store=store,
        address_pool=address_pool,
        network=network,
        compute=compute,
        node=NODE,
    )


# ============================================
# STRIPE EVENTS
# ============================================

def invoice_event(invoice_id: str = "in_first", subscription_id: str = "sub_test_123") -> Dict[str, Any]:
    """Verified invoice.payment_succeeded event as returned by construct_event."""
    return {
        "id": f"evt_{invoice_id}",
        "type": "invoice.payment_succeeded",
        "data": {
            "object": {
                "id": invoice_id,
                "object": "invoice",
                "subscription": subscription_id,
            },
        },
    }


@pytest.fixture
def subscription_metadata():
    """Metadata attached to the subscription at checkout."""
    return {
        "userId": "user-1",
        "productId": "prod-small",
        "hostname": "web01.example.com",
        "osVersionId": "os-ubuntu-2404",
        "sshKey": "ssh-ed25519 AAAAC3Nz test@example",
        "userPassword": "s3cret-pass",
        "productPrice": "9.99",
        "billingCycle": "MONTHLY",
    }
