"""
Control Plane Data Model
========================

Records owned by the record store, plus the read-only catalog entries
the orchestrator uses to size a new instance.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .exceptions import NotFound


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ServiceStatus(Enum):
    """Lifecycle of a customer VPS. STOPPED doubles as the failure marker."""
    BUILDING = "BUILDING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"


class AddressStatus(Enum):
    """Reservation state of a pool address."""
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    IN_USE = "IN_USE"


class OrderStatus(Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class PowerAction(Enum):
    """Power actions a customer may request on a provisioned instance."""
    START = "start"
    STOP = "stop"
    REBOOT = "reboot"


@dataclass
class AddressRecord:
    """A single routable address from a failover IP block."""
    id: str
    address: str
    block: str  # CIDR, e.g. "10.0.0.0/29"
    gateway: str
    location: str
    status: AddressStatus = AddressStatus.AVAILABLE
    virtual_mac: Optional[str] = None
    vmid: Optional[int] = None

    @property
    def host_cidr(self) -> str:
        """Address as a /32 for cloud-init ipconfig."""
        return f"{self.address}/32"


@dataclass
class ProductSpecs:
    """Hardware sizing for a product."""
    vcpus: int
    ram_gb: int
    storage_gb: int
    location: str

    @property
    def memory_mib(self) -> int:
        return self.ram_gb * 1024

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductSpecs":
        """
        Build from the catalog's JSON specs column.

        Raises NotFound when the specs are incomplete, so a product that
        cannot be sized is treated like a missing one.
        """
        try:
            return cls(
                vcpus=int(data["vcpus"]),
                ram_gb=int(data["ramGB"] if "ramGB" in data else data["ram_gb"]),
                storage_gb=int(data["storageGB"] if "storageGB" in data else data["storage_gb"]),
                location=data["location"],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise NotFound(f"Product specs are incomplete: {e!r}", {"specs": data}) from e


@dataclass
class Product:
    id: str
    name: str
    price: Decimal
    specs: ProductSpecs


@dataclass
class OSVersion:
    """A hypervisor template plus the cloud-init login user it expects."""
    id: str
    name: str
    template_vmid: int
    default_user: str = "ubuntu"


@dataclass
class Order:
    """Billing side of a service. subscription_id is the idempotency key."""
    id: str
    subscription_id: str
    user_id: str
    product_id: str
    total_amount: Decimal
    paid_until: datetime
    status: OrderStatus = OrderStatus.ACTIVE
    billing_cycle: Optional[str] = None
    last_invoice_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ServiceRecord:
    """A customer VPS as known to the control plane."""
    id: str
    hostname: str
    user_id: str
    order_id: str
    os_version_id: str
    status: ServiceStatus = ServiceStatus.BUILDING
    vmid: Optional[int] = None
    node: Optional[str] = None
    ip_address_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "hostname": self.hostname,
            "status": self.status.value,
            "vmid": self.vmid,
            "node": self.node,
            "ip_address_id": self.ip_address_id,
            "os_version_id": self.os_version_id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class ProvisioningSecrets:
    """Credentials handed to cloud-init. Never persisted."""
    ssh_key: str
    password: str

    def __repr__(self) -> str:
        return "ProvisioningSecrets(ssh_key=..., password=***)"


@dataclass
class NewServiceRequest:
    """Everything needed to create a pending Order + ServiceRecord pair."""
    subscription_id: str
    user_id: str
    product_id: str
    hostname: str
    os_version_id: str
    total_amount: Decimal
    paid_until: datetime
    billing_cycle: Optional[str] = None
    invoice_id: Optional[str] = None
