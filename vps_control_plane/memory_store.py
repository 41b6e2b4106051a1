"""
In-Memory Record Store
======================

Thread-safe in-memory implementations of the address pool and service
record store. Used when no database is configured and by the test suite.

Only valid for a single process: the lock here is what makes each state
transition atomic, whereas the PostgreSQL backends rely on guarded UPDATEs.
"""

import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .address_pool import AddressPool
from .exceptions import InvalidState, NoCapacity, NotFound
from .models import (
    AddressRecord,
    AddressStatus,
    NewServiceRequest,
    Order,
    OSVersion,
    Product,
    ServiceRecord,
    ServiceStatus,
    utcnow,
)
from .records import ServiceRecordStore

logger = logging.getLogger(__name__)


class InMemoryAddressPool(AddressPool):
    """Address pool held in a dict, guarded by a lock."""

    def __init__(self, addresses: Optional[Iterable[AddressRecord]] = None):
        self._addresses: Dict[str, AddressRecord] = {}
        self._lock = threading.Lock()
        for record in addresses or []:
            self.add(record)

    def add(self, record: AddressRecord) -> None:
        with self._lock:
            self._addresses[record.id] = replace(record)

    def list_addresses(self) -> List[AddressRecord]:
        with self._lock:
            return [replace(r) for r in self._addresses.values()]

    async def reserve(self, location: str) -> AddressRecord:
        with self._lock:
            candidates = sorted(
                (
                    r for r in self._addresses.values()
                    if r.location == location and r.status == AddressStatus.AVAILABLE
                ),
                key=lambda r: r.address,
            )
            if not candidates:
                raise NoCapacity(location)

            record = candidates[0]
            record.status = AddressStatus.RESERVED
            logger.info(f"Reserved address {record.address} in {location}")
            return replace(record)

    async def commit(self, address_id: str, vmid: int, virtual_mac: str) -> AddressRecord:
        with self._lock:
            record = self._addresses.get(address_id)
            if record is None or record.status != AddressStatus.RESERVED:
                state = record.status.value if record else "missing"
                raise InvalidState(
                    f"Address {address_id} cannot be committed from state {state}",
                    {"address_id": address_id, "status": state},
                )
            record.status = AddressStatus.IN_USE
            record.vmid = vmid
            record.virtual_mac = virtual_mac
            return replace(record)

    async def release(self, address_id: str) -> None:
        with self._lock:
            record = self._addresses.get(address_id)
            if record is None:
                raise NotFound(f"Address not found: {address_id}")
            if record.status == AddressStatus.AVAILABLE:
                return
            record.status = AddressStatus.AVAILABLE
            record.vmid = None
            record.virtual_mac = None
            logger.info(f"Released address {record.address}")

    async def get(self, address_id: str) -> Optional[AddressRecord]:
        with self._lock:
            record = self._addresses.get(address_id)
            return replace(record) if record else None


class InMemoryRecordStore(ServiceRecordStore):
    """ServiceRecordStore held in dicts, guarded by a lock."""

    def __init__(self):
        self._services: Dict[str, ServiceRecord] = {}
        self._orders: Dict[str, Order] = {}
        self._products: Dict[str, Product] = {}
        self._os_versions: Dict[str, OSVersion] = {}
        self._lock = threading.Lock()

    # Catalog seeding (the catalog itself is owned elsewhere)

    def add_product(self, product: Product) -> None:
        with self._lock:
            self._products[product.id] = product

    def add_os_version(self, os_version: OSVersion) -> None:
        with self._lock:
            self._os_versions[os_version.id] = os_version

    def list_services(self) -> List[ServiceRecord]:
        with self._lock:
            return [replace(s) for s in self._services.values()]

    def list_orders(self) -> List[Order]:
        with self._lock:
            return [replace(o) for o in self._orders.values()]

    # Reads

    async def get_service(self, service_id: str) -> Optional[ServiceRecord]:
        with self._lock:
            service = self._services.get(service_id)
            return replace(service) if service else None

    async def get_service_for_owner(self, vmid: int, user_id: str) -> Optional[ServiceRecord]:
        with self._lock:
            for service in self._services.values():
                if service.vmid == vmid and service.user_id == user_id:
                    return replace(service)
            return None

    async def get_order(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            return replace(order) if order else None

    async def get_order_by_subscription(self, subscription_id: str) -> Optional[Order]:
        with self._lock:
            for order in self._orders.values():
                if order.subscription_id == subscription_id:
                    return replace(order)
            return None

    async def get_product(self, product_id: str) -> Optional[Product]:
        with self._lock:
            return self._products.get(product_id)

    async def get_os_version(self, os_version_id: str) -> Optional[OSVersion]:
        with self._lock:
            return self._os_versions.get(os_version_id)

    # Writes

    async def create_pending_service(
        self,
        request: NewServiceRequest,
    ) -> Optional[Tuple[Order, ServiceRecord]]:
        with self._lock:
            if any(o.subscription_id == request.subscription_id for o in self._orders.values()):
                return None

            order = Order(
                id=str(uuid.uuid4()),
                subscription_id=request.subscription_id,
                user_id=request.user_id,
                product_id=request.product_id,
                total_amount=request.total_amount,
                paid_until=request.paid_until,
                billing_cycle=request.billing_cycle,
                last_invoice_id=request.invoice_id,
            )
            service = ServiceRecord(
                id=str(uuid.uuid4()),
                hostname=request.hostname,
                user_id=request.user_id,
                order_id=order.id,
                os_version_id=request.os_version_id,
            )
            self._orders[order.id] = order
            self._services[service.id] = service

            logger.info(
                f"Created order {order.id} and service {service.id} "
                f"for subscription {request.subscription_id}"
            )
            return replace(order), replace(service)

    async def extend_order(
        self,
        order_id: str,
        paid_until: datetime,
        invoice_id: Optional[str] = None,
    ) -> Order:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise NotFound(f"Order not found: {order_id}")
            order.paid_until = paid_until
            if invoice_id:
                order.last_invoice_id = invoice_id
            return replace(order)

    async def mark_running(
        self,
        service_id: str,
        vmid: int,
        node: str,
        ip_address_id: str,
    ) -> ServiceRecord:
        with self._lock:
            service = self._services.get(service_id)
            if service is None:
                raise NotFound(f"Service not found: {service_id}")
            service.status = ServiceStatus.RUNNING
            service.vmid = vmid
            service.node = node
            service.ip_address_id = ip_address_id
            service.updated_at = utcnow()
            return replace(service)

    async def set_service_status(self, service_id: str, status: ServiceStatus) -> None:
        with self._lock:
            service = self._services.get(service_id)
            if service is None:
                raise NotFound(f"Service not found: {service_id}")
            service.status = status
            service.updated_at = utcnow()
