"""
Service Record Store
====================

Narrow read/update contract the control plane needs over services, orders
and the read-only product / OS catalog, plus its PostgreSQL implementation.
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

import asyncpg

from .exceptions import NotFound
from .models import (
    NewServiceRequest,
    Order,
    OrderStatus,
    OSVersion,
    Product,
    ProductSpecs,
    ServiceRecord,
    ServiceStatus,
)

logger = logging.getLogger(__name__)


class ServiceRecordStore(ABC):
    """Persistence contract consumed by the orchestrator, webhook and control gateway."""

    # =========================================
    # READS
    # =========================================

    @abstractmethod
    async def get_service(self, service_id: str) -> Optional[ServiceRecord]:
        pass

    @abstractmethod
    async def get_service_for_owner(self, vmid: int, user_id: str) -> Optional[ServiceRecord]:
        """Service running as ``vmid`` if and only if ``user_id`` owns it."""

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_order_by_subscription(self, subscription_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def get_os_version(self, os_version_id: str) -> Optional[OSVersion]:
        pass

    # =========================================
    # WRITES
    # =========================================

    @abstractmethod
    async def create_pending_service(
        self,
        request: NewServiceRequest,
    ) -> Optional[Tuple[Order, ServiceRecord]]:
        """
        Create an ACTIVE Order and a BUILDING ServiceRecord together.

        Returns:
            The new pair, or None if an order for the subscription already exists
        """

    @abstractmethod
    async def extend_order(
        self,
        order_id: str,
        paid_until: datetime,
        invoice_id: Optional[str] = None,
    ) -> Order:
        pass

    @abstractmethod
    async def mark_running(
        self,
        service_id: str,
        vmid: int,
        node: str,
        ip_address_id: str,
    ) -> ServiceRecord:
        pass

    @abstractmethod
    async def set_service_status(self, service_id: str, status: ServiceStatus) -> None:
        pass


# =============================================================================
# Row mapping
# =============================================================================

def service_from_row(row: asyncpg.Record) -> ServiceRecord:
    return ServiceRecord(
        id=row["id"],
        hostname=row["hostname"],
        status=ServiceStatus(row["status"]),
        vmid=row["vmid"],
        node=row["node"],
        ip_address_id=row["ip_address_id"],
        os_version_id=row["os_version_id"],
        user_id=row["user_id"],
        order_id=row["order_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def order_from_row(row: asyncpg.Record) -> Order:
    return Order(
        id=row["id"],
        subscription_id=row["subscription_id"],
        user_id=row["user_id"],
        product_id=row["product_id"],
        total_amount=Decimal(row["total_amount"]),
        paid_until=row["paid_until"],
        status=OrderStatus(row["status"]),
        billing_cycle=row["billing_cycle"],
        last_invoice_id=row["last_invoice_id"],
        created_at=row["created_at"],
    )


def product_from_row(row: asyncpg.Record) -> Product:
    specs = row["specs"]
    if isinstance(specs, str):
        specs = json.loads(specs)
    return Product(
        id=row["id"],
        name=row["name"],
        price=Decimal(row["price"]),
        specs=ProductSpecs.from_dict(specs),
    )


class PostgresRecordStore(ServiceRecordStore):
    """ServiceRecordStore over the asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get_service(self, service_id: str) -> Optional[ServiceRecord]:
        row = await self.pool.fetchrow("SELECT * FROM services WHERE id = $1", service_id)
        return service_from_row(row) if row else None

    async def get_service_for_owner(self, vmid: int, user_id: str) -> Optional[ServiceRecord]:
        row = await self.pool.fetchrow(
            "SELECT * FROM services WHERE vmid = $1 AND user_id = $2",
            vmid,
            user_id,
        )
        return service_from_row(row) if row else None

    async def get_order(self, order_id: str) -> Optional[Order]:
        row = await self.pool.fetchrow("SELECT * FROM orders WHERE id = $1", order_id)
        return order_from_row(row) if row else None

    async def get_order_by_subscription(self, subscription_id: str) -> Optional[Order]:
        row = await self.pool.fetchrow(
            "SELECT * FROM orders WHERE subscription_id = $1",
            subscription_id,
        )
        return order_from_row(row) if row else None

    async def get_product(self, product_id: str) -> Optional[Product]:
        row = await self.pool.fetchrow("SELECT * FROM products WHERE id = $1", product_id)
        return product_from_row(row) if row else None

    async def get_os_version(self, os_version_id: str) -> Optional[OSVersion]:
        row = await self.pool.fetchrow("SELECT * FROM os_versions WHERE id = $1", os_version_id)
        if not row:
            return None
        return OSVersion(
            id=row["id"],
            name=row["name"],
            template_vmid=row["template_vmid"],
            default_user=row["default_user"],
        )

    async def create_pending_service(
        self,
        request: NewServiceRequest,
    ) -> Optional[Tuple[Order, ServiceRecord]]:
        order_id = str(uuid.uuid4())
        service_id = str(uuid.uuid4())

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                # The unique subscription_id turns a concurrent duplicate into a no-op
                order_row = await conn.fetchrow(
                    """
                    INSERT INTO orders (
                        id, subscription_id, user_id, product_id, total_amount,
                        status, paid_until, billing_cycle, last_invoice_id
                    ) VALUES ($1, $2, $3, $4, $5, 'ACTIVE', $6, $7, $8)
                    ON CONFLICT (subscription_id) DO NOTHING
                    RETURNING *
                    """,
                    order_id,
                    request.subscription_id,
                    request.user_id,
                    request.product_id,
                    request.total_amount,
                    request.paid_until,
                    request.billing_cycle,
                    request.invoice_id,
                )
                if order_row is None:
                    return None

                service_row = await conn.fetchrow(
                    """
                    INSERT INTO services (
                        id, hostname, status, os_version_id, user_id, order_id
                    ) VALUES ($1, $2, 'BUILDING', $3, $4, $5)
                    RETURNING *
                    """,
                    service_id,
                    request.hostname,
                    request.os_version_id,
                    request.user_id,
                    order_id,
                )

        logger.info(
            f"Created order {order_id} and service {service_id} "
            f"for subscription {request.subscription_id}"
        )
        return order_from_row(order_row), service_from_row(service_row)

    async def extend_order(
        self,
        order_id: str,
        paid_until: datetime,
        invoice_id: Optional[str] = None,
    ) -> Order:
        row = await self.pool.fetchrow(
            """
            UPDATE orders
            SET paid_until = $2,
                last_invoice_id = COALESCE($3, last_invoice_id),
                updated_at = NOW()
            WHERE id = $1
            RETURNING *
            """,
            order_id,
            paid_until,
            invoice_id,
        )
        if row is None:
            raise NotFound(f"Order not found: {order_id}")
        return order_from_row(row)

    async def mark_running(
        self,
        service_id: str,
        vmid: int,
        node: str,
        ip_address_id: str,
    ) -> ServiceRecord:
        row = await self.pool.fetchrow(
            """
            UPDATE services
            SET status = 'RUNNING', vmid = $2, node = $3, ip_address_id = $4, updated_at = NOW()
            WHERE id = $1
            RETURNING *
            """,
            service_id,
            vmid,
            node,
            ip_address_id,
        )
        if row is None:
            raise NotFound(f"Service not found: {service_id}")
        return service_from_row(row)

    async def set_service_status(self, service_id: str, status: ServiceStatus) -> None:
        result = await self.pool.execute(
            "UPDATE services SET status = $2, updated_at = NOW() WHERE id = $1",
            service_id,
            status.value,
        )
        if result.endswith(" 0"):
            raise NotFound(f"Service not found: {service_id}")
