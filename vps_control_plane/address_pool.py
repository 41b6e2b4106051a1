"""
Address Pool
============

Manages the finite set of failover addresses a new VPS can be bound to.

Every state change is a single conditional write guarded by the previous
status, so concurrent reservations for the same location (from any number
of control plane processes) can never hand out the same address twice.

    AVAILABLE --reserve--> RESERVED --commit--> IN_USE
        ^                     |                   |
        +-------release-------+-------release-----+
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import asyncpg

from .exceptions import InvalidState, NoCapacity, NotFound
from .models import AddressRecord, AddressStatus

logger = logging.getLogger(__name__)


class AddressPool(ABC):
    """Interface for address reservation backends."""

    @abstractmethod
    async def reserve(self, location: str) -> AddressRecord:
        """
        Atomically move one AVAILABLE address in ``location`` to RESERVED.

        Raises:
            NoCapacity: If no address is available in the location
        """

    @abstractmethod
    async def commit(self, address_id: str, vmid: int, virtual_mac: str) -> AddressRecord:
        """
        Move a RESERVED address to IN_USE, binding it to an instance.

        Raises:
            InvalidState: If the address is not currently RESERVED
        """

    @abstractmethod
    async def release(self, address_id: str) -> None:
        """
        Return an address to AVAILABLE and clear its bindings.

        Releasing an already AVAILABLE address is a no-op.
        """

    @abstractmethod
    async def get(self, address_id: str) -> Optional[AddressRecord]:
        """Fetch a single address record."""


def address_from_row(row: asyncpg.Record) -> AddressRecord:
    return AddressRecord(
        id=row["id"],
        address=row["address"],
        block=row["block"],
        gateway=row["gateway"],
        location=row["location"],
        status=AddressStatus(row["status"]),
        virtual_mac=row["virtual_mac"],
        vmid=row["vmid"],
    )


class PostgresAddressPool(AddressPool):
    """
    Address pool backed by the ip_addresses table.

    ``reserve`` picks and flips a row in one UPDATE. The inner SELECT uses
    SKIP LOCKED so concurrent reservers pick different rows instead of
    queueing on the same one, and the outer ``status = 'AVAILABLE'`` guard
    keeps the transition conditional even without row locks.
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def reserve(self, location: str) -> AddressRecord:
        row = await self.pool.fetchrow(
            """
            UPDATE ip_addresses
            SET status = 'RESERVED', updated_at = NOW()
            WHERE id = (
                SELECT id FROM ip_addresses
                WHERE location = $1 AND status = 'AVAILABLE'
                ORDER BY address
                LIMIT 1
                FOR UPDATE SKIP LOCKED
            )
            AND status = 'AVAILABLE'
            RETURNING *
            """,
            location,
        )
        if row is None:
            raise NoCapacity(location)

        record = address_from_row(row)
        logger.info(f"Reserved address {record.address} in {location}")
        return record

    async def commit(self, address_id: str, vmid: int, virtual_mac: str) -> AddressRecord:
        row = await self.pool.fetchrow(
            """
            UPDATE ip_addresses
            SET status = 'IN_USE', vmid = $2, virtual_mac = $3, updated_at = NOW()
            WHERE id = $1 AND status = 'RESERVED'
            RETURNING *
            """,
            address_id,
            vmid,
            virtual_mac,
        )
        if row is None:
            current = await self.get(address_id)
            state = current.status.value if current else "missing"
            raise InvalidState(
                f"Address {address_id} cannot be committed from state {state}",
                {"address_id": address_id, "status": state},
            )
        return address_from_row(row)

    async def release(self, address_id: str) -> None:
        result = await self.pool.execute(
            """
            UPDATE ip_addresses
            SET status = 'AVAILABLE', vmid = NULL, virtual_mac = NULL, updated_at = NOW()
            WHERE id = $1 AND status IN ('RESERVED', 'IN_USE')
            """,
            address_id,
        )
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        if result.endswith(" 0"):
            if await self.get(address_id) is None:
                raise NotFound(f"Address not found: {address_id}")
            logger.debug(f"Address {address_id} already available")
            return
        logger.info(f"Released address {address_id}")

    async def get(self, address_id: str) -> Optional[AddressRecord]:
        row = await self.pool.fetchrow(
            "SELECT * FROM ip_addresses WHERE id = $1",
            address_id,
        )
        return address_from_row(row) if row else None
