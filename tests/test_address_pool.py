"""
Tests for the Address Pool
==========================

In-memory pool state machine, plus the SQL the PostgreSQL pool issues.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from vps_control_plane.address_pool import PostgresAddressPool
from vps_control_plane.exceptions import InvalidState, NoCapacity, NotFound
from vps_control_plane.models import AddressRecord, AddressStatus


class TestReserve:
    """AVAILABLE -> RESERVED."""

    @pytest.mark.asyncio
    async def test_reserve_flips_to_reserved(self, address_pool):
        record = await address_pool.reserve("Z1")
        assert record.address == "10.0.0.5"
        assert record.status == AddressStatus.RESERVED
        assert (await address_pool.get("ip-1")).status == AddressStatus.RESERVED

    @pytest.mark.asyncio
    async def test_unknown_location_has_no_capacity(self, address_pool):
        with pytest.raises(NoCapacity) as exc:
            await address_pool.reserve("Z9")
        assert exc.value.location == "Z9"

    @pytest.mark.asyncio
    async def test_exhausted_location_has_no_capacity(self, address_pool):
        await address_pool.reserve("Z1")
        with pytest.raises(NoCapacity):
            await address_pool.reserve("Z1")

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_share_an_address(self, address_pool):
        """With one free address, exactly one of many reservers wins."""
        results = await asyncio.gather(
            *(address_pool.reserve("Z1") for _ in range(5)),
            return_exceptions=True,
        )
        winners = [r for r in results if isinstance(r, AddressRecord)]
        losers = [r for r in results if isinstance(r, NoCapacity)]
        assert len(winners) == 1
        assert len(losers) == 4

    @pytest.mark.asyncio
    async def test_returned_record_is_a_copy(self, address_pool):
        record = await address_pool.reserve("Z1")
        record.status = AddressStatus.AVAILABLE
        assert (await address_pool.get("ip-1")).status == AddressStatus.RESERVED


class TestCommit:
    """RESERVED -> IN_USE."""

    @pytest.mark.asyncio
    async def test_commit_sets_vmid_and_mac(self, address_pool):
        await address_pool.reserve("Z1")
        record = await address_pool.commit("ip-1", 101, "02:00:00:aa:bb:cc")
        assert record.status == AddressStatus.IN_USE
        assert record.vmid == 101
        assert record.virtual_mac == "02:00:00:aa:bb:cc"

    @pytest.mark.asyncio
    async def test_commit_requires_reservation(self, address_pool):
        with pytest.raises(InvalidState):
            await address_pool.commit("ip-1", 101, "02:00:00:aa:bb:cc")
        assert (await address_pool.get("ip-1")).status == AddressStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_commit_twice_is_rejected(self, address_pool):
        await address_pool.reserve("Z1")
        await address_pool.commit("ip-1", 101, "02:00:00:aa:bb:cc")
        with pytest.raises(InvalidState):
            await address_pool.commit("ip-1", 102, "02:00:00:aa:bb:dd")


class TestRelease:
    """RESERVED / IN_USE -> AVAILABLE."""

    @pytest.mark.asyncio
    async def test_release_clears_assignment(self, address_pool):
        await address_pool.reserve("Z1")
        await address_pool.commit("ip-1", 101, "02:00:00:aa:bb:cc")
        await address_pool.release("ip-1")

        record = await address_pool.get("ip-1")
        assert record.status == AddressStatus.AVAILABLE
        assert record.vmid is None
        assert record.virtual_mac is None

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, address_pool):
        await address_pool.reserve("Z1")
        await address_pool.release("ip-1")
        await address_pool.release("ip-1")
        assert (await address_pool.get("ip-1")).status == AddressStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_release_unknown_address(self, address_pool):
        with pytest.raises(NotFound):
            await address_pool.release("ip-missing")

    @pytest.mark.asyncio
    async def test_released_address_can_be_reserved_again(self, address_pool):
        await address_pool.reserve("Z1")
        await address_pool.release("ip-1")
        record = await address_pool.reserve("Z1")
        assert record.id == "ip-1"


def _row(status="RESERVED", vmid=None, mac=None):
    return {
        "id": "ip-1",
        "address": "10.0.0.5",
        "block": "10.0.0.0/29",
        "gateway": "10.0.0.1",
        "location": "Z1",
        "status": status,
        "virtual_mac": mac,
        "vmid": vmid,
    }


class TestPostgresAddressPool:
    """Guarded UPDATE statements against a mocked asyncpg pool."""

    @pytest.mark.asyncio
    async def test_reserve_is_a_single_guarded_update(self, mock_db_pool):
        mock_db_pool.fetchrow = AsyncMock(return_value=_row())
        record = await PostgresAddressPool(mock_db_pool).reserve("Z1")

        sql, location = mock_db_pool.fetchrow.call_args.args
        assert sql.strip().startswith("UPDATE ip_addresses")
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "AND status = 'AVAILABLE'" in sql
        assert location == "Z1"
        assert record.status == AddressStatus.RESERVED

    @pytest.mark.asyncio
    async def test_reserve_without_row_has_no_capacity(self, mock_db_pool):
        mock_db_pool.fetchrow = AsyncMock(return_value=None)
        with pytest.raises(NoCapacity):
            await PostgresAddressPool(mock_db_pool).reserve("Z1")

    @pytest.mark.asyncio
    async def test_commit_guard_failure_reports_current_state(self, mock_db_pool):
        # Guarded UPDATE matches nothing, follow-up read shows AVAILABLE
        mock_db_pool.fetchrow = AsyncMock(side_effect=[None, _row(status="AVAILABLE")])
        with pytest.raises(InvalidState) as exc:
            await PostgresAddressPool(mock_db_pool).commit("ip-1", 101, "02:00:00:aa:bb:cc")
        assert exc.value.details["status"] == "AVAILABLE"

    @pytest.mark.asyncio
    async def test_release_of_available_address_is_noop(self, mock_db_pool):
        mock_db_pool.execute = AsyncMock(return_value="UPDATE 0")
        mock_db_pool.fetchrow = AsyncMock(return_value=_row(status="AVAILABLE"))
        await PostgresAddressPool(mock_db_pool).release("ip-1")

    @pytest.mark.asyncio
    async def test_release_of_unknown_address(self, mock_db_pool):
        mock_db_pool.execute = AsyncMock(return_value="UPDATE 0")
        mock_db_pool.fetchrow = AsyncMock(return_value=None)
        with pytest.raises(NotFound):
            await PostgresAddressPool(mock_db_pool).release("ip-missing")
