"""
Tests for the Postgres Layer
============================

Migrations, health and PostgresRecordStore against mocked asyncpg objects.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest

from conftest import FIXED_NOW, make_request
from vps_control_plane.database import MIGRATIONS_DIR, check_health, close_database, run_migrations
from vps_control_plane.exceptions import NotFound
from vps_control_plane.models import OrderStatus, ServiceStatus
from vps_control_plane.records import PostgresRecordStore


def _pool_with_connection(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    return pool


def _connection(fetch=None, fetchrow=None):
    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.fetch = AsyncMock(return_value=fetch or [])
    conn.fetchrow = AsyncMock(side_effect=fetchrow or [None])
    return conn


def _order_row(**overrides):
    row = {
        "id": "order-1",
        "subscription_id": "sub_test_123",
        "user_id": "user-1",
        "product_id": "prod-small",
        "total_amount": "9.99",
        "paid_until": FIXED_NOW + timedelta(days=30),
        "status": "ACTIVE",
        "billing_cycle": "MONTHLY",
        "last_invoice_id": "in_first",
        "created_at": FIXED_NOW,
    }
    row.update(overrides)
    return row


def _service_row(**overrides):
    row = {
        "id": "svc-1",
        "hostname": "web01.example.com",
        "status": "BUILDING",
        "vmid": None,
        "node": None,
        "ip_address_id": None,
        "os_version_id": "os-ubuntu-2404",
        "user_id": "user-1",
        "order_id": "order-1",
        "created_at": FIXED_NOW,
        "updated_at": FIXED_NOW,
    }
    row.update(overrides)
    return row


class TestMigrations:
    """Ordered SQL files tracked in schema_migrations."""

    def test_initial_schema_ships_with_package(self):
        assert (MIGRATIONS_DIR / "000_initial_schema.sql").is_file()

    @pytest.mark.asyncio
    async def test_pending_migration_is_applied_and_recorded(self):
        conn = _connection(fetch=[])
        await run_migrations(_pool_with_connection(conn))

        statements = [c.args for c in conn.execute.call_args_list]
        assert "schema_migrations" in statements[0][0]
        assert ("INSERT INTO schema_migrations (version) VALUES ($1)", "000") in statements

    @pytest.mark.asyncio
    async def test_applied_migration_is_skipped(self):
        conn = _connection(fetch=[{"version": "000"}])
        await run_migrations(_pool_with_connection(conn))

        # Only the bookkeeping table is created
        assert conn.execute.call_count == 1


class TestHealth:

    @pytest.mark.asyncio
    async def test_address_counts_grouped_by_location(self, mock_db_pool):
        mock_db_pool.fetch = AsyncMock(return_value=[
            {"location": "Z1", "status": "AVAILABLE", "n": 3},
            {"location": "Z1", "status": "IN_USE", "n": 2},
            {"location": "Z2", "status": "AVAILABLE", "n": 1},
        ])
        mock_db_pool.get_size = Mock(return_value=4)

        health = await check_health(mock_db_pool)

        assert health["status"] == "ok"
        assert health["pool_size"] == 4
        assert health["addresses"] == {"Z1": {"AVAILABLE": 3, "IN_USE": 2}, "Z2": {"AVAILABLE": 1}}


class TestPostgresRecordStore:

    @pytest.mark.asyncio
    async def test_create_pending_service(self):
        conn = _connection(fetchrow=[_order_row(), _service_row()])
        store = PostgresRecordStore(_pool_with_connection(conn))

        order, service = await store.create_pending_service(make_request())

        assert order.status == OrderStatus.ACTIVE
        assert service.status == ServiceStatus.BUILDING
        order_sql = conn.fetchrow.call_args_list[0].args[0]
        assert "ON CONFLICT (subscription_id) DO NOTHING" in order_sql

    @pytest.mark.asyncio
    async def test_duplicate_subscription_returns_none(self):
        conn = _connection(fetchrow=[None])
        store = PostgresRecordStore(_pool_with_connection(conn))

        assert await store.create_pending_service(make_request()) is None
        # No service row is written
        assert conn.fetchrow.call_count == 1

    @pytest.mark.asyncio
    async def test_set_status_of_unknown_service(self, mock_db_pool):
        mock_db_pool.execute = AsyncMock(return_value="UPDATE 0")
        with pytest.raises(NotFound):
            await PostgresRecordStore(mock_db_pool).set_service_status("nope", ServiceStatus.STOPPED)

    @pytest.mark.asyncio
    async def test_mark_running_maps_row(self, mock_db_pool):
        mock_db_pool.fetchrow = AsyncMock(return_value=_service_row(
            status="RUNNING", vmid=101, node="pve-test", ip_address_id="ip-1",
        ))
        service = await PostgresRecordStore(mock_db_pool).mark_running("svc-1", 101, "pve-test", "ip-1")

        assert service.status == ServiceStatus.RUNNING
        assert service.vmid == 101
        assert mock_db_pool.fetchrow.call_args.args[1:] == ("svc-1", 101, "pve-test", "ip-1")

    @pytest.mark.asyncio
    async def test_product_with_incomplete_specs_is_not_found(self, mock_db_pool):
        mock_db_pool.fetchrow = AsyncMock(return_value={
            "id": "prod-broken",
            "name": "Broken",
            "price": "5.00",
            "specs": '{"vcpus": 2, "location": "Z1"}',
        })
        with pytest.raises(NotFound) as exc:
            await PostgresRecordStore(mock_db_pool).get_product("prod-broken")
        assert "incomplete" in exc.value.message

    @pytest.mark.asyncio
    async def test_product_specs_from_json_column(self, mock_db_pool):
        mock_db_pool.fetchrow = AsyncMock(return_value={
            "id": "prod-small",
            "name": "Small",
            "price": "9.99",
            "specs": '{"vcpus": 2, "ramGB": 4, "storageGB": 50, "location": "Z1"}',
        })
        product = await PostgresRecordStore(mock_db_pool).get_product("prod-small")
        assert product.specs.memory_mib == 4096


class TestPoolLifecycle:

    @pytest.mark.asyncio
    async def test_close_database(self, mock_db_pool):
        await close_database(mock_db_pool)
        mock_db_pool.close.assert_awaited_once()
