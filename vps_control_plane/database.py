"""
Control Plane Database Layer
============================

Async PostgreSQL connection pool using asyncpg.
Handles schema migrations on startup.
"""

import logging
from pathlib import Path
from typing import Dict, Any

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


async def init_database(database_url: str, min_size: int = 2, max_size: int = 10) -> asyncpg.Pool:
    """
    Initialize the database connection pool and run migrations.

    Args:
        database_url: PostgreSQL connection string
        min_size: Minimum pool connections
        max_size: Maximum pool connections

    Returns:
        asyncpg connection pool
    """
    logger.info("Initializing database connection pool...")
    pool = await asyncpg.create_pool(
        database_url,
        min_size=min_size,
        max_size=max_size,
    )

    await run_migrations(pool)

    logger.info("Database initialized successfully")
    return pool


async def close_database(pool: asyncpg.Pool):
    """Close the database connection pool."""
    await pool.close()
    logger.info("Database connection pool closed")


async def run_migrations(pool: asyncpg.Pool):
    """
    Run pending SQL migrations in order.

    Migrations are SQL files in vps_control_plane/migrations/ named NNN_description.sql.
    Applied migrations are tracked in the schema_migrations table.
    """
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version VARCHAR(10) PRIMARY KEY,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
        """)

        applied = set()
        rows = await conn.fetch("SELECT version FROM schema_migrations ORDER BY version")
        for row in rows:
            applied.add(row["version"])

        for migration_file in sorted(MIGRATIONS_DIR.glob("*.sql")):
            version = migration_file.stem.split("_")[0]  # "000" from "000_initial_schema.sql"

            if version in applied:
                logger.debug(f"Migration {version} already applied, skipping")
                continue

            logger.info(f"Applying migration {version}: {migration_file.name}")
            sql = migration_file.read_text(encoding="utf-8")

            try:
                async with conn.transaction():
                    await conn.execute(sql)
                    await conn.execute(
                        "INSERT INTO schema_migrations (version) VALUES ($1)",
                        version,
                    )
                logger.info(f"Migration {version} applied successfully")
            except Exception as e:
                logger.error(f"Migration {version} failed: {e}")
                raise


async def check_health(pool: asyncpg.Pool) -> Dict[str, Any]:
    """Report pool size and address availability for the health endpoint."""
    rows = await pool.fetch(
        "SELECT location, status, COUNT(*) AS n FROM ip_addresses GROUP BY location, status"
    )
    addresses: Dict[str, Dict[str, int]] = {}
    for row in rows:
        addresses.setdefault(row["location"], {})[row["status"]] = row["n"]

    return {
        "status": "ok",
        "pool_size": pool.get_size(),
        "addresses": addresses,
    }
