"""Fixtures for tests against a real Postgres started with testcontainers."""

import asyncpg
import pytest
import pytest_asyncio

from tenant_jobs.ddl import ALL_TABLES_DDL


def docker_available() -> bool:
    """Whether a Docker daemon is reachable."""
    try:
        import docker

        client = docker.from_env()
        client.ping()
        client.close()
        return True
    except Exception:
        return False


@pytest.fixture(scope="module")
def postgres_container():
    """Provide a PostgreSQL test container."""
    if not docker_available():
        pytest.skip("Docker is not available")

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:15") as postgres:
        yield postgres


@pytest.fixture(scope="module")
def postgres_dsn(postgres_container):
    return postgres_container.get_connection_url().replace(
        "postgresql+psycopg2://", "postgresql://"
    )


@pytest_asyncio.fixture
async def db_pool(postgres_dsn):
    """Create a database pool on an empty schema."""
    pool = await asyncpg.create_pool(postgres_dsn, min_size=2, max_size=20)

    async with pool.acquire() as conn:
        await conn.execute(ALL_TABLES_DDL)
        await conn.execute(
            "TRUNCATE jobs, tenant_rate_state, quota_usage, quota_overrides, subscriptions, webhook_events"
        )

    yield pool

    await pool.close()
