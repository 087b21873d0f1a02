"""
Health Check Tests
==================

Liveness never touches dependencies; readiness fails only on Postgres.
"""

import pytest
from httpx import AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["environment"] == "test"


@pytest.mark.asyncio
async def test_root_endpoint(client: AsyncClient):
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["name"] == "Billing Reconciliation API"


class TestReadiness:
    """Tests for GET /health/ready"""

    @pytest.mark.asyncio
    async def test_ready_when_dependencies_answer(self, client, db_session, redis_client):
        response = await client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["checks"] == {"database": "ok", "redis": "ok"}
        db_session.execute.assert_awaited_once()
        redis_client.ping.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_database_down_is_not_ready(self, client, db_session):
        db_session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("refused"))

        response = await client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["database"] == "unavailable"

    @pytest.mark.asyncio
    async def test_redis_down_is_degraded_but_ready(self, client, redis_client):
        redis_client.ping.side_effect = RedisConnectionError("refused")

        response = await client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["checks"]["redis"] == "degraded"
