"""HTTP tests for the health and wearable connection routes."""

from __future__ import annotations

from uuid import UUID

import httpx
import pytest

from src.config import load_settings
from src.core.clock import FakeClock
from src.core.crypto import generate_key
from src.core.errors import AuthRevokedError, TransientIOError
from src.main import create_app
from src.reminders.sms import LogSmsTransport
from src.runtime import WEARABLE_SYNC_JOB, Runtime, build_runtime
from src.storage.memory import InMemoryRepository
from src.wearables.base import Provider
from src.wearables.tests.conftest import OTHER_USER_ID, T0, TEST_USER_ID, StubAdapter

AUTH = {"X-User-Id": str(TEST_USER_ID)}


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("OURA_CLIENT_ID", "OURA_CLIENT_SECRET", "WHOOP_CLIENT_ID", "WHOOP_CLIENT_SECRET",
                 "FITBIT_CLIENT_ID", "FITBIT_CLIENT_SECRET", "SMS_BACKEND", "STORAGE_BACKEND"):
        monkeypatch.delenv(name, raising=False)


async def _runtime(http: httpx.AsyncClient) -> tuple[Runtime, StubAdapter]:
    settings = load_settings(field_encryption_key=generate_key(), _env_file=None)
    runtime = await build_runtime(
        settings,
        repository=InMemoryRepository(),
        clock=FakeClock(T0),
        transport=LogSmsTransport(),
        http_client=http,
    )
    oura = StubAdapter(Provider.OURA)
    runtime.registry.register(oura)
    return runtime, oura


def _client(runtime: Runtime | None) -> httpx.AsyncClient:
    app = create_app()
    if runtime is not None:
        app.state.runtime = runtime
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self) -> None:
        async with httpx.AsyncClient() as http:
            runtime, _ = await _runtime(http)
            async with _client(runtime) as client:
                response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["providers"] == ["oura"]
        assert {j["name"] for j in body["jobs"]} == {
            "token_refresh", "wearable_sync", "reminder_dispatch"
        }

    @pytest.mark.asyncio
    async def test_degraded_when_a_job_failed(self) -> None:
        async with httpx.AsyncClient() as http:
            runtime, _ = await _runtime(http)
            status = runtime.scheduler.status()[WEARABLE_SYNC_JOB]
            status.last_failed = True
            status.last_error = "RuntimeError('db down')"
            async with _client(runtime) as client:
                response = await client.get("/health")

        assert response.json()["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_starting_up(self) -> None:
        async with _client(None) as client:
            response = await client.get("/health")
        assert response.status_code == 503


class TestAuth:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{}, {"X-User-Id": "not-a-uuid"}])
    async def test_missing_or_malformed_user(self, headers: dict[str, str]) -> None:
        async with httpx.AsyncClient() as http:
            runtime, _ = await _runtime(http)
            async with _client(runtime) as client:
                response = await client.get("/api/v1/wearables/connections", headers=headers)
        assert response.status_code == 401


class TestConnections:
    @pytest.mark.asyncio
    async def test_callback_list_disconnect(self) -> None:
        async with httpx.AsyncClient() as http:
            runtime, oura = await _runtime(http)
            async with _client(runtime) as client:
                created = await client.post(
                    "/api/v1/wearables/oura/callback",
                    json={"code": "code-1", "redirect_uri": "https://app.example/cb"},
                    headers=AUTH,
                )
                listed = await client.get("/api/v1/wearables/connections", headers=AUTH)
                connection_id = created.json()["id"]
                others = await client.delete(
                    f"/api/v1/wearables/connections/{connection_id}",
                    headers={"X-User-Id": str(OTHER_USER_ID)},
                )
                removed = await client.delete(
                    f"/api/v1/wearables/connections/{connection_id}", headers=AUTH
                )
                again = await client.delete(
                    f"/api/v1/wearables/connections/{connection_id}", headers=AUTH
                )
                after = await client.get("/api/v1/wearables/connections", headers=AUTH)

        assert created.status_code == 201
        body = created.json()
        assert body["provider"] == "oura"
        assert body["status"] == "active"
        assert body["reconnect_required"] is False
        assert "access_token_enc" not in body
        oura.exchange_mock.assert_awaited_once_with("code-1", "https://app.example/cb")

        assert [c["id"] for c in listed.json()] == [connection_id]
        assert others.status_code == 404
        assert removed.status_code == 204
        assert again.status_code == 404
        assert after.json() == []
        assert runtime.repository.connections[UUID(connection_id)].deleted_at == T0  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_disabled_provider(self) -> None:
        async with httpx.AsyncClient() as http:
            runtime, _ = await _runtime(http)
            async with _client(runtime) as client:
                response = await client.post(
                    "/api/v1/wearables/whoop/callback", json={"code": "c"}, headers=AUTH
                )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_provider(self) -> None:
        async with httpx.AsyncClient() as http:
            runtime, _ = await _runtime(http)
            async with _client(runtime) as client:
                response = await client.post(
                    "/api/v1/wearables/garmin/callback", json={"code": "c"}, headers=AUTH
                )
        assert response.status_code == 422

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error, status",
        [(AuthRevokedError("invalid_grant"), 400), (TransientIOError("Oura returned 503"), 502)],
    )
    async def test_exchange_failures(self, error: Exception, status: int) -> None:
        async with httpx.AsyncClient() as http:
            runtime, oura = await _runtime(http)
            oura.exchange_mock.side_effect = error
            async with _client(runtime) as client:
                response = await client.post(
                    "/api/v1/wearables/oura/callback", json={"code": "c"}, headers=AUTH
                )
        assert response.status_code == status
        assert runtime.repository.connections == {}  # type: ignore[attr-defined]
