import pytest

from app.config import get_settings
from app.routers import health as health_module


@pytest.mark.anyio("asyncio")
async def test_healthcheck(client):
    response = await client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] in {"ok", "degraded"}
    assert payload["db_status"] in {"ok", "error"}
    assert payload["migrations_status"] in {"up_to_date", "out_of_date", "unknown"}
    assert isinstance(payload["db_ok"], bool)
    assert isinstance(payload["migrations_ok"], bool)
    assert payload["commission_table"] == "ok"
    assert isinstance(payload["scheduler_config_enabled"], bool)
    assert payload["scheduler"]["running"] is False
    assert "scheduler_lock" in payload

    stripe = payload["stripe"]
    assert stripe["webhook_secret_status"] == "ok"
    assert len(stripe["webhook_secret_fingerprints"]["primary"]) == 8
    assert stripe["webhook_secret_fingerprints"]["next"] is None
    assert "whsec" not in response.text


@pytest.mark.anyio("asyncio")
async def test_health_degrades_on_db_failure(monkeypatch, client):
    class BrokenEngine:
        def connect(self):  # pragma: no cover - simple stub
            raise RuntimeError("DB down")

    monkeypatch.setattr("app.routers.health.get_engine", lambda: BrokenEngine())

    response = await client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["db_status"] == "error"
    assert payload["migrations_status"] == "unknown"
    assert payload["db_ok"] is False
    assert payload["migrations_ok"] is False
    assert payload["scheduler_lock"] is None


@pytest.mark.anyio("asyncio")
async def test_health_reports_secret_rotation(monkeypatch, client):
    monkeypatch.setattr(get_settings(), "STRIPE_WEBHOOK_SECRET_NEXT", "whsec_rotating")

    response = await client.get("/health")

    stripe = response.json()["stripe"]
    assert stripe["webhook_secret_status"] == "rotating"
    assert stripe["webhook_secret_fingerprints"]["next"] is not None


@pytest.mark.anyio("asyncio")
async def test_health_degraded_on_invalid_commission_table(monkeypatch, client):
    monkeypatch.setattr(health_module, "_commission_status", lambda: "invalid")

    payload = (await client.get("/health")).json()

    assert payload["status"] == "degraded"
    assert payload["commission_table"] == "invalid"


def test_secret_status_values():
    assert health_module._secret_status("a", "b") == "rotating"
    assert health_module._secret_status("a", None) == "ok"
    assert health_module._secret_status(None, "b") == "partial"
    assert health_module._secret_status(None, None) == "missing"
