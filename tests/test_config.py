"""Tests for environment-driven settings and service assembly."""

import pytest

from laundry.config import Settings
from laundry.deps import build_services


def test_defaults(monkeypatch):
    monkeypatch.delenv("FLAT_RATE_CENTS", raising=False)
    settings = Settings(_env_file=None)

    assert settings.flat_rate_cents == 1500
    assert settings.job_store == "memory"
    assert settings.require_active_washer is True


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("FLAT_RATE_CENTS", "2000")
    monkeypatch.setenv("JOB_STORE", "sql")
    monkeypatch.setenv("REQUIRE_ACTIVE_WASHER", "false")

    settings = Settings(_env_file=None)

    assert settings.flat_rate_cents == 2000
    assert settings.job_store == "sql"
    assert settings.require_active_washer is False


@pytest.mark.asyncio
async def test_build_services_with_sqlite(tmp_path):
    settings = Settings(
        _env_file=None,
        job_store="sql",
        supabase_db_url=f"sqlite+aiosqlite:///{tmp_path / 'app.db'}",
        supabase_url="https://proj.supabase.co",
        stripe_secret_key="sk_test_123",
        flat_rate_cents=900,
    )

    services = await build_services(settings)
    try:
        job = await services.engine.create_job("Alice", "1 Main St")
        assert job.price_cents == 900
        assert (await services.store.get_by_id(job.id)).status == job.status
    finally:
        await services.close()


@pytest.mark.asyncio
async def test_build_services_needs_stripe_key():
    with pytest.raises(RuntimeError):
        await build_services(Settings(_env_file=None, supabase_url="https://proj.supabase.co"))
