# laundry/deps.py
"""Service wiring and FastAPI dependencies.

Clients are built once per app (``build_services``) and handed to the
routers through ``app.state.services``; tests pass their own ``Services``
with in-memory backends and fakes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncEngine
from supabase import create_client

from .auth import Identity, SupabaseIdentityProvider
from .config import Settings
from .customers import CustomerPayments
from .db import create_schema, make_engine, make_sessionmaker
from .errors import Forbidden, Unauthenticated
from .gateway import PaymentGateway, make_stripe_gateway
from .lifecycle import FlatRatePricing, LifecycleEngine
from .onboarding import WasherOnboarding
from .reconciliation import InMemorySettlementQueue, Reconciler, SettlementQueue, SqlSettlementQueue
from .settlement import PaymentCoordinator
from .store import InMemoryJobStore, JobStore, SqlJobStore
from .washers import InMemoryWasherRegistry, SupabaseWasherRegistry, WasherAccountRegistry

logger = logging.getLogger("laundry.deps")


class IdentityProvider(Protocol):
    async def authenticate(self, token: str) -> Identity:
        ...


@dataclass
class Services:
    settings: Settings
    store: JobStore
    registry: WasherAccountRegistry
    gateway: PaymentGateway
    queue: SettlementQueue
    identity: IdentityProvider
    engine: LifecycleEngine
    coordinator: PaymentCoordinator
    reconciler: Reconciler
    onboarding: WasherOnboarding
    customers: CustomerPayments
    db_engine: Optional[AsyncEngine] = None

    async def close(self) -> None:
        if self.db_engine is not None:
            await self.db_engine.dispose()


def assemble_services(
    settings: Settings,
    store: JobStore,
    registry: WasherAccountRegistry,
    gateway: PaymentGateway,
    queue: SettlementQueue,
    identity: IdentityProvider,
    db_engine: Optional[AsyncEngine] = None,
) -> Services:
    """Build the domain services over the given backends."""
    engine = LifecycleEngine(
        store,
        registry,
        pricing=FlatRatePricing(settings.flat_rate_cents),
        store_timeout=settings.store_timeout_seconds,
        require_active_washer=settings.require_active_washer,
    )
    coordinator = PaymentCoordinator(
        store,
        gateway,
        queue,
        gateway_timeout=settings.gateway_timeout_seconds,
        store_timeout=settings.store_timeout_seconds,
    )
    reconciler = Reconciler(store, queue, gateway, gateway_timeout=settings.gateway_timeout_seconds)
    onboarding = WasherOnboarding(
        registry,
        gateway,
        settings.base_url,
        gateway_timeout=settings.gateway_timeout_seconds,
        store_timeout=settings.store_timeout_seconds,
    )
    customers = CustomerPayments(gateway, settings.base_url, gateway_timeout=settings.gateway_timeout_seconds)
    return Services(
        settings=settings,
        store=store,
        registry=registry,
        gateway=gateway,
        queue=queue,
        identity=identity,
        engine=engine,
        coordinator=coordinator,
        reconciler=reconciler,
        onboarding=onboarding,
        customers=customers,
        db_engine=db_engine,
    )


async def build_services(settings: Settings) -> Services:
    db_engine = None
    if settings.job_store == "sql":
        db_engine = make_engine(settings.supabase_db_url or "")
        await create_schema(db_engine)
        sessions = make_sessionmaker(db_engine)
        store: JobStore = SqlJobStore(sessions)
        queue: SettlementQueue = SqlSettlementQueue(sessions)
    else:
        logger.warning("Using in-memory job store; jobs are lost on restart")
        store = InMemoryJobStore()
        queue = InMemorySettlementQueue()

    if settings.washer_registry == "supabase":
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise RuntimeError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY")
        registry: WasherAccountRegistry = SupabaseWasherRegistry(
            create_client(settings.supabase_url, settings.supabase_service_role_key)
        )
    else:
        registry = InMemoryWasherRegistry()

    identity = SupabaseIdentityProvider(
        settings.supabase_url or "",
        anon_key=settings.supabase_anon_key,
        jwt_secret=settings.supabase_jwt_secret,
        timeout=settings.auth_timeout_seconds,
    )
    gateway = make_stripe_gateway(settings.stripe_secret_key, settings.stripe_currency)
    return assemble_services(settings, store, registry, gateway, queue, identity, db_engine=db_engine)


# ──────────────────────────────────────────────────────────────────────────────
# Dependencies
# ──────────────────────────────────────────────────────────────────────────────
security = HTTPBearer(auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_engine(request: Request) -> LifecycleEngine:
    return get_services(request).engine


def get_coordinator(request: Request) -> PaymentCoordinator:
    return get_services(request).coordinator


def get_reconciler(request: Request) -> Reconciler:
    return get_services(request).reconciler


def get_onboarding(request: Request) -> WasherOnboarding:
    return get_services(request).onboarding


def get_customers(request: Request) -> CustomerPayments:
    return get_services(request).customers


async def get_identity(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Identity:
    if credentials is None or not credentials.credentials:
        raise Unauthenticated("Missing bearer token")
    return await get_services(request).identity.authenticate(credentials.credentials)


def require_role(*roles: str) -> Any:
    async def _check(identity: Identity = Depends(get_identity)) -> Identity:
        if identity.role not in roles:
            raise Forbidden(f"This action requires role: {', '.join(roles)}")
        return identity

    return _check
