"""
Application factory: wires the store, codec and services into a FastAPI app.

Run with: uvicorn tenant_idp.main:create_app --factory
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from loguru import logger

from tenant_idp.config import Settings, settings as default_settings
from tenant_idp.database import create_engine, create_session_factory, create_tables
from tenant_idp.oauth.codec import CodecConfig, TokenCodec
from tenant_idp.oauth.introspection import IntrospectionService
from tenant_idp.oauth.registry import ClientRegistry
from tenant_idp.oauth.router import admin_router
from tenant_idp.oauth.router import router as oauth_router
from tenant_idp.oauth.service import OAuthService
from tenant_idp.sso.logout import LogoutNotifier, SingleLogoutService
from tenant_idp.sso.router import router as sso_router
from tenant_idp.sso.service import SessionService
from tenant_idp.store.base import DataStore
from tenant_idp.store.memory import MemoryStore


def build_store(settings: Settings):
    """
    Create the configured store; returns (store, engine), engine being None for
    the in-memory backend.
    """
    if settings.store_backend == "memory":
        return MemoryStore(), None
    if settings.store_backend != "sql":
        raise ValueError(f"Unknown store backend: {settings.store_backend}")
    from tenant_idp.store.sql import SQLStore

    engine = create_engine(settings.sqlalchemy, echo=settings.debug)
    return SQLStore(create_session_factory(engine), settings.redis_client), engine


def create_app(
    store: Optional[DataStore] = None,
    settings: Optional[Settings] = None,
    notifier: Optional[LogoutNotifier] = None,
) -> FastAPI:
    settings = settings or default_settings
    engine = None
    if store is None:
        store, engine = build_store(settings)

    if not settings.jwt_secret:
        logger.warning("IDP_JWT_SECRET is not set, token issuance will fail")

    codec = TokenCodec(
        CodecConfig(
            secret_key=settings.jwt_secret,
            issuer=settings.issuer,
            algorithm=settings.jwt_algorithm,
        )
    )
    registry = ClientRegistry(store, codec)
    sessions = SessionService(
        store,
        codec,
        session_ttl=settings.session_ttl,
        remember_me_ttl=settings.remember_me_session_ttl,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if engine is not None:
            await create_tables(engine)
            logger.info("Initialized the database...")
        yield
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title="Tenant IdP", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.codec = codec
    app.state.registry = registry
    app.state.sessions = sessions
    app.state.oauth = OAuthService(store, codec, registry, sessions)
    app.state.introspection = IntrospectionService(store, codec, registry)
    app.state.logout = SingleLogoutService(
        sessions, notifier or LogoutNotifier(timeout=settings.logout_notification_timeout)
    )

    app.include_router(oauth_router, tags=["OAuth"])
    app.include_router(admin_router, tags=["Clients"])
    app.include_router(sso_router, tags=["SSO"])

    @app.get("/ping")
    async def ping():
        return {"message": "pong"}

    return app
