"""
CraftCtrl - FastAPI Application Entrypoint

This module initializes the FastAPI application with:
- CORS and security middleware
- Authentication and admin routes
- Database lifecycle, catalog seeding and a startup maintenance sweep
- Mapping of CraftCtrlError to JSON error responses

Services are built once per application and stored on app.state;
route dependencies read them from there.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from craftctrl import __version__
from craftctrl.admin.routes import router as admin_router
from craftctrl.auth.clock import Clock, IdGenerator
from craftctrl.auth.database import get_engine, get_session_factory, init_db, load_catalog
from craftctrl.auth.mailer import ResetMailer
from craftctrl.auth.password import hash_password
from craftctrl.auth.permissions import PermissionResolver
from craftctrl.auth.routes import router as auth_router
from craftctrl.auth.service import AuthService
from craftctrl.auth.sessions import SessionManager
from craftctrl.auth.store import CredentialStore
from craftctrl.auth.tokens import TokenCodec
from craftctrl.auth.two_factor import TwoFactorService
from craftctrl.auth.users import UserService
from craftctrl.config import Settings, settings as default_settings
from craftctrl.errors import CraftCtrlError
from craftctrl.gateway.middleware import SecurityMiddleware
from craftctrl.logging import configure_logging, get_logger


logger = get_logger(__name__)


def wire_services(
    app: FastAPI,
    engine,
    config: Settings = default_settings,
    clock: Optional[Clock] = None,
    ids: Optional[IdGenerator] = None,
    mailer: Optional[ResetMailer] = None,
) -> CredentialStore:
    """
    Build every auth service over one store and attach them to app.state.

    Returns:
        The credential store the services share
    """
    clock = clock or Clock()
    ids = ids or IdGenerator()

    store = CredentialStore(get_session_factory(engine), clock, ids)
    sessions = SessionManager(store, clock, ids)
    permissions = PermissionResolver(store)
    two_factor = TwoFactorService(store, clock)
    codec = TokenCodec(config.SECRET_KEY, config.JWT_ALGORITHM, clock, ids)
    mailer = mailer or ResetMailer(
        api_url=config.API_URL,
        frontend_url=config.FRONTEND_URL,
        sender_email=config.SENDER_EMAIL,
        api_key=config.MAILERSEND_API_KEY,
    )

    app.state.db_engine = engine
    app.state.store = store
    app.state.session_manager = sessions
    app.state.permission_resolver = permissions
    app.state.two_factor_service = two_factor
    app.state.token_codec = codec
    app.state.auth_service = AuthService(
        store,
        sessions,
        permissions,
        two_factor,
        codec,
        mailer,
        clock=clock,
        ids=ids,
        bcrypt_rounds=config.BCRYPT_ROUNDS,
        reset_cooldown_minutes=config.RESET_COOLDOWN_MINUTES,
    )
    app.state.user_service = UserService(store, bcrypt_rounds=config.BCRYPT_ROUNDS)

    return store


def seed_defaults(store: CredentialStore, config: Settings = default_settings) -> dict:
    """Insert the permission catalog, system roles and the first admin."""
    entries, roles = load_catalog()
    return store.seed_defaults(
        entries,
        roles,
        admin_username=config.DEFAULT_ADMIN_USERNAME,
        admin_email=config.DEFAULT_ADMIN_EMAIL,
        admin_password_hash=lambda: hash_password(
            config.DEFAULT_ADMIN_PASSWORD, config.BCRYPT_ROUNDS
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
        - Configure structured logging
        - Create tables, seed the catalog and default admin
        - Purge expired sessions, temp sessions and reset tokens
        - Wire services onto app.state (skipped if already wired)

    Shutdown:
        - Dispose the engine this lifespan created
    """
    config: Settings = app.state.settings
    configure_logging(config.LOG_LEVEL, json_output=config.LOG_JSON or config.is_production)

    engine = None
    if getattr(app.state, "store", None) is None:
        engine = get_engine(config.DATABASE_URL)
        init_db(engine)
        store = wire_services(app, engine, config)
        seed_defaults(store, config)
        removed = store.purge_expired()
        logger.info("startup_sweep", removed=removed)

    logger.info("app_started", environment=config.ENVIRONMENT, version=__version__)

    yield

    if engine is not None:
        engine.dispose()


async def craftctrl_error_handler(request: Request, exc: CraftCtrlError) -> JSONResponse:
    """Map typed service errors to {"detail": ...} responses."""
    if exc.status_code >= 500:
        logger.error("request_failed", error=exc.message, path=request.url.path)

    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.message,
            "request_id": getattr(request.state, "request_id", None),
        },
        headers=headers,
    )


def create_app(config: Settings = default_settings) -> FastAPI:
    app = FastAPI(
        title="CraftCtrl",
        description="Control-panel API: accounts, sessions and server permissions",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "PUT", "PATCH"],
        allow_headers=["Authorization", "Content-Type"],
    )
    app.add_middleware(SecurityMiddleware)

    app.add_exception_handler(CraftCtrlError, craftctrl_error_handler)

    app.include_router(auth_router, prefix="/api/v1")
    app.include_router(admin_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        """Health check endpoint for local dev tooling."""
        return {"status": "healthy", "version": __version__}

    @app.get("/")
    async def root():
        return {
            "name": "CraftCtrl",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()
