"""
CraftCtrl - Database Configuration

SQLModel database setup with connection pooling.
Supports PostgreSQL (production) and SQLite (development).

Usage:
    from craftctrl.auth.database import get_engine, init_db

    engine = get_engine()
    init_db(engine)  # Creates tables
"""

from pathlib import Path
from typing import Dict, List, NamedTuple

import yaml
from sqlalchemy import event
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from craftctrl.config import settings


CATALOG_PATH = Path(__file__).parent / "catalog.yaml"


class CatalogEntry(NamedTuple):
    """One permission of the seeded catalog."""
    name: str
    resource: str
    action: str
    description: str


class SystemRole(NamedTuple):
    name: str
    description: str
    grant_all: bool


def get_database_url() -> str:
    """
    Get database URL from settings.

    Returns:
        PostgreSQL or SQLite connection string
    """
    if settings.DATABASE_URL:
        return settings.DATABASE_URL

    return "sqlite:///./data/craftctrl.db"


def get_engine(database_url: str = None, echo: bool = False):
    """
    Create SQLAlchemy engine with appropriate configuration.

    Args:
        database_url: Override database URL
        echo: Log SQL statements

    Returns:
        SQLAlchemy Engine
    """
    url = database_url or get_database_url()

    if url.startswith("sqlite"):
        if url.startswith("sqlite:///") and ":memory:" not in url:
            Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)

        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        # SQLite only enforces foreign keys when enabled per connection
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    else:
        engine = create_engine(
            url,
            echo=echo,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )

    return engine


def init_db(engine) -> None:
    """
    Initialize database tables.

    Creates all tables defined in SQLModel models.
    Safe to call multiple times (uses CREATE IF NOT EXISTS).
    """
    # Import models to register them with SQLModel
    from craftctrl.auth import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session_factory(engine):
    """
    Create a session factory bound to engine.

    Returns:
        Callable that creates new database sessions
    """
    def session_factory() -> Session:
        return Session(engine, expire_on_commit=False)

    return session_factory


def load_catalog(path: Path = CATALOG_PATH) -> tuple[List[CatalogEntry], Dict[str, SystemRole]]:
    """
    Load the permission catalog and system roles from YAML.

    Returns:
        Tuple of (permission entries, system roles by name)
    """
    with open(path, "r") as f:
        config = yaml.safe_load(f)

    entries = []
    for prefix, block in (config.get("permissions") or {}).items():
        for action, description in (block.get("actions") or {}).items():
            entries.append(CatalogEntry(
                name=f"{prefix}:{action}",
                resource=block["resource"],
                action=action,
                description=description,
            ))

    roles = {
        name: SystemRole(
            name=name,
            description=entry.get("description", ""),
            grant_all=bool(entry.get("grant_all", False)),
        )
        for name, entry in (config.get("system_roles") or {}).items()
    }

    return entries, roles
