"""Build record database for fleetpack.

Build runs have a small fixed schema, so tables are created when the
database is opened rather than migrated.
"""

from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def open_database(db_url: str) -> sessionmaker[Session]:
    """Open the build record database and return a session factory.

    A file-backed SQLite database gets its parent directory created first.
    Missing tables are created.

    Args:
        db_url: SQLAlchemy database URL.

    Returns:
        Session factory bound to the database. Use ``factory.begin()`` for a
        scope that commits on success and rolls back on error.
    """
    url = make_url(db_url)
    connect_args: dict[str, Any] = {}
    if url.get_backend_name() == "sqlite":
        # Build records are written from the orchestrator thread
        connect_args["check_same_thread"] = False
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, connect_args=connect_args)

    # Register the models before creating their tables
    from fleetpack.builds import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


__all__ = ["Base", "open_database"]
