"""Database migration helpers."""

from __future__ import annotations

import sys

from dotenv import load_dotenv
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from menuwatch.db.session import create_engine_from_env
from menuwatch.db.tables import metadata


def run_migrations(engine: Engine) -> None:
    """Create any missing tables and indexes."""
    metadata.create_all(engine)


def main() -> None:
    load_dotenv()
    engine = create_engine_from_env()
    try:
        run_migrations(engine)
    except SQLAlchemyError as exc:
        print(f"Migration failed: {exc}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
