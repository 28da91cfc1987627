from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from lottomoji.config import Settings
from lottomoji.db.engine import get_sessionmaker, make_engine
from lottomoji.store import SQLAlchemyDocumentStore
from lottomoji.workflows import initialize_game_state


def upgrade_db(target_revision: str = "head") -> None:
    """Apply Alembic migrations up to the requested revision."""
    project_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(project_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(project_root / "alembic"))
    command.upgrade(alembic_cfg, target_revision)


def print_tables(settings: Settings) -> None:
    """Inspect the configured database and print all table names."""
    engine = make_engine(settings.database_url)
    insp = inspect(engine)
    print("Current tables:", ", ".join(sorted(insp.get_table_names())))


def main() -> None:
    """Apply migrations, create the game-state document and report the schema."""
    settings = Settings.from_env()
    upgrade_db()
    store = SQLAlchemyDocumentStore(
        get_sessionmaker(make_engine(settings.database_url)),
        max_attempts=settings.max_transaction_attempts,
    )
    initialize_game_state(store, settings)
    print_tables(settings)


if __name__ == "__main__":
    main()
