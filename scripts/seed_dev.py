from lottomoji.config import Settings
from lottomoji.db.engine import get_sessionmaker, make_engine
from lottomoji.draw.symbols import SYMBOL_COUNT, generate_symbols
from lottomoji.models import Base
from lottomoji.store import SQLAlchemyDocumentStore
from lottomoji.workflows import initialize_game_state, submit_ticket

PLAYERS = ["user_01", "user_02", "user_03", None]
TICKETS_PER_PLAYER = 5


def main() -> None:
    """Seed the development database with sample tickets."""
    settings = Settings.from_env()
    engine = make_engine(settings.database_url)

    # Start from an empty schema on every run.
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    store = SQLAlchemyDocumentStore(
        get_sessionmaker(engine), max_attempts=settings.max_transaction_attempts
    )
    initialize_game_state(store, settings)

    created = 0
    for player in PLAYERS:
        for _ in range(TICKETS_PER_PLAYER):
            submit_ticket(store, generate_symbols(SYMBOL_COUNT), player)
            created += 1

    print(f"Seeded {created} tickets for {len(PLAYERS)} players.")


if __name__ == "__main__":
    main()
