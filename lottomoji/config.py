"""Environment-driven configuration for the draw engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

load_dotenv()

# Project root directory (repo root)
ROOT_DIR = Path(__file__).resolve().parents[1]
DEFAULT_DB_URL = os.getenv("DB_URL", "sqlite:///./dev.db")


@dataclass(frozen=True)
class Settings:
    """Runtime settings shared by the draw coordinator and its triggers.

    Attributes
    ----------
    database_url : str
        SQLAlchemy URL of the document store database.
    cadence_minutes : int
        Length of one draw window. Must divide a day evenly.
    lock_stale_seconds : int
        Age after which an ``in-progress`` window lock may be reclaimed.
    timezone : str
        IANA zone used to derive window keys from wall-clock time.
    operators : tuple[str, ...]
        Operator ids allowed to trigger a manual draw. Empty means any
        authenticated operator.
    max_transaction_attempts : int
        Optimistic transaction retries before giving up.
    """

    database_url: str = DEFAULT_DB_URL
    cadence_minutes: int = 10
    lock_stale_seconds: int = 30
    timezone: str = "UTC"
    operators: tuple[str, ...] = field(default_factory=tuple)
    max_transaction_attempts: int = 5

    def __post_init__(self) -> None:
        if self.cadence_minutes <= 0 or 1440 % self.cadence_minutes != 0:
            raise ValueError("cadence_minutes must be a positive divisor of 1440")
        if self.lock_stale_seconds <= 0:
            raise ValueError("lock_stale_seconds must be positive")
        if self.max_transaction_attempts <= 0:
            raise ValueError("max_transaction_attempts must be positive")
        # Resolve once so an unknown zone fails here rather than at the first draw.
        self.tzinfo

    @property
    def tzinfo(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone '{self.timezone}'") from exc

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables.

        Parameters
        ----------
        environ : Optional[Mapping[str, str]], default: None
            Mapping to read instead of ``os.environ`` (mostly for tests).

        Raises
        ------
        ValueError
            If a numeric variable is not an integer or a value is out of range.
        """

        source = os.environ if environ is None else environ

        def _int(name: str, default: int) -> int:
            raw = source.get(name)
            if raw is None or str(raw).strip() == "":
                return default
            try:
                return int(raw)
            except ValueError as exc:
                raise ValueError(
                    f"Environment variable '{name}' must be an integer"
                ) from exc

        operators_raw = source.get("DRAW_OPERATORS") or ""
        operators = tuple(
            op.strip() for op in operators_raw.split(",") if op.strip()
        )
        return cls(
            database_url=source.get("DB_URL") or DEFAULT_DB_URL,
            cadence_minutes=_int("DRAW_CADENCE_MINUTES", 10),
            lock_stale_seconds=_int("DRAW_LOCK_STALE_SECONDS", 30),
            timezone=source.get("DRAW_TIMEZONE") or "UTC",
            operators=operators,
            max_transaction_attempts=_int("STORE_MAX_TRANSACTION_ATTEMPTS", 5),
        )


__all__ = ["DEFAULT_DB_URL", "ROOT_DIR", "Settings"]
