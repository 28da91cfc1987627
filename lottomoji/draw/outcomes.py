"""Outcome values returned by a settlement attempt."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class Settled:
    """This call settled the window and published ``result_id``."""

    result_id: str
    status = "settled"
    success = True

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "success": True, "resultId": self.result_id}


@dataclass(frozen=True)
class AlreadySettled:
    """The window already had a result; nothing was written."""

    result_id: str
    status = "already_settled"
    success = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "success": True,
            "alreadyProcessed": True,
            "resultId": self.result_id,
        }


@dataclass(frozen=True)
class Contended:
    """Another process holds a fresh lock on the window."""

    status = "contended"
    success = False

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "success": False, "inProgress": True}


@dataclass(frozen=True)
class Failed:
    """The attempt failed; the window can be retried."""

    message: str
    status = "failed"
    success = False

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "success": False, "error": self.message}


DrawOutcome = Union[Settled, AlreadySettled, Contended, Failed]

__all__ = ["AlreadySettled", "Contended", "DrawOutcome", "Failed", "Settled"]
