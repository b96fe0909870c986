"""SQLAlchemy persistence: ledger and dead-letter tables, unit of work."""

from __future__ import annotations

from .dead_letters import SQLAlchemyDeadLetterStore
from .models import Base, CommandEventModel, DeadLetterModel, create_all
from .types import JSONObject
from .uow import SQLAlchemyUnitOfWork

__all__ = [
    "Base",
    "CommandEventModel",
    "DeadLetterModel",
    "JSONObject",
    "SQLAlchemyDeadLetterStore",
    "SQLAlchemyUnitOfWork",
    "create_all",
]
