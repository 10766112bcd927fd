"""ORM models of the context store."""

from agentcluster.database.models.base import Base
from agentcluster.database.models.context import TaskOutput

__all__ = ["Base", "TaskOutput"]
