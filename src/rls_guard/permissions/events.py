from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field

from rls_guard.permissions.entities import Entity


class ChangeType(str, Enum):
    insert = "insert"
    update = "update"
    delete = "delete"


class ChangeEvent(BaseModel):
    """A committed row change with before/after images and its global commit sequence."""

    model_config = ConfigDict(frozen=True)

    entity: Entity
    type: ChangeType
    old: Optional[Dict[str, Any]] = None
    new: Optional[Dict[str, Any]] = None
    commit_seq: Optional[int] = None
    committed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def image(self) -> Optional[Dict[str, Any]]:
        """Row image visibility is judged on: the pre-delete image for deletes, else the post image."""
        if self.type == ChangeType.delete:
            return self.old
        return self.new
