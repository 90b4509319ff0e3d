from enum import Enum
from typing import Dict, FrozenSet

from rls_guard.model import MODEL_BY_ENTITY


class Entity(str, Enum):
    users = "users"
    classrooms = "classrooms"
    enrollments = "classroom_enrollments"
    assignments = "assignments"
    progress = "progress"


class Operation(str, Enum):
    read = "read"
    insert = "insert"
    update = "update"
    delete = "delete"


WRITE_OPERATIONS = frozenset({Operation.insert, Operation.update, Operation.delete})

# Primary keys are never writable through an update
IMMUTABLE_COLUMNS = frozenset({"id"})

GRADE_COLUMNS = frozenset({"grade", "points_earned", "feedback", "graded_at"})

ENTITY_COLUMNS: Dict[Entity, FrozenSet[str]] = {
    entity: frozenset(column.key for column in MODEL_BY_ENTITY[entity.value].__table__.columns)
    for entity in Entity
}
