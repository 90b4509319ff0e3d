from typing import Any, Dict

from .base import Base, metadata
from .auth import User
from .classroom import Classroom, Enrollment, Assignment, Progress

# Import all models to ensure relationships are properly set up
from . import auth, classroom

# Table name -> model; table names double as entity names for the policy engine
MODEL_BY_ENTITY = {
    model.__tablename__: model
    for model in (User, Classroom, Enrollment, Assignment, Progress)
}


def row_to_dict(instance: Any) -> Dict[str, Any]:
    """Column image of a mapped instance, the row shape the policy engine evaluates."""
    return {
        column.key: getattr(instance, column.key)
        for column in instance.__table__.columns
    }


__all__ = [
    'Base',
    'metadata',
    'User',
    'Classroom',
    'Enrollment',
    'Assignment',
    'Progress',
    'MODEL_BY_ENTITY',
    'row_to_dict',
]
