import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple, Type

from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from rls_guard.api.exceptions import DependencyUnavailable
from rls_guard.model import Assignment, Classroom, Enrollment, User, row_to_dict

logger = logging.getLogger(__name__)


class RelationshipResolver(ABC):
    """Point lookups for join targets. Missing rows come back as None.

    Implementations raise DependencyUnavailable when the store cannot answer;
    that must never be confused with a row that does not exist.
    """

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def get_classroom(self, classroom_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def get_assignment(self, assignment_id: str) -> Optional[Dict[str, Any]]:
        pass

    def classroom_for_assignment(self, assignment_id: str) -> Optional[str]:
        assignment = self.get_assignment(assignment_id)
        if assignment is None:
            return None
        return assignment.get("classroom_id")


class SqlRelationshipResolver(RelationshipResolver):
    """Resolver backed by SQLAlchemy.

    Bound to a ``session`` it reads inside that session's transaction (the
    Mutation Guard uses this so checks see the locked state). Given a
    ``session_factory`` instead, every lookup runs in its own short session.
    """

    def __init__(self, session: Optional[Session] = None,
                 session_factory: Optional[Callable[[], Session]] = None):
        if session is None and session_factory is None:
            raise ValueError("SqlRelationshipResolver needs a session or a session_factory")
        self._session = session
        self._session_factory = session_factory

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch(User, user_id)

    def get_classroom(self, classroom_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch(Classroom, classroom_id)

    def get_assignment(self, assignment_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch(Assignment, assignment_id)

    def _fetch(self, model: Type[Any], row_id: Any) -> Optional[Dict[str, Any]]:
        if row_id is None:
            return None
        try:
            if self._session is not None:
                instance = self._session.get(model, row_id)
                return row_to_dict(instance) if instance is not None else None

            with self._session_factory() as session:
                instance = session.get(model, row_id)
                return row_to_dict(instance) if instance is not None else None
        except (OperationalError, InterfaceError) as e:
            logger.error(f"Lookup of {model.__tablename__} {row_id} failed: {e}")
            raise DependencyUnavailable(
                detail={"entity": model.__tablename__, "error": str(e.orig or e)}
            ) from e

    def memberships(self, user_id: Optional[str], lock: bool = False) -> Tuple[FrozenSet[str], FrozenSet[str]]:
        """Classrooms ``user_id`` owns and attends as the store holds them.

        With ``lock`` the rows are read FOR UPDATE, so the answer stays true until
        the bound session's transaction ends.
        """
        if user_id is None:
            return frozenset(), frozenset()
        owned = select(Classroom.id).where(Classroom.teacher_id == user_id)
        enrolled = select(Enrollment.classroom_id).where(Enrollment.user_id == user_id)
        if lock:
            owned = owned.with_for_update()
            enrolled = enrolled.with_for_update()
        try:
            if self._session is not None:
                return self._memberships(self._session, owned, enrolled)
            with self._session_factory() as session:
                return self._memberships(session, owned, enrolled)
        except (OperationalError, InterfaceError) as e:
            logger.error(f"Membership lookup for {user_id} failed: {e}")
            raise DependencyUnavailable(
                detail={"entity": Enrollment.__tablename__, "error": str(e.orig or e)}
            ) from e

    @staticmethod
    def _memberships(session: Session, owned, enrolled) -> Tuple[FrozenSet[str], FrozenSet[str]]:
        return (
            frozenset(str(row_id) for row_id in session.execute(owned).scalars()),
            frozenset(str(row_id) for row_id in session.execute(enrolled).scalars()),
        )
