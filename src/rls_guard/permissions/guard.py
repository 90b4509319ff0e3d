"""
Atomic check-and-write.

Each write runs in one transaction that locks the target row (and, for
inserts, the parent row the policy depends on), evaluates the policy against
that locked image and on the actor's memberships as committed in the store
(read FOR UPDATE in the same transaction), applies the change and commits.
Nothing the caller passes in is trusted as the current row state, and the
AccessIndex is not consulted, so a concurrent writer cannot slip a change
between the check and the effect.
"""

import logging
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Type

from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from rls_guard.api.exceptions import AuthorizationDenied, DependencyUnavailable
from rls_guard.model import MODEL_BY_ENTITY, Assignment, Classroom, row_to_dict
from rls_guard.permissions.access_index import AccessIndex
from rls_guard.permissions.entities import Entity, Operation
from rls_guard.permissions.evaluator import Evaluator
from rls_guard.permissions.events import ChangeEvent, ChangeType
from rls_guard.permissions.principal import Principal
from rls_guard.permissions.realtime import ChangeFeed
from rls_guard.permissions.relationships import SqlRelationshipResolver

logger = logging.getLogger(__name__)

# entity -> (column on the new row, parent model) locked while an insert is checked
PARENT_LOCKS: Dict[Entity, Tuple[str, Type[Any]]] = {
    Entity.enrollments: ("classroom_id", Classroom),
    Entity.assignments: ("classroom_id", Classroom),
    Entity.progress: ("assignment_id", Assignment),
}


class MutationGuard:

    def __init__(self, evaluator: Evaluator, session_factory: Callable[[], Session],
                 index: Optional[AccessIndex] = None, feed: Optional[ChangeFeed] = None):
        self.evaluator = evaluator
        self.session_factory = session_factory
        self.index = index or evaluator.index
        self.feed = feed or ChangeFeed()

    def insert(self, principal: Principal, entity: Entity, values: Mapping[str, Any]) -> Dict[str, Any]:
        entity = Entity(entity)
        model = MODEL_BY_ENTITY[entity.value]
        values = dict(values)

        def apply(session: Session):
            self._lock_parent(session, entity, values)
            resolver, snapshot = self._store_view(session, principal)
            self.evaluator.authorize_write(
                principal, entity, Operation.insert, values,
                resolver=resolver, snapshot=snapshot,
            )
            instance = model(**values)
            session.add(instance)
            session.flush()
            return None, row_to_dict(instance)

        return self._run(principal, entity, ChangeType.insert, apply)[1]

    def update(self, principal: Principal, entity: Entity, row_id: Any,
               values: Mapping[str, Any]) -> Dict[str, Any]:
        entity = Entity(entity)
        values = dict(values)

        def apply(session: Session):
            instance = self._lock_row(session, principal, entity, Operation.update, row_id)
            before = row_to_dict(instance)
            resolver, snapshot = self._store_view(session, principal)
            self.evaluator.authorize_write(
                principal, entity, Operation.update, before, values,
                resolver=resolver, snapshot=snapshot,
            )
            for column, value in values.items():
                setattr(instance, column, value)
            session.flush()
            return before, row_to_dict(instance)

        return self._run(principal, entity, ChangeType.update, apply)[1]

    def delete(self, principal: Principal, entity: Entity, row_id: Any) -> Dict[str, Any]:
        entity = Entity(entity)

        def apply(session: Session):
            instance = self._lock_row(session, principal, entity, Operation.delete, row_id)
            before = row_to_dict(instance)
            resolver, snapshot = self._store_view(session, principal)
            self.evaluator.authorize_write(
                principal, entity, Operation.delete, before,
                resolver=resolver, snapshot=snapshot,
            )
            session.delete(instance)
            session.flush()
            return before, None

        return self._run(principal, entity, ChangeType.delete, apply)[0]

    def _run(self, principal: Principal, entity: Entity, change: ChangeType,
             apply: Callable[[Session], Tuple[Optional[dict], Optional[dict]]]):
        if principal.is_anonymous:
            raise AuthorizationDenied(entity.value, change.value, "anonymous")

        seq = None
        try:
            with self.session_factory() as session:
                with session.begin():
                    before, after = apply(session)
                    # Reserved while the row lock is held, so sequence order is commit order per row
                    seq = self.feed.reserve()
        except (OperationalError, InterfaceError) as e:
            if seq is not None:
                self.feed.cancel(seq)
            logger.error(f"{change.value} on {entity.value} failed in the store: {e}")
            raise DependencyUnavailable(detail={"entity": entity.value, "error": str(e.orig or e)}) from e
        except BaseException:
            if seq is not None:
                self.feed.cancel(seq)
            raise

        event = ChangeEvent(entity=entity, type=change, old=before, new=after, commit_seq=seq)
        self._after_commit(event)
        logger.debug(f"{principal.user_id} committed {change.value} on {entity.value} (seq={seq})")
        return before, after

    def _after_commit(self, event: ChangeEvent):
        # The index is updated before the caller regains control
        if event.entity == Entity.classrooms:
            self.index.on_classroom_change(event)
        elif event.entity == Entity.enrollments:
            self.index.on_enrollment_change(event)
        self.feed.publish(event)

    def _lock_row(self, session: Session, principal: Principal, entity: Entity,
                  operation: Operation, row_id: Any):
        model = MODEL_BY_ENTITY[entity.value]
        instance = session.execute(
            select(model).where(model.id == row_id).with_for_update()
        ).scalar_one_or_none()
        if instance is None:
            # Indistinguishable from a denial so existence does not leak
            logger.warning(f"{principal.user_id} tried to {operation.value} missing {entity.value} {row_id}")
            raise AuthorizationDenied(entity.value, operation.value, "predicate_failed")
        return instance

    def _lock_parent(self, session: Session, entity: Entity, values: Mapping[str, Any]):
        if entity not in PARENT_LOCKS:
            return
        column, parent = PARENT_LOCKS[entity]
        parent_id = values.get(column)
        if parent_id is not None:
            session.execute(select(parent.id).where(parent.id == parent_id).with_for_update())

    @staticmethod
    def _store_view(session: Session, principal: Principal):
        """Resolver and locked (owned, enrolled) classrooms read inside ``session``.

        The decision is taken on committed memberships, not on the AccessIndex,
        which may still be waiting for another writer's commit to be applied.
        """
        resolver = SqlRelationshipResolver(session=session)
        return resolver, resolver.memberships(principal.user_id, lock=True)
