import logging
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional

from sqlalchemy import Select
from sqlalchemy.orm import Session

from rls_guard.permissions.access_index import AccessIndex
from rls_guard.permissions.entities import Entity, Operation
from rls_guard.permissions.evaluator import Columns, Decision, Evaluator
from rls_guard.permissions.guard import MutationGuard
from rls_guard.permissions.policies import PolicySet
from rls_guard.permissions.principal import Principal
from rls_guard.permissions.query_builders import VisibilityQueryBuilder
from rls_guard.permissions.realtime import ChangeFeed, ChangeFilter, Subscription
from rls_guard.permissions.relationships import RelationshipResolver, SqlRelationshipResolver

logger = logging.getLogger(__name__)


class AccessControlEngine:
    """The surface a data-access gateway talks to.

    Wires one AccessIndex, Evaluator, ChangeFeed/ChangeFilter and, when a
    session factory is available, a MutationGuard that feeds both.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None,
                 resolver: Optional[RelationshipResolver] = None,
                 policy_set: Optional[PolicySet] = None,
                 index: Optional[AccessIndex] = None):
        if resolver is None and session_factory is not None:
            resolver = SqlRelationshipResolver(session_factory=session_factory)

        self.session_factory = session_factory
        self.index = index or AccessIndex()
        self.resolver = resolver
        self.evaluator = Evaluator(self.index, resolver, policy_set)
        self.feed = ChangeFeed()
        self.change_filter = ChangeFilter(self.evaluator, self.feed)
        self.guard = (
            MutationGuard(self.evaluator, session_factory, self.index, self.feed)
            if session_factory is not None else None
        )

    @property
    def policy_set(self) -> PolicySet:
        return self.evaluator.policy_set

    def start(self):
        """Load the access index from the store."""
        if self.session_factory is None:
            raise RuntimeError("AccessControlEngine.start needs a session factory")
        with self.session_factory() as session:
            self.index.rebuild(session)
        logger.info(f"Access control engine ready, policy {self.policy_set.policy_hash}")

    # Reads

    def evaluate(self, principal: Principal, entity: Entity, operation: Operation,
                 row: Mapping[str, Any], requested_columns: Columns = None) -> Decision:
        return self.evaluator.evaluate(principal, entity, operation, row, requested_columns)

    def filter_rows(self, principal: Principal, entity: Entity, rows: Iterable[Mapping[str, Any]],
                    operation: Operation = Operation.read) -> List[Dict[str, Any]]:
        return self.evaluator.filter_rows(principal, entity, rows, operation)

    def mask_row(self, principal: Principal, entity: Entity,
                 row: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
        return self.evaluator.mask_row(principal, entity, row)

    def visible_query(self, principal: Principal, entity: Entity) -> Select:
        return VisibilityQueryBuilder.build_query(principal, entity, self.index)

    def user_role(self, user_id: str) -> Optional[str]:
        if self.resolver is None:
            return None
        user = self.resolver.get_user(user_id)
        return user.get("role") if user else None

    # Writes

    def authorize_write(self, principal: Principal, entity: Entity, operation: Operation,
                        row: Mapping[str, Any], columns: Columns = None) -> FrozenSet[str]:
        return self.evaluator.authorize_write(principal, entity, operation, row, columns)

    def insert(self, principal: Principal, entity: Entity, values: Mapping[str, Any]) -> Dict[str, Any]:
        return self._require_guard().insert(principal, entity, values)

    def update(self, principal: Principal, entity: Entity, row_id: Any,
               values: Mapping[str, Any]) -> Dict[str, Any]:
        return self._require_guard().update(principal, entity, row_id, values)

    def delete(self, principal: Principal, entity: Entity, row_id: Any) -> Dict[str, Any]:
        return self._require_guard().delete(principal, entity, row_id)

    # Subscriptions

    def subscribe(self, principal: Principal, entity: Entity, filter_spec: Any = None) -> Subscription:
        return self.change_filter.subscribe(principal, entity, filter_spec)

    def unsubscribe(self, subscription: Subscription):
        self.change_filter.unsubscribe(subscription)

    def _require_guard(self) -> MutationGuard:
        if self.guard is None:
            raise RuntimeError("Writes need an AccessControlEngine built with a session factory")
        return self.guard
