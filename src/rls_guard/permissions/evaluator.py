import logging
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from rls_guard.api.exceptions import AuthorizationDenied, InvalidReference
from rls_guard.permissions.access_index import AccessIndex
from rls_guard.permissions.entities import ENTITY_COLUMNS, IMMUTABLE_COLUMNS, Entity, Operation
from rls_guard.permissions.policies import PolicyContext, PolicySet, Snapshot, get_policy_set
from rls_guard.permissions.principal import Principal
from rls_guard.permissions.relationships import RelationshipResolver

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]
Columns = Union[Mapping[str, Any], Iterable[str], None]


class DecisionOutcome(str, Enum):
    allow = "allow"
    deny = "deny"
    partial = "partial"


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity: Entity
    operation: Operation
    outcome: DecisionOutcome
    allowed_columns: FrozenSet[str] = frozenset()
    readable_columns: FrozenSet[str] = frozenset()
    denied_columns: FrozenSet[str] = frozenset()
    matched_rules: Tuple[str, ...] = ()
    reason: str = "ok"
    policy_version: str = ""

    @property
    def visible(self) -> bool:
        return self.operation == Operation.read and self.outcome != DecisionOutcome.deny

    @property
    def allowed(self) -> bool:
        return self.outcome != DecisionOutcome.deny


class Evaluator:
    """Applies a PolicySet to candidate rows.

    Evaluation has no side effects: the only state it reads is the AccessIndex
    snapshot and the resolver, and lookups are memoized for a single call only.
    """

    def __init__(self, index: AccessIndex, resolver: Optional[RelationshipResolver] = None,
                 policy_set: Optional[PolicySet] = None):
        self.index = index
        self.resolver = resolver
        self.policy_set = policy_set or get_policy_set()

    def context(self, principal: Principal, resolver: Optional[RelationshipResolver] = None,
                snapshot: Optional[Snapshot] = None) -> PolicyContext:
        return PolicyContext(principal, self.index, resolver or self.resolver, snapshot)

    def evaluate(self, principal: Principal, entity: Entity, operation: Operation, row: Row,
                 requested_columns: Columns = None, *,
                 resolver: Optional[RelationshipResolver] = None,
                 context: Optional[PolicyContext] = None,
                 snapshot: Optional[Snapshot] = None) -> Decision:
        """Decide one operation on one row.

        For updates ``row`` is the committed image and ``requested_columns`` may be
        the mapping of new values; the rules must then hold for the committed image
        and for the image the update would produce. ``snapshot`` replaces the
        AccessIndex view of the actor's (owned, enrolled) classrooms.
        """
        entity = Entity(entity)
        operation = Operation(operation)
        requested = self._requested(operation, requested_columns)

        if principal.is_anonymous:
            return self._deny(entity, operation, "anonymous")

        rules = [rule for rule in self.policy_set.rules_for(entity, operation)
                 if rule.applies_to(principal, operation)]
        if not rules:
            return self._deny(entity, operation, "no_matching_rule")

        ctx = context or self.context(principal, resolver, snapshot)
        images = [row]
        if operation == Operation.update and isinstance(requested_columns, Mapping):
            images.append({**row, **requested_columns})

        matched = []
        invalid_reference = None
        for rule in rules:
            try:
                if all(rule.holds(ctx, image) for image in images):
                    matched.append(rule)
            except InvalidReference as e:
                invalid_reference = e

        if not matched:
            reason = "invalid_reference" if invalid_reference else "predicate_failed"
            return self._deny(entity, operation, reason)

        names = tuple(rule.name for rule in matched)

        if operation == Operation.read:
            readable = frozenset().union(*(rule.readable_columns(ctx, row) for rule in matched))
            outcome = DecisionOutcome.allow if readable >= ENTITY_COLUMNS[entity] else DecisionOutcome.partial
            return Decision(
                entity=entity, operation=operation, outcome=outcome,
                readable_columns=readable, matched_rules=names,
                policy_version=self.policy_set.version,
            )

        allowed = frozenset.intersection(*(rule.column_mask(operation) for rule in matched))
        denied = requested - allowed
        if denied:
            return Decision(
                entity=entity, operation=operation, outcome=DecisionOutcome.deny,
                allowed_columns=allowed, denied_columns=denied, matched_rules=names,
                reason="column_denied", policy_version=self.policy_set.version,
            )

        writable = ENTITY_COLUMNS[entity]
        if operation == Operation.update:
            writable = writable - IMMUTABLE_COLUMNS
        outcome = DecisionOutcome.allow if allowed >= writable else DecisionOutcome.partial
        return Decision(
            entity=entity, operation=operation, outcome=outcome,
            allowed_columns=allowed, matched_rules=names,
            policy_version=self.policy_set.version,
        )

    def filter_rows(self, principal: Principal, entity: Entity, rows: Iterable[Row],
                    operation: Operation = Operation.read, *,
                    resolver: Optional[RelationshipResolver] = None,
                    mask: bool = True) -> List[Dict[str, Any]]:
        """Subset of ``rows`` the principal may see; read masks are applied unless mask=False."""
        operation = Operation(operation)
        if principal.is_anonymous:
            return []

        ctx = self.context(principal, resolver)
        visible = []
        for row in rows:
            decision = self.evaluate(principal, entity, operation, row, context=ctx)
            if not decision.allowed:
                continue
            if mask and operation == Operation.read:
                visible.append(self._visible_image(row, decision))
            else:
                visible.append(dict(row))

        logger.debug(f"{principal.user_id} sees {len(visible)} {Entity(entity).value} rows")
        return visible

    def mask_row(self, principal: Principal, entity: Entity, row: Optional[Row], *,
                 resolver: Optional[RelationshipResolver] = None,
                 snapshot: Optional[Snapshot] = None) -> Optional[Dict[str, Any]]:
        """The row as a direct read would return it, or None when it is invisible."""
        if row is None:
            return None
        decision = self.evaluate(principal, entity, Operation.read, row, resolver=resolver, snapshot=snapshot)
        if not decision.visible:
            return None
        return self._visible_image(row, decision)

    def authorize_write(self, principal: Principal, entity: Entity, operation: Operation,
                        row: Row, columns: Columns = None, *,
                        resolver: Optional[RelationshipResolver] = None,
                        snapshot: Optional[Snapshot] = None) -> FrozenSet[str]:
        """Allowed columns for the write, or AuthorizationDenied for the whole operation."""
        operation = Operation(operation)
        if operation == Operation.read:
            raise ValueError("authorize_write does not accept read operations")

        if operation == Operation.insert and columns is None:
            columns = row

        decision = self.evaluate(principal, entity, operation, row, columns,
                                 resolver=resolver, snapshot=snapshot)
        if not decision.allowed:
            logger.warning(
                f"Denied {operation.value} on {Entity(entity).value} for "
                f"{principal.user_id or 'anonymous'}: {decision.reason}"
            )
            # A dangling reference is reported like any other failed predicate
            reason = "predicate_failed" if decision.reason == "invalid_reference" else decision.reason
            raise AuthorizationDenied(
                Entity(entity).value, operation.value, reason,
                columns=list(decision.denied_columns) or None,
            )
        return decision.allowed_columns

    @staticmethod
    def _requested(operation: Operation, columns: Columns) -> FrozenSet[str]:
        if columns is None or operation in (Operation.read, Operation.delete):
            return frozenset()
        if isinstance(columns, Mapping):
            if operation == Operation.insert:
                # Omitted or null columns take their defaults
                return frozenset(key for key, value in columns.items() if value is not None)
            return frozenset(columns.keys())
        return frozenset(columns)

    def _deny(self, entity: Entity, operation: Operation, reason: str) -> Decision:
        return Decision(
            entity=entity, operation=operation, outcome=DecisionOutcome.deny,
            reason=reason, policy_version=self.policy_set.version,
        )

    @staticmethod
    def _project(row: Row, columns: FrozenSet[str]) -> Dict[str, Any]:
        return {key: value for key, value in row.items() if key in columns}

    def _visible_image(self, row: Row, decision: Decision) -> Dict[str, Any]:
        if decision.outcome == DecisionOutcome.allow:
            return dict(row)
        return self._project(row, decision.readable_columns)
