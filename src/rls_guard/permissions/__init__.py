"""
Row- and column-level access control for the classroom record graph.

Main components:
- access_index: per-actor owned / enrolled classroom sets
- policies: declarative rule table keyed by (entity, operation)
- evaluator: applies the rules to rows, yields Decisions and column masks
- guard: atomic check-and-write on top of SQLAlchemy transactions
- realtime: ordered change feed and policy-filtered subscriptions
- query_builders: the read rules as SQLAlchemy clauses
- engine: facade wiring all of the above for a data-access gateway
"""

from .principal import (
    ANONYMOUS,
    Principal,
    Role,
    build_principal,
    resolve_principal,
)

from .entities import Entity, Operation

from .events import ChangeEvent, ChangeType

from .access_index import AccessIndex

from .policies import (
    PolicyContext,
    PolicyRule,
    PolicySet,
    DEFAULT_RULES,
    get_policy_set,
)

from .evaluator import Decision, DecisionOutcome, Evaluator

from .relationships import RelationshipResolver, SqlRelationshipResolver

from .query_builders import VisibilityQueryBuilder

from .realtime import (
    ChangeFeed,
    ChangeFilter,
    Subscription,
    SubscriptionFilter,
    SubscriptionOverflow,
)

from .guard import MutationGuard

from .engine import AccessControlEngine

__all__ = [
    # Identity
    "ANONYMOUS",
    "Principal",
    "Role",
    "build_principal",
    "resolve_principal",

    # Vocabulary
    "Entity",
    "Operation",
    "ChangeEvent",
    "ChangeType",

    # Components
    "AccessIndex",
    "PolicyContext",
    "PolicyRule",
    "PolicySet",
    "DEFAULT_RULES",
    "get_policy_set",
    "Decision",
    "DecisionOutcome",
    "Evaluator",
    "RelationshipResolver",
    "SqlRelationshipResolver",
    "VisibilityQueryBuilder",
    "ChangeFeed",
    "ChangeFilter",
    "Subscription",
    "SubscriptionFilter",
    "SubscriptionOverflow",
    "MutationGuard",
    "AccessControlEngine",
]
