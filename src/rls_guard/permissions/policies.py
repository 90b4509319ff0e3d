"""
Declarative row and column policies for the classroom graph.

Every rule is keyed by (entity, operation). Rules for the same key are
additive: a row is allowed when any rule whose roles match the actor holds for
it. Column masks are the opposite: the allowed write columns are the
intersection of the masks of every rule that matched.

Predicates receive a PolicyContext, which carries the actor, the per-actor
sets from the AccessIndex and a memoized view of the relationship resolver.
The memo lives exactly as long as the context, i.e. one evaluation call.
"""

import hashlib
import json
import logging
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from rls_guard.api.exceptions import InvalidReference
from rls_guard.permissions.access_index import AccessIndex
from rls_guard.permissions.entities import (
    ENTITY_COLUMNS,
    GRADE_COLUMNS,
    IMMUTABLE_COLUMNS,
    Entity,
    Operation,
)
from rls_guard.permissions.principal import Principal, Role
from rls_guard.permissions.relationships import RelationshipResolver
from rls_guard.settings import settings

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]
Snapshot = Tuple[FrozenSet[str], FrozenSet[str]]


class PolicyContext:
    """Everything a predicate may consult while evaluating one call."""

    def __init__(self, principal: Principal, index: AccessIndex,
                 resolver: Optional[RelationshipResolver] = None,
                 snapshot: Optional[Snapshot] = None):
        self.principal = principal
        self.user_id = principal.user_id
        # An explicit (owned, enrolled) pair pins the membership state the call is judged on
        self.owned, self.enrolled = snapshot if snapshot is not None else index.snapshot(principal.user_id)
        self._resolver = resolver
        self._memo: Dict[Tuple[str, Any], Optional[Dict[str, Any]]] = {}

    def user(self, user_id: Any) -> Dict[str, Any]:
        return self._lookup(Entity.users, user_id)

    def assignment(self, assignment_id: Any) -> Dict[str, Any]:
        return self._lookup(Entity.assignments, assignment_id)

    def _lookup(self, entity: Entity, row_id: Any) -> Dict[str, Any]:
        key = (entity.value, row_id)
        if key not in self._memo:
            if self._resolver is None or row_id is None:
                self._memo[key] = None
            elif entity == Entity.users:
                self._memo[key] = self._resolver.get_user(row_id)
            else:
                self._memo[key] = self._resolver.get_assignment(row_id)

        row = self._memo[key]
        if row is None:
            raise InvalidReference(entity.value, row_id)
        return row


Predicate = Callable[[PolicyContext, Row], bool]
ReadMask = Callable[[PolicyContext, Row], Optional[FrozenSet[str]]]


class PolicyRule(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    entity: Entity
    operations: FrozenSet[Operation]
    predicate: Predicate
    roles: Optional[FrozenSet[Role]] = Field(default=None, description="None means any authenticated actor")
    write_columns: Optional[FrozenSet[str]] = Field(default=None, description="None means every writable column")
    denied_columns: FrozenSet[str] = frozenset()
    read_columns: Optional[ReadMask] = None
    description: str = ""

    def applies_to(self, principal: Principal, operation: Operation) -> bool:
        if principal.is_anonymous or operation not in self.operations:
            return False
        return self.roles is None or principal.role in self.roles

    def holds(self, context: PolicyContext, row: Row) -> bool:
        return bool(self.predicate(context, row))

    def column_mask(self, operation: Operation) -> FrozenSet[str]:
        """Columns this rule lets the actor write for the given operation."""
        columns = ENTITY_COLUMNS[self.entity]
        if operation == Operation.update:
            columns = columns - IMMUTABLE_COLUMNS
        if self.write_columns is not None:
            columns = columns & self.write_columns
        return columns - self.denied_columns

    def readable_columns(self, context: PolicyContext, row: Row) -> FrozenSet[str]:
        if self.read_columns is None:
            return ENTITY_COLUMNS[self.entity]
        return self.read_columns(context, row) or frozenset()

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "entity": self.entity.value,
            "operations": sorted(op.value for op in self.operations),
            "roles": sorted(role.value for role in self.roles) if self.roles is not None else None,
            "write_columns": sorted(self.write_columns) if self.write_columns is not None else None,
            "denied_columns": sorted(self.denied_columns),
            "read_mask": self.read_columns is not None,
            "description": self.description,
        }


class PolicySet:
    """Immutable, versioned table of rules keyed by (entity, operation)."""

    def __init__(self, rules: Iterable[PolicyRule], version: str = "1"):
        table: Dict[Tuple[Entity, Operation], List[PolicyRule]] = {}
        for rule in rules:
            for operation in rule.operations:
                table.setdefault((rule.entity, operation), []).append(rule)

        self.version = version
        self._rules = MappingProxyType({key: tuple(value) for key, value in table.items()})
        self.policy_hash = self._hash()

    def rules_for(self, entity: Entity, operation: Operation) -> Tuple[PolicyRule, ...]:
        return self._rules.get((Entity(entity), Operation(operation)), ())

    def describe(self) -> List[Dict[str, Any]]:
        seen = {}
        for rules in self._rules.values():
            for rule in rules:
                seen[rule.name] = rule.describe()
        return [seen[name] for name in sorted(seen)]

    def _hash(self) -> str:
        raw = json.dumps(self.describe(), sort_keys=True)
        return "sha256:" + hashlib.sha256(raw.encode()).hexdigest()[:16]


# --- users -------------------------------------------------------------------

USER_PUBLIC_COLUMNS = frozenset({"id", "full_name", "role"})


def user_read(ctx: PolicyContext, row: Row) -> bool:
    # Teachers are visible to everyone; students only to themselves
    return row.get("id") == ctx.user_id or row.get("role") == Role.teacher.value


def user_read_columns(ctx: PolicyContext, row: Row) -> FrozenSet[str]:
    if row.get("id") == ctx.user_id:
        return ENTITY_COLUMNS[Entity.users]
    if ctx.principal.is_teacher:
        return USER_PUBLIC_COLUMNS | {"email"}
    return USER_PUBLIC_COLUMNS


def user_self(ctx: PolicyContext, row: Row) -> bool:
    return row.get("id") == ctx.user_id


# --- classrooms --------------------------------------------------------------

def classroom_owner(ctx: PolicyContext, row: Row) -> bool:
    return row.get("teacher_id") == ctx.user_id


def classroom_member(ctx: PolicyContext, row: Row) -> bool:
    return row.get("id") in ctx.enrolled


# --- enrollments -------------------------------------------------------------

def enrollment_read(ctx: PolicyContext, row: Row) -> bool:
    return row.get("user_id") == ctx.user_id or row.get("classroom_id") in ctx.owned


def enrollment_manage(ctx: PolicyContext, row: Row) -> bool:
    return row.get("classroom_id") in ctx.owned


def enrollment_insert(ctx: PolicyContext, row: Row) -> bool:
    if row.get("classroom_id") not in ctx.owned:
        return False
    return ctx.user(row.get("user_id")).get("role") == Role.student.value


# --- assignments -------------------------------------------------------------

def assignment_member_read(ctx: PolicyContext, row: Row) -> bool:
    return row.get("status") == "published" and row.get("classroom_id") in ctx.enrolled


def assignment_owner(ctx: PolicyContext, row: Row) -> bool:
    return row.get("classroom_id") in ctx.owned


# --- progress ----------------------------------------------------------------

def progress_own(ctx: PolicyContext, row: Row) -> bool:
    if row.get("user_id") != ctx.user_id:
        return False
    # Dangling assignment makes the row invisible even to its student
    ctx.assignment(row.get("assignment_id"))
    return True


def progress_classroom_owner(ctx: PolicyContext, row: Row) -> bool:
    if not ctx.owned:
        return False
    return ctx.assignment(row.get("assignment_id")).get("classroom_id") in ctx.owned


def progress_self_start(ctx: PolicyContext, row: Row) -> bool:
    if row.get("user_id") != ctx.user_id:
        return False
    assignment = ctx.assignment(row.get("assignment_id"))
    return assignment.get("status") == "published" and assignment.get("classroom_id") in ctx.enrolled


READ = frozenset({Operation.read})
TEACHER = frozenset({Role.teacher})
STUDENT = frozenset({Role.student})

DEFAULT_RULES: Tuple[PolicyRule, ...] = (
    PolicyRule(
        name="users_read",
        entity=Entity.users,
        operations=READ,
        predicate=user_read,
        read_columns=user_read_columns,
        description="Own row, plus every teacher",
    ),
    PolicyRule(
        name="users_update_self",
        entity=Entity.users,
        operations=frozenset({Operation.update}),
        predicate=user_self,
        denied_columns=frozenset({"role"}),
        description="Own profile, role is immutable",
    ),
    PolicyRule(
        name="classrooms_read_owner",
        entity=Entity.classrooms,
        operations=READ,
        roles=TEACHER,
        predicate=classroom_owner,
        description="Teachers see the classrooms they own",
    ),
    PolicyRule(
        name="classrooms_read_member",
        entity=Entity.classrooms,
        operations=READ,
        predicate=classroom_member,
        description="Members see classrooms they are enrolled in",
    ),
    PolicyRule(
        name="classrooms_manage_owner",
        entity=Entity.classrooms,
        operations=frozenset({Operation.insert, Operation.update, Operation.delete}),
        roles=TEACHER,
        predicate=classroom_owner,
        description="Teachers create and manage classrooms under their own id",
    ),
    PolicyRule(
        name="enrollments_read",
        entity=Entity.enrollments,
        operations=READ,
        predicate=enrollment_read,
        description="Own enrollments, plus every enrollment in an owned classroom",
    ),
    PolicyRule(
        name="enrollments_insert_owner",
        entity=Entity.enrollments,
        operations=frozenset({Operation.insert}),
        roles=TEACHER,
        predicate=enrollment_insert,
        description="Owning teacher enrolls students",
    ),
    PolicyRule(
        name="enrollments_delete_owner",
        entity=Entity.enrollments,
        operations=frozenset({Operation.delete}),
        roles=TEACHER,
        predicate=enrollment_manage,
        description="Owning teacher removes enrollments",
    ),
    PolicyRule(
        name="assignments_read_member",
        entity=Entity.assignments,
        operations=READ,
        predicate=assignment_member_read,
        description="Members see published assignments",
    ),
    PolicyRule(
        name="assignments_read_owner",
        entity=Entity.assignments,
        operations=READ,
        predicate=assignment_owner,
        description="Owning teacher sees every assignment, drafts included",
    ),
    PolicyRule(
        name="assignments_manage_owner",
        entity=Entity.assignments,
        operations=frozenset({Operation.insert, Operation.update, Operation.delete}),
        predicate=assignment_owner,
        description="Owning teacher creates, edits and removes assignments",
    ),
    PolicyRule(
        name="progress_read_own",
        entity=Entity.progress,
        operations=READ,
        predicate=progress_own,
        description="Students see their own progress",
    ),
    PolicyRule(
        name="progress_read_owner",
        entity=Entity.progress,
        operations=READ,
        predicate=progress_classroom_owner,
        description="Teachers see progress for assignments in owned classrooms",
    ),
    PolicyRule(
        name="progress_insert_student",
        entity=Entity.progress,
        operations=frozenset({Operation.insert}),
        roles=STUDENT,
        predicate=progress_self_start,
        denied_columns=GRADE_COLUMNS,
        description="Students start progress on published assignments of their classrooms",
    ),
    PolicyRule(
        name="progress_update_student",
        entity=Entity.progress,
        operations=frozenset({Operation.update}),
        roles=STUDENT,
        predicate=progress_own,
        write_columns=frozenset({"completion_percentage"}),
        description="Students report completion only, never grades",
    ),
    PolicyRule(
        name="progress_update_teacher",
        entity=Entity.progress,
        operations=frozenset({Operation.update}),
        roles=TEACHER,
        predicate=progress_classroom_owner,
        write_columns=GRADE_COLUMNS | {"completion_percentage"},
        description="Owning teacher grades and adjusts completion",
    ),
    PolicyRule(
        name="progress_delete_teacher",
        entity=Entity.progress,
        operations=frozenset({Operation.delete}),
        roles=TEACHER,
        predicate=progress_classroom_owner,
        description="Owning teacher removes progress records",
    ),
)


@lru_cache(maxsize=1)
def get_policy_set() -> PolicySet:
    """The process-wide policy set, built once."""
    policy_set = PolicySet(DEFAULT_RULES, version=settings.POLICY_VERSION)
    logger.info(f"Loaded policy set v{policy_set.version} ({policy_set.policy_hash})")
    return policy_set
