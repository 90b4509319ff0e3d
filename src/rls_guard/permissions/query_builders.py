from typing import Any, Type

from sqlalchemy import Select, false, or_, and_, select
from sqlalchemy.sql.elements import ColumnElement

from rls_guard.model import MODEL_BY_ENTITY, Assignment, Classroom, Enrollment, Progress, User
from rls_guard.permissions.access_index import AccessIndex
from rls_guard.permissions.entities import Entity
from rls_guard.permissions.principal import Principal, Role


class VisibilityQueryBuilder:
    """SQL rendition of the read rules in ``policies``, for gateways that push filtering into the store.

    The clauses read the same AccessIndex sets as the in-memory predicates, so a
    direct SELECT and ``Evaluator.filter_rows`` agree row for row. Column masks
    are not expressible here; pass results through ``Evaluator.mask_row``.
    """

    @classmethod
    def model_for(cls, entity: Entity) -> Type[Any]:
        return MODEL_BY_ENTITY[Entity(entity).value]

    @classmethod
    def visible_clause(cls, principal: Principal, entity: Entity, index: AccessIndex) -> ColumnElement:
        if principal.is_anonymous:
            return false()

        entity = Entity(entity)
        user_id = principal.user_id
        owned, enrolled = index.snapshot(user_id)

        if entity == Entity.users:
            return or_(User.id == user_id, User.role == Role.teacher.value)

        if entity == Entity.classrooms:
            clauses = [Classroom.id.in_(sorted(enrolled))]
            if principal.is_teacher:
                clauses.append(Classroom.teacher_id == user_id)
            return or_(*clauses)

        if entity == Entity.enrollments:
            return or_(Enrollment.user_id == user_id, Enrollment.classroom_id.in_(sorted(owned)))

        if entity == Entity.assignments:
            return or_(
                and_(Assignment.status == "published", Assignment.classroom_id.in_(sorted(enrolled))),
                Assignment.classroom_id.in_(sorted(owned)),
            )

        if entity == Entity.progress:
            # Rows whose assignment is gone are excluded by the inner join in build_query
            return or_(Progress.user_id == user_id, Assignment.classroom_id.in_(sorted(owned)))

        return false()

    @classmethod
    def build_query(cls, principal: Principal, entity: Entity, index: AccessIndex) -> Select:
        entity = Entity(entity)
        model = cls.model_for(entity)
        query = select(model)

        if entity == Entity.progress:
            query = query.join(Assignment, Assignment.id == Progress.assignment_id)

        return query.where(cls.visible_clause(principal, entity, index))
