"""
Evaluator tests over an in-memory index and dictionary resolver.

Covers the read and write rules per entity, column masks, anonymous actors,
dangling references and resolver failures.
"""

import pytest
from unittest.mock import MagicMock

from rls_guard.api.exceptions import AuthorizationDenied, DependencyUnavailable
from rls_guard.permissions.entities import Entity, Operation
from rls_guard.permissions.evaluator import DecisionOutcome, Evaluator
from rls_guard.permissions.principal import ANONYMOUS, Principal, Role
from rls_guard.tests.fixtures import (
    ASSIGNMENT_1,
    ASSIGNMENT_2,
    ASSIGNMENT_DRAFT,
    ASSIGNMENTS,
    CLASSROOM_1,
    CLASSROOM_2,
    CLASSROOMS,
    ENROLLMENTS,
    PROGRESS,
    STUDENT_1,
    STUDENT_1_PRINCIPAL,
    STUDENT_2,
    STUDENT_2_PRINCIPAL,
    TEACHER_1,
    TEACHER_1_PRINCIPAL,
    TEACHER_2,
    TEACHER_2_PRINCIPAL,
    USERS,
)


@pytest.fixture
def evaluator(index, resolver):
    return Evaluator(index, resolver)


def ids(rows):
    return [row["id"] for row in rows]


class TestProgressReads:
    def test_student_sees_only_own_progress(self, evaluator):
        visible = evaluator.filter_rows(STUDENT_1_PRINCIPAL, Entity.progress, PROGRESS)
        assert visible == [PROGRESS[0]]

    def test_teacher_sees_progress_of_owned_classrooms(self, evaluator):
        assert ids(evaluator.filter_rows(TEACHER_1_PRINCIPAL, Entity.progress, PROGRESS)) == ["progress-1"]
        assert ids(evaluator.filter_rows(TEACHER_2_PRINCIPAL, Entity.progress, PROGRESS)) == ["progress-2"]

    def test_anonymous_sees_nothing(self, evaluator):
        for entity, rows in ((Entity.progress, PROGRESS), (Entity.users, USERS),
                             (Entity.classrooms, CLASSROOMS), (Entity.assignments, ASSIGNMENTS)):
            assert evaluator.filter_rows(ANONYMOUS, entity, rows) == []

    def test_anonymous_decision(self, evaluator):
        decision = evaluator.evaluate(ANONYMOUS, Entity.progress, Operation.read, PROGRESS[0])
        assert not decision.visible
        assert decision.reason == "anonymous"

    def test_dangling_assignment_is_invisible(self, evaluator):
        orphan = {**PROGRESS[0], "id": "orphan", "assignment_id": "deleted"}
        decision = evaluator.evaluate(STUDENT_1_PRINCIPAL, Entity.progress, Operation.read, orphan)
        assert not decision.visible
        assert decision.reason == "invalid_reference"
        assert evaluator.filter_rows(STUDENT_1_PRINCIPAL, Entity.progress, [orphan]) == []

    def test_lookups_shared_within_one_call(self, index, resolver):
        evaluator = Evaluator(index, resolver)
        rows = [{**PROGRESS[1], "id": f"p{i}"} for i in range(10)]
        evaluator.filter_rows(TEACHER_2_PRINCIPAL, Entity.progress, rows)
        assert resolver.lookups == 1

    def test_evaluation_is_idempotent(self, evaluator):
        first = evaluator.evaluate(TEACHER_1_PRINCIPAL, Entity.progress, Operation.read, PROGRESS[0])
        second = evaluator.evaluate(TEACHER_1_PRINCIPAL, Entity.progress, Operation.read, PROGRESS[0])
        assert first == second
        assert first.outcome == DecisionOutcome.allow
        assert first.matched_rules == ("progress_read_owner",)


class TestClassroomAndAssignmentReads:
    def test_teacher_sees_owned_classroom(self, evaluator):
        assert ids(evaluator.filter_rows(TEACHER_1_PRINCIPAL, Entity.classrooms, CLASSROOMS)) == [CLASSROOM_1]

    def test_student_sees_enrolled_classroom(self, evaluator):
        assert ids(evaluator.filter_rows(STUDENT_2_PRINCIPAL, Entity.classrooms, CLASSROOMS)) == [CLASSROOM_2]

    def test_student_claiming_teacher_id_sees_nothing(self, evaluator):
        # Ownership clause is limited to the teacher role
        impostor = Principal(user_id=TEACHER_1, role=Role.student)
        assert evaluator.filter_rows(impostor, Entity.classrooms, CLASSROOMS) == []

    def test_student_sees_published_assignments_only(self, evaluator):
        visible = evaluator.filter_rows(STUDENT_1_PRINCIPAL, Entity.assignments, ASSIGNMENTS)
        assert ids(visible) == [ASSIGNMENT_1]

    def test_teacher_sees_drafts(self, evaluator):
        visible = evaluator.filter_rows(TEACHER_1_PRINCIPAL, Entity.assignments, ASSIGNMENTS)
        assert ids(visible) == [ASSIGNMENT_1, ASSIGNMENT_DRAFT]

    def test_enrollments(self, evaluator):
        assert ids(evaluator.filter_rows(STUDENT_1_PRINCIPAL, Entity.enrollments, ENROLLMENTS)) == ["enrollment-1"]
        assert ids(evaluator.filter_rows(TEACHER_2_PRINCIPAL, Entity.enrollments, ENROLLMENTS)) == ["enrollment-2"]


class TestUserReads:
    def test_student_view(self, evaluator):
        visible = evaluator.filter_rows(STUDENT_1_PRINCIPAL, Entity.users, USERS)
        assert ids(visible) == [TEACHER_1, TEACHER_2, STUDENT_1]
        assert visible[0] == {"id": TEACHER_1, "full_name": "Tessa Teach", "role": "teacher"}
        assert visible[2] == USERS[2]

    def test_teacher_view_includes_email(self, evaluator):
        visible = evaluator.filter_rows(TEACHER_1_PRINCIPAL, Entity.users, USERS)
        assert ids(visible) == [TEACHER_1, TEACHER_2]
        assert visible[1]["email"] == "teacher2@school.test"

    def test_partial_outcome(self, evaluator):
        decision = evaluator.evaluate(STUDENT_1_PRINCIPAL, Entity.users, Operation.read, USERS[0])
        assert decision.outcome == DecisionOutcome.partial
        assert decision.visible
        assert decision.readable_columns == frozenset({"id", "full_name", "role"})

    def test_unmasked_filter(self, evaluator):
        visible = evaluator.filter_rows(STUDENT_1_PRINCIPAL, Entity.users, USERS, mask=False)
        assert visible[0] == USERS[0]

    def test_mask_row(self, evaluator):
        assert evaluator.mask_row(STUDENT_1_PRINCIPAL, Entity.users, USERS[3]) is None
        assert evaluator.mask_row(STUDENT_1_PRINCIPAL, Entity.users, None) is None
        assert "email" not in evaluator.mask_row(STUDENT_2_PRINCIPAL, Entity.users, USERS[1])


class TestProgressWrites:
    def test_student_cannot_grade_themselves(self, evaluator):
        decision = evaluator.evaluate(
            STUDENT_1_PRINCIPAL, Entity.progress, Operation.update, PROGRESS[0],
            {"completion_percentage": 50, "grade": "A"},
        )
        assert not decision.allowed
        assert decision.reason == "column_denied"
        assert decision.denied_columns == frozenset({"grade"})

        with pytest.raises(AuthorizationDenied) as e:
            evaluator.authorize_write(
                STUDENT_1_PRINCIPAL, Entity.progress, Operation.update, PROGRESS[0],
                {"completion_percentage": 50, "grade": "A"},
            )
        assert e.value.status_code == 403
        assert e.value.reason == "column_denied"
        assert e.value.detail["columns"] == ["grade"]

    def test_student_updates_completion(self, evaluator):
        allowed = evaluator.authorize_write(
            STUDENT_1_PRINCIPAL, Entity.progress, Operation.update, PROGRESS[0],
            {"completion_percentage": 50},
        )
        assert allowed == frozenset({"completion_percentage"})

    def test_student_cannot_touch_other_progress(self, evaluator):
        with pytest.raises(AuthorizationDenied) as e:
            evaluator.authorize_write(
                STUDENT_1_PRINCIPAL, Entity.progress, Operation.update, PROGRESS[1],
                {"completion_percentage": 10},
            )
        assert e.value.reason == "predicate_failed"

    def test_student_cannot_reassign_progress(self, evaluator):
        decision = evaluator.evaluate(
            STUDENT_1_PRINCIPAL, Entity.progress, Operation.update, PROGRESS[0],
            {"user_id": STUDENT_2},
        )
        assert not decision.allowed
        assert decision.reason == "predicate_failed"

    def test_teacher_grades(self, evaluator):
        decision = evaluator.evaluate(
            TEACHER_1_PRINCIPAL, Entity.progress, Operation.update, PROGRESS[0],
            {"grade": "A", "points_earned": 95, "feedback": "Great"},
        )
        assert decision.allowed
        assert decision.outcome == DecisionOutcome.partial
        assert "user_id" not in decision.allowed_columns

    def test_other_teacher_cannot_grade(self, evaluator):
        with pytest.raises(AuthorizationDenied):
            evaluator.authorize_write(
                TEACHER_2_PRINCIPAL, Entity.progress, Operation.update, PROGRESS[0], {"grade": "F"},
            )

    def test_student_starts_progress(self, evaluator):
        values = {"user_id": STUDENT_1, "assignment_id": ASSIGNMENT_1, "completion_percentage": 0, "grade": None}
        assert "grade" not in evaluator.authorize_write(STUDENT_1_PRINCIPAL, Entity.progress, Operation.insert, values)

    def test_student_cannot_insert_grade(self, evaluator):
        values = {"user_id": STUDENT_1, "assignment_id": ASSIGNMENT_1, "grade": "A"}
        with pytest.raises(AuthorizationDenied) as e:
            evaluator.authorize_write(STUDENT_1_PRINCIPAL, Entity.progress, Operation.insert, values)
        assert e.value.reason == "column_denied"

    def test_student_cannot_start_draft_or_foreign_assignment(self, evaluator):
        for assignment_id in (ASSIGNMENT_DRAFT, ASSIGNMENT_2):
            decision = evaluator.evaluate(
                STUDENT_1_PRINCIPAL, Entity.progress, Operation.insert,
                {"user_id": STUDENT_1, "assignment_id": assignment_id},
            )
            assert not decision.allowed

    def test_anonymous_write(self, evaluator):
        with pytest.raises(AuthorizationDenied) as e:
            evaluator.authorize_write(ANONYMOUS, Entity.progress, Operation.update, PROGRESS[0], {"grade": "A"})
        assert e.value.reason == "anonymous"

    def test_read_is_not_a_write(self, evaluator):
        with pytest.raises(ValueError):
            evaluator.authorize_write(STUDENT_1_PRINCIPAL, Entity.progress, Operation.read, PROGRESS[0])


class TestEnrollmentWrites:
    def test_teacher_enrolls_student_in_own_classroom(self, evaluator):
        values = {"user_id": STUDENT_2, "classroom_id": CLASSROOM_1}
        decision = evaluator.evaluate(TEACHER_1_PRINCIPAL, Entity.enrollments, Operation.insert, values, values)
        assert decision.allowed

    def test_teacher_cannot_enroll_into_foreign_classroom(self, evaluator):
        values = {"user_id": STUDENT_1, "classroom_id": CLASSROOM_2}
        with pytest.raises(AuthorizationDenied) as e:
            evaluator.authorize_write(TEACHER_1_PRINCIPAL, Entity.enrollments, Operation.insert, values)
        assert e.value.reason == "predicate_failed"

    def test_only_students_are_enrolled(self, evaluator):
        values = {"user_id": TEACHER_2, "classroom_id": CLASSROOM_1}
        with pytest.raises(AuthorizationDenied):
            evaluator.authorize_write(TEACHER_1_PRINCIPAL, Entity.enrollments, Operation.insert, values)

    def test_unknown_user_is_reported_as_predicate_failure(self, evaluator):
        values = {"user_id": "ghost", "classroom_id": CLASSROOM_1}
        decision = evaluator.evaluate(TEACHER_1_PRINCIPAL, Entity.enrollments, Operation.insert, values)
        assert decision.reason == "invalid_reference"

        with pytest.raises(AuthorizationDenied) as e:
            evaluator.authorize_write(TEACHER_1_PRINCIPAL, Entity.enrollments, Operation.insert, values)
        assert e.value.reason == "predicate_failed"

    def test_students_cannot_enroll(self, evaluator):
        values = {"user_id": STUDENT_1, "classroom_id": CLASSROOM_2}
        decision = evaluator.evaluate(STUDENT_1_PRINCIPAL, Entity.enrollments, Operation.insert, values)
        assert decision.reason == "no_matching_rule"


class TestOtherWrites:
    def test_user_cannot_change_role(self, evaluator):
        with pytest.raises(AuthorizationDenied) as e:
            evaluator.authorize_write(STUDENT_1_PRINCIPAL, Entity.users, Operation.update, USERS[2], {"role": "teacher"})
        assert e.value.detail["columns"] == ["role"]

    def test_user_updates_own_name(self, evaluator):
        evaluator.authorize_write(STUDENT_1_PRINCIPAL, Entity.users, Operation.update, USERS[2], {"full_name": "Sam S."})

    def test_primary_key_is_immutable(self, evaluator):
        decision = evaluator.evaluate(
            TEACHER_1_PRINCIPAL, Entity.classrooms, Operation.update, CLASSROOMS[0], {"id": "new-id"},
        )
        assert decision.reason == "column_denied"

    def test_teacher_cannot_give_classroom_away(self, evaluator):
        decision = evaluator.evaluate(
            TEACHER_1_PRINCIPAL, Entity.classrooms, Operation.update, CLASSROOMS[0], {"teacher_id": TEACHER_2},
        )
        assert decision.reason == "predicate_failed"

    def test_teacher_creates_classroom_for_self_only(self, evaluator):
        mine = {"name": "Physics", "teacher_id": TEACHER_1}
        theirs = {"name": "Physics", "teacher_id": TEACHER_2}
        assert evaluator.evaluate(TEACHER_1_PRINCIPAL, Entity.classrooms, Operation.insert, mine, mine).allowed
        assert not evaluator.evaluate(TEACHER_1_PRINCIPAL, Entity.classrooms, Operation.insert, theirs, theirs).allowed

    def test_student_cannot_create_classroom(self, evaluator):
        row = {"name": "Mine", "teacher_id": STUDENT_1}
        assert not evaluator.evaluate(STUDENT_1_PRINCIPAL, Entity.classrooms, Operation.insert, row, row).allowed

    def test_assignment_delete_by_owner(self, evaluator):
        assert evaluator.evaluate(TEACHER_1_PRINCIPAL, Entity.assignments, Operation.delete, ASSIGNMENTS[0]).allowed
        assert not evaluator.evaluate(TEACHER_2_PRINCIPAL, Entity.assignments, Operation.delete, ASSIGNMENTS[0]).allowed
        assert not evaluator.evaluate(STUDENT_1_PRINCIPAL, Entity.assignments, Operation.delete, ASSIGNMENTS[0]).allowed


class TestResolverFailures:
    def test_dependency_failure_propagates(self, index):
        resolver = MagicMock()
        resolver.get_assignment.side_effect = DependencyUnavailable(detail="store down")
        evaluator = Evaluator(index, resolver)

        with pytest.raises(DependencyUnavailable) as e:
            evaluator.filter_rows(TEACHER_1_PRINCIPAL, Entity.progress, PROGRESS)
        assert e.value.status_code == 503

    def test_dependency_failure_on_write(self, index):
        resolver = MagicMock()
        resolver.get_user.side_effect = DependencyUnavailable()
        evaluator = Evaluator(index, resolver)

        with pytest.raises(DependencyUnavailable):
            evaluator.authorize_write(
                TEACHER_1_PRINCIPAL, Entity.enrollments, Operation.insert,
                {"user_id": STUDENT_2, "classroom_id": CLASSROOM_1},
            )

    def test_per_call_resolver_override(self, index):
        evaluator = Evaluator(index)
        resolver = MagicMock()
        resolver.get_assignment.return_value = ASSIGNMENTS[0]
        visible = evaluator.filter_rows(STUDENT_1_PRINCIPAL, Entity.progress, PROGRESS, resolver=resolver)
        assert ids(visible) == ["progress-1"]
