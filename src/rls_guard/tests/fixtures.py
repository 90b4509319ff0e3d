"""
Shared test data: two teachers, two students, one classroom each.

    teacher-1 owns classroom-1, student-1 is enrolled in it
    teacher-2 owns classroom-2, student-2 is enrolled in it
    classroom-1 has a published and a draft assignment, classroom-2 one published
"""

from typing import Any, Dict, Iterable, Optional

from rls_guard.permissions.access_index import AccessIndex
from rls_guard.permissions.entities import Entity
from rls_guard.permissions.events import ChangeEvent, ChangeType
from rls_guard.permissions.principal import Principal, Role
from rls_guard.permissions.relationships import RelationshipResolver

TEACHER_1 = "teacher-1"
TEACHER_2 = "teacher-2"
STUDENT_1 = "student-1"
STUDENT_2 = "student-2"

CLASSROOM_1 = "classroom-1"
CLASSROOM_2 = "classroom-2"

ASSIGNMENT_1 = "assignment-1"
ASSIGNMENT_DRAFT = "assignment-draft"
ASSIGNMENT_2 = "assignment-2"

USERS = [
    {"id": TEACHER_1, "email": "teacher1@school.test", "full_name": "Tessa Teach", "role": "teacher"},
    {"id": TEACHER_2, "email": "teacher2@school.test", "full_name": "Theo Tutor", "role": "teacher"},
    {"id": STUDENT_1, "email": "student1@school.test", "full_name": "Sam Study", "role": "student"},
    {"id": STUDENT_2, "email": "student2@school.test", "full_name": "Sky Scholar", "role": "student"},
]

CLASSROOMS = [
    {"id": CLASSROOM_1, "name": "Algebra", "description": "Linear equations", "teacher_id": TEACHER_1},
    {"id": CLASSROOM_2, "name": "Biology", "description": "Cells", "teacher_id": TEACHER_2},
]

ENROLLMENTS = [
    {"id": "enrollment-1", "user_id": STUDENT_1, "classroom_id": CLASSROOM_1},
    {"id": "enrollment-2", "user_id": STUDENT_2, "classroom_id": CLASSROOM_2},
]

ASSIGNMENTS = [
    {"id": ASSIGNMENT_1, "classroom_id": CLASSROOM_1, "title": "Homework 1",
     "status": "published", "max_points": 100},
    {"id": ASSIGNMENT_DRAFT, "classroom_id": CLASSROOM_1, "title": "Homework 2",
     "status": "draft", "max_points": 50},
    {"id": ASSIGNMENT_2, "classroom_id": CLASSROOM_2, "title": "Lab report",
     "status": "published", "max_points": 20},
]

PROGRESS = [
    {"id": "progress-1", "user_id": STUDENT_1, "assignment_id": ASSIGNMENT_1,
     "completion_percentage": 40, "status": "in_progress", "grade": None,
     "points_earned": None, "feedback": None, "graded_at": None},
    {"id": "progress-2", "user_id": STUDENT_2, "assignment_id": ASSIGNMENT_2,
     "completion_percentage": 100, "status": "submitted", "grade": "B",
     "points_earned": 16, "feedback": "Good", "graded_at": None},
]

TEACHER_1_PRINCIPAL = Principal(user_id=TEACHER_1, role=Role.teacher)
TEACHER_2_PRINCIPAL = Principal(user_id=TEACHER_2, role=Role.teacher)
STUDENT_1_PRINCIPAL = Principal(user_id=STUDENT_1, role=Role.student)
STUDENT_2_PRINCIPAL = Principal(user_id=STUDENT_2, role=Role.student)


class DictResolver(RelationshipResolver):
    """Resolver over plain dictionaries that counts its lookups."""

    def __init__(self, users: Iterable[dict] = USERS, classrooms: Iterable[dict] = CLASSROOMS,
                 assignments: Iterable[dict] = ASSIGNMENTS):
        self.users = {row["id"]: row for row in users}
        self.classrooms = {row["id"]: row for row in classrooms}
        self.assignments = {row["id"]: row for row in assignments}
        self.lookups = 0

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        self.lookups += 1
        return self.users.get(user_id)

    def get_classroom(self, classroom_id: str) -> Optional[Dict[str, Any]]:
        self.lookups += 1
        return self.classrooms.get(classroom_id)

    def get_assignment(self, assignment_id: str) -> Optional[Dict[str, Any]]:
        self.lookups += 1
        return self.assignments.get(assignment_id)


def classroom_event(row: dict, seq: int, change: ChangeType = ChangeType.insert) -> ChangeEvent:
    if change == ChangeType.delete:
        return ChangeEvent(entity=Entity.classrooms, type=change, old=row, commit_seq=seq)
    return ChangeEvent(entity=Entity.classrooms, type=change, new=row, commit_seq=seq)


def enrollment_event(row: dict, seq: int, change: ChangeType = ChangeType.insert,
                     old: Optional[dict] = None) -> ChangeEvent:
    if change == ChangeType.delete:
        return ChangeEvent(entity=Entity.enrollments, type=change, old=row, commit_seq=seq)
    return ChangeEvent(entity=Entity.enrollments, type=change, new=row, old=old, commit_seq=seq)


def make_index() -> AccessIndex:
    """AccessIndex fed with the fixture classrooms and enrollments."""
    index = AccessIndex()
    seq = 0
    for row in CLASSROOMS:
        seq += 1
        index.on_classroom_change(classroom_event(row, seq))
    for row in ENROLLMENTS:
        seq += 1
        index.on_enrollment_change(enrollment_event(row, seq))
    return index


def seed(session):
    """Insert the fixture rows through the ORM."""
    from rls_guard.model import Assignment, Classroom, Enrollment, Progress, User

    for model, rows in ((User, USERS), (Classroom, CLASSROOMS), (Enrollment, ENROLLMENTS),
                        (Assignment, ASSIGNMENTS), (Progress, PROGRESS)):
        for row in rows:
            session.add(model(**row))
        session.flush()
    session.commit()
