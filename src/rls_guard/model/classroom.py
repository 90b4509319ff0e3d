from sqlalchemy import (
    CheckConstraint, Column, DateTime, ForeignKey, Index,
    Integer, String, Text, func
)
from sqlalchemy.orm import relationship

from .auth import _uuid
from .base import Base


class Classroom(Base):
    __tablename__ = 'classrooms'

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    teacher_id = Column(ForeignKey('users.id', ondelete='RESTRICT', onupdate='RESTRICT'), nullable=False, index=True)
    created_at = Column(DateTime(True), nullable=False, server_default=func.now())

    teacher = relationship("User", foreign_keys=[teacher_id], back_populates="classrooms")
    enrollments = relationship("Enrollment", back_populates="classroom", uselist=True, lazy="select", passive_deletes=True)
    assignments = relationship("Assignment", back_populates="classroom", uselist=True, lazy="select", passive_deletes=True)


class Enrollment(Base):
    __tablename__ = 'classroom_enrollments'
    __table_args__ = (
        Index('classroom_enrollments_key', 'user_id', 'classroom_id', unique=True),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(ForeignKey('users.id', ondelete='CASCADE', onupdate='RESTRICT'), nullable=False)
    classroom_id = Column(ForeignKey('classrooms.id', ondelete='CASCADE', onupdate='RESTRICT'), nullable=False, index=True)
    enrolled_at = Column(DateTime(True), nullable=False, server_default=func.now())

    user = relationship("User", foreign_keys=[user_id], back_populates="enrollments")
    classroom = relationship("Classroom", foreign_keys=[classroom_id], back_populates="enrollments")


class Assignment(Base):
    __tablename__ = 'assignments'
    __table_args__ = (
        CheckConstraint("status IN ('draft', 'published')", name='ck_assignments_status'),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    classroom_id = Column(ForeignKey('classrooms.id', ondelete='CASCADE', onupdate='RESTRICT'), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    status = Column(String(16), nullable=False, default='draft')
    max_points = Column(Integer, nullable=False, default=100)
    due_date = Column(DateTime(True))

    classroom = relationship("Classroom", foreign_keys=[classroom_id], back_populates="assignments")
    progress = relationship("Progress", back_populates="assignment", uselist=True, lazy="select", passive_deletes=True)


class Progress(Base):
    __tablename__ = 'progress'
    __table_args__ = (
        CheckConstraint(
            "completion_percentage >= 0 AND completion_percentage <= 100",
            name='ck_progress_completion_percentage'
        ),
        Index('progress_user_assignment_key', 'user_id', 'assignment_id', unique=True),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(ForeignKey('users.id', ondelete='CASCADE', onupdate='RESTRICT'), nullable=False, index=True)
    assignment_id = Column(ForeignKey('assignments.id', ondelete='CASCADE', onupdate='RESTRICT'), nullable=False, index=True)
    completion_percentage = Column(Integer, nullable=False, default=0)
    status = Column(String(32), nullable=False, default='not_started')
    submitted_at = Column(DateTime(True))
    grade = Column(String(8))
    points_earned = Column(Integer)
    feedback = Column(Text)
    graded_at = Column(DateTime(True))

    user = relationship("User", foreign_keys=[user_id], back_populates="progress")
    assignment = relationship("Assignment", foreign_keys=[assignment_id], back_populates="progress")
