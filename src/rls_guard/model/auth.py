import uuid
from sqlalchemy import CheckConstraint, Column, DateTime, String, func
from sqlalchemy.orm import relationship

from .base import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = 'users'
    __table_args__ = (
        CheckConstraint("role IN ('student', 'teacher')", name='ck_users_role'),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(320), unique=True, nullable=False)
    full_name = Column(String(255))
    role = Column(String(16), nullable=False)
    created_at = Column(DateTime(True), nullable=False, server_default=func.now())

    # Relationships
    classrooms = relationship("Classroom", back_populates="teacher", uselist=True, lazy="select", passive_deletes=True)
    enrollments = relationship("Enrollment", back_populates="user", uselist=True, lazy="select", passive_deletes=True)
    progress = relationship("Progress", back_populates="user", uselist=True, lazy="select", passive_deletes=True)
