import base64
import logging
from enum import Enum
from typing import Any, Mapping, Optional
from pydantic import BaseModel, ConfigDict, ValidationError

from rls_guard.api.exceptions import ActorUnresolved

logger = logging.getLogger(__name__)


class Role(str, Enum):
    student = "student"
    teacher = "teacher"


class Principal(BaseModel):
    """Resolved actor identity. A principal without user_id or role is anonymous."""

    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    role: Optional[Role] = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None or self.role is None

    @property
    def is_teacher(self) -> bool:
        return not self.is_anonymous and self.role == Role.teacher

    @property
    def is_student(self) -> bool:
        return not self.is_anonymous and self.role == Role.student

    def encode(self) -> bytes:
        """Encode principal for transmission"""
        return base64.b64encode(bytes(self.model_dump_json(), encoding="utf-8"))

    def get_user_id(self) -> Optional[str]:
        return self.user_id

    def get_user_id_or_throw(self) -> str:
        if self.is_anonymous:
            raise ActorUnresolved("Principal has no resolved identity")
        return self.user_id


ANONYMOUS = Principal()


def build_principal(claims: Optional[Mapping[str, Any]]) -> Principal:
    """Build a principal from identity claims, raising ActorUnresolved if they are unusable.

    Accepts the id under ``id``, ``user_id`` or ``sub`` and the role either at the
    top level or inside ``user_metadata`` (the shape sign-up metadata arrives in).
    """
    if not claims:
        raise ActorUnresolved("No identity claims")

    user_id = claims.get("id") or claims.get("user_id") or claims.get("sub")
    role = claims.get("role")
    if role is None and isinstance(claims.get("user_metadata"), Mapping):
        role = claims["user_metadata"].get("role")

    if not user_id:
        raise ActorUnresolved("Identity claims carry no user id")

    try:
        return Principal(user_id=str(user_id), role=role)
    except ValidationError as e:
        raise ActorUnresolved(f"Unsupported role {role!r}") from e


def resolve_principal(claims: Optional[Mapping[str, Any]]) -> Principal:
    """Like build_principal, but an unresolvable identity degrades to ANONYMOUS."""
    try:
        principal = build_principal(claims)
    except ActorUnresolved as e:
        logger.warning(f"Treating request as anonymous: {e}")
        return ANONYMOUS

    if principal.is_anonymous:
        logger.warning(f"Principal {principal.user_id} has no role, treating as anonymous")
        return ANONYMOUS

    return principal
