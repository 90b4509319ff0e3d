"""
Per-actor reachability sets for the classroom graph.

The index answers "which classrooms does this actor own / attend" in O(1) so
that policy predicates never traverse relationships per row. It is fed with
committed Classroom and Enrollment change events. Every membership fact carries
the commit sequence that last decided it, so applying an event twice, or
applying an older event after a newer one, leaves the index unchanged.
"""

import logging
import threading
from collections import defaultdict
from typing import Dict, FrozenSet, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from rls_guard.model import Classroom, Enrollment
from rls_guard.permissions.entities import Entity
from rls_guard.permissions.events import ChangeEvent, ChangeType

logger = logging.getLogger(__name__)


class AccessIndex:

    def __init__(self):
        # Guards the dictionaries below, nothing else
        self._lock = threading.RLock()
        self._owned: Dict[str, Set[str]] = defaultdict(set)
        self._enrolled: Dict[str, Set[str]] = defaultdict(set)
        self._members: Dict[str, Set[str]] = defaultdict(set)

        # classroom_id -> (seq, teacher_id or None when deleted)
        self._owners: Dict[str, Tuple[int, Optional[str]]] = {}
        # (user_id, classroom_id) -> (seq, present)
        self._memberships: Dict[Tuple[str, str], Tuple[int, bool]] = {}

    def owned_classrooms(self, actor_id: Optional[str]) -> FrozenSet[str]:
        if actor_id is None:
            return frozenset()
        with self._lock:
            return frozenset(self._owned.get(actor_id, ()))

    def enrolled_classrooms(self, actor_id: Optional[str]) -> FrozenSet[str]:
        if actor_id is None:
            return frozenset()
        with self._lock:
            return frozenset(self._enrolled.get(actor_id, ()))

    def owns(self, actor_id: Optional[str], classroom_id: Optional[str]) -> bool:
        if actor_id is None or classroom_id is None:
            return False
        with self._lock:
            return classroom_id in self._owned.get(actor_id, ())

    def is_enrolled(self, actor_id: Optional[str], classroom_id: Optional[str]) -> bool:
        if actor_id is None or classroom_id is None:
            return False
        with self._lock:
            return classroom_id in self._enrolled.get(actor_id, ())

    def snapshot(self, actor_id: Optional[str]) -> Tuple[FrozenSet[str], FrozenSet[str]]:
        """Owned and enrolled sets read under one lock acquisition."""
        if actor_id is None:
            return frozenset(), frozenset()
        with self._lock:
            return (
                frozenset(self._owned.get(actor_id, ())),
                frozenset(self._enrolled.get(actor_id, ())),
            )

    def snapshot_for(self, actor_id: Optional[str], event: ChangeEvent) -> Tuple[FrozenSet[str], FrozenSet[str]]:
        """Owned and enrolled sets as a subscriber should see ``event``.

        Inserts and updates are judged after their commit, deletes just before
        it: memberships this same commit revoked are put back.
        """
        if actor_id is None:
            return frozenset(), frozenset()
        with self._lock:
            owned = set(self._owned.get(actor_id, ()))
            enrolled = set(self._enrolled.get(actor_id, ()))
            if event.type != ChangeType.delete or event.commit_seq is None or not event.old:
                return frozenset(owned), frozenset(enrolled)

            if event.entity == Entity.classrooms:
                classroom_id = self._key(event.old, "id")
                if self._memberships.get((actor_id, classroom_id)) == (event.commit_seq, False):
                    enrolled.add(classroom_id)
                if self._owners.get(classroom_id) == (event.commit_seq, None) \
                        and self._key(event.old, "teacher_id") == actor_id:
                    owned.add(classroom_id)
            elif event.entity == Entity.enrollments:
                pair = self._pair(event.old)
                if pair and pair[0] == actor_id and self._memberships.get(pair) == (event.commit_seq, False):
                    enrolled.add(pair[1])

        return frozenset(owned), frozenset(enrolled)

    def on_classroom_change(self, event: ChangeEvent):
        if event.type == ChangeType.delete:
            classroom_id = self._key(event.old, "id")
            owner = None
        else:
            classroom_id = self._key(event.new, "id")
            owner = self._key(event.new, "teacher_id")

        if classroom_id is None:
            logger.warning(f"Ignoring classroom event without id (seq={event.commit_seq})")
            return

        with self._lock:
            seq = self._accept(self._owners.get(classroom_id), event.commit_seq)
            if seq is None:
                logger.debug(f"Stale classroom event {event.commit_seq} for {classroom_id}")
                return

            previous = self._owners.get(classroom_id, (0, None))[1]
            self._owners[classroom_id] = (seq, owner)

            if previous is not None and previous != owner:
                self._owned[previous].discard(classroom_id)
            if owner is not None:
                self._owned[owner].add(classroom_id)

            if event.type == ChangeType.delete:
                # Enrollments cascade with the classroom and produce no events of their own
                for user_id in list(self._members.get(classroom_id, ())):
                    self._apply_membership((user_id, classroom_id), seq, False)

        logger.debug(f"Classroom {classroom_id} owner is now {owner} (seq={seq})")

    def on_enrollment_change(self, event: ChangeEvent):
        with self._lock:
            if event.type in (ChangeType.update, ChangeType.delete) and event.old:
                old_pair = self._pair(event.old)
                new_pair = self._pair(event.new) if event.type == ChangeType.update else None
                if old_pair and old_pair != new_pair:
                    self._apply_membership(old_pair, event.commit_seq, False)

            if event.type in (ChangeType.insert, ChangeType.update):
                new_pair = self._pair(event.new)
                if new_pair:
                    self._apply_membership(new_pair, event.commit_seq, True)

    def rebuild(self, session: Session, commit_seq: int = 0):
        """Replace the whole index with the state currently committed in the store."""
        owners = session.execute(select(Classroom.id, Classroom.teacher_id)).all()
        members = session.execute(select(Enrollment.user_id, Enrollment.classroom_id)).all()

        with self._lock:
            self._owned.clear()
            self._enrolled.clear()
            self._members.clear()
            self._owners.clear()
            self._memberships.clear()

            for classroom_id, teacher_id in owners:
                self._owners[str(classroom_id)] = (commit_seq, str(teacher_id))
                self._owned[str(teacher_id)].add(str(classroom_id))

            for user_id, classroom_id in members:
                self._set_membership(str(user_id), str(classroom_id), commit_seq, True)

        logger.info(f"Access index rebuilt: {len(owners)} classrooms, {len(members)} enrollments")

    def clear(self):
        with self._lock:
            self._owned.clear()
            self._enrolled.clear()
            self._members.clear()
            self._owners.clear()
            self._memberships.clear()

    @staticmethod
    def _key(image, column) -> Optional[str]:
        if not image or image.get(column) is None:
            return None
        return str(image[column])

    def _pair(self, image) -> Optional[Tuple[str, str]]:
        user_id = self._key(image, "user_id")
        classroom_id = self._key(image, "classroom_id")
        if user_id is None or classroom_id is None:
            return None
        return user_id, classroom_id

    @staticmethod
    def _accept(current: Optional[Tuple[int, object]], commit_seq: Optional[int]) -> Optional[int]:
        """Sequence to record if the event wins, None if it is older than what we hold."""
        held = current[0] if current else 0
        if commit_seq is None:
            return held
        if commit_seq < held:
            return None
        return commit_seq

    def _apply_membership(self, pair: Tuple[str, str], commit_seq: Optional[int], present: bool):
        seq = self._accept(self._memberships.get(pair), commit_seq)
        if seq is not None and present and commit_seq is not None:
            # Enrollments older than their classroom's deletion went with it
            deleted_at, owner = self._owners.get(pair[1], (0, ""))
            if owner is None and commit_seq < deleted_at:
                seq = None
        if seq is None:
            logger.debug(f"Stale enrollment event {commit_seq} for {pair}")
            return
        self._set_membership(pair[0], pair[1], seq, present)

    def _set_membership(self, user_id: str, classroom_id: str, seq: int, present: bool):
        self._memberships[(user_id, classroom_id)] = (seq, present)
        if present:
            self._enrolled[user_id].add(classroom_id)
            self._members[classroom_id].add(user_id)
        else:
            self._enrolled[user_id].discard(classroom_id)
            self._members[classroom_id].discard(user_id)
