from __future__ import annotations

import logging
from typing import Dict, List, Optional

from . import events
from .events import DomainEvent
from .models import Participant, Role

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Connected participants indexed by connection id and by role."""

    def __init__(self):
        self._participants: Dict[str, Participant] = {}
        self._by_role: Dict[Role, Dict[str, Participant]] = {role: {} for role in Role}

    def register(self, connection_id: str, name: str, role: Role) -> Participant:
        # joining again on the same connection renames but keeps the id and answered flag
        previous = self.unregister(connection_id)
        kept = {"id": previous.id, "has_answered": previous.has_answered} if previous is not None else {}
        participant = Participant(connection_id=connection_id, name=name, role=role, **kept)
        self._participants[connection_id] = participant
        self._by_role[role][connection_id] = participant
        logger.info("%s %r joined (%d connected)", role.value, name, len(self._participants))
        return participant

    def unregister(self, connection_id: str) -> Optional[Participant]:
        participant = self._participants.pop(connection_id, None)
        if participant is None:
            return None
        self._by_role[participant.role].pop(connection_id, None)
        logger.info("%s %r left (%d connected)", participant.role.value, participant.name, len(self._participants))
        return participant

    def get(self, connection_id: str) -> Optional[Participant]:
        return self._participants.get(connection_id)

    def find(self, participant_id: str, role: Role | None = None) -> Optional[Participant]:
        pool = self._participants if role is None else self._by_role[role]
        for p in pool.values():
            if p.id == participant_id:
                return p
        return None

    def list_by_role(self, role: Role) -> List[Participant]:
        return list(self._by_role[role].values())

    @property
    def students(self) -> List[Participant]:
        return self.list_by_role(Role.STUDENT)

    def reset_answered(self) -> None:
        for p in self._by_role[Role.STUDENT].values():
            p.has_answered = False

    def all_students_answered(self) -> bool:
        return all(p.has_answered for p in self._by_role[Role.STUDENT].values())

    def counts(self) -> dict[str, int]:
        return {
            "total_users": len(self._participants),
            "teachers": len(self._by_role[Role.TEACHER]),
            "students": len(self._by_role[Role.STUDENT]),
        }

    def user_list(self) -> List[dict]:
        return [p.public() for p in self._participants.values()]

    def user_list_event(self) -> DomainEvent:
        return DomainEvent(events.USER_LIST_UPDATED, {"users": self.user_list(), **self.counts()})

    def presence_event(self, kind: str, participant: Participant) -> DomainEvent:
        """``user-joined`` / ``user-left`` for everyone except the participant."""
        return DomainEvent(
            kind,
            {"user": participant.public(), **self.counts()},
            exclude=participant.connection_id,
        )
