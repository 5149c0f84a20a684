"""In-memory audit trail of user and admin actions.

Keeps the most recent entries only; every entry is also written to the
JSON audit logger so nothing is lost when it falls off the end.
"""

import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ratekeeper.logging.audit import get_audit_logger

MAX_ENTRIES = 1000


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    VIEW = "VIEW"
    EXPORT = "EXPORT"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    RESET = "RESET"


@dataclass
class AuditEntry:
    action: str
    entity: str
    details: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str | None = None
    entity_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class AuditTrail:
    def __init__(self, max_entries: int = MAX_ENTRIES):
        self._entries: deque[AuditEntry] = deque(maxlen=max_entries)

    def log(
        self,
        action: str,
        entity: str,
        details: dict | None = None,
        *,
        entity_id: str | None = None,
        user_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            action=action.value if isinstance(action, AuditAction) else action,
            entity=entity,
            details=dict(details or {}),
            user_id=user_id,
            entity_id=entity_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self._entries.append(entry)
        get_audit_logger().info("Audit entry", extra={"audit_data": {"audit": entry.to_dict()}})
        return entry

    def entries(self) -> list[AuditEntry]:
        return list(self._entries)

    def by_entity(self, entity: str) -> list[AuditEntry]:
        return [entry for entry in self._entries if entry.entity == entity]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def log_user_action(trail: AuditTrail, action: str, details: dict | None = None, **kwargs) -> AuditEntry:
    return trail.log(action, "USER", details, **kwargs)


def log_entity_action(
    trail: AuditTrail,
    action: str,
    entity: str,
    entity_id: str,
    details: dict | None = None,
    **kwargs,
) -> AuditEntry:
    return trail.log(action, entity, details, entity_id=entity_id, **kwargs)
