"""
Identity Directory

In-memory store of identity records, their enrollment flag and a bounded
access log per identity. Replace with a database-backed implementation
for multi-instance deployments; the orchestrator only relies on the public
methods below.
"""
import json
import logging
import threading
import time
import uuid
from dataclasses import replace
from typing import Dict, List, Optional

from bioauth.errors import IdentityNotFound
from bioauth.models.data_models import AccessLogEntry, Identity

logger = logging.getLogger(__name__)


class IdentityDirectory:
    """Thread-safe identity lookup and access logging"""

    MAX_ACCESS_LOG_ENTRIES = 100

    def __init__(self, clock=time.time):
        self._lock = threading.Lock()
        self._identities: Dict[str, Identity] = {}
        self._access_logs: Dict[str, List[AccessLogEntry]] = {}
        self._clock = clock

    def add(self, identity: Identity) -> Identity:
        """Store an identity, replacing any record with the same id."""
        with self._lock:
            if not identity.created_at:
                identity = replace(identity, created_at=self._clock())
            self._identities[identity.identity_id] = identity
        logger.info(f"Added identity {identity.identity_id}")
        return identity

    def get(self, identity_id: str) -> Optional[Identity]:
        with self._lock:
            return self._identities.get(identity_id)

    def find_by_email(self, email: str) -> Optional[Identity]:
        needle = email.strip().lower()
        with self._lock:
            for identity in self._identities.values():
                if identity.email.lower() == needle:
                    return identity
        return None

    def resolve(self, identity_ref: str) -> Optional[Identity]:
        """Look an identity up by id first, then by e-mail address."""
        if not identity_ref:
            return None
        return self.get(identity_ref) or self.find_by_email(identity_ref)

    def _update(self, identity_id: str, **changes) -> Identity:
        with self._lock:
            identity = self._identities.get(identity_id)
            if identity is None:
                raise IdentityNotFound("Identity not found", context={"identity_id": identity_id})
            updated = replace(identity, **changes)
            self._identities[identity_id] = updated
            return updated

    def mark_enrolled(self, identity_id: str) -> Identity:
        identity = self._update(identity_id, enrolled=True)
        logger.info(f"Biometric enrollment completed for identity {identity_id}")
        return identity

    def clear_enrollment(self, identity_id: str) -> Identity:
        identity = self._update(identity_id, enrolled=False)
        logger.info(f"Cleared biometric enrollment for identity {identity_id}")
        return identity

    def deactivate(self, identity_id: str) -> Identity:
        identity = self._update(identity_id, is_active=False)
        logger.info(f"Deactivated identity {identity_id}")
        return identity

    def update_last_login(self, identity_id: str) -> Identity:
        return self._update(identity_id, last_login_at=self._clock())

    def record_access(self, identity_id: str, event: str, metadata: Optional[dict] = None) -> AccessLogEntry:
        """
        Append an access event for an identity.

        Only the most recent MAX_ACCESS_LOG_ENTRIES events are kept.
        """
        entry = AccessLogEntry(
            entry_id=str(uuid.uuid4()),
            identity_id=identity_id,
            event=event,
            timestamp=self._clock(),
            metadata=dict(metadata or {}),
        )
        with self._lock:
            entries = self._access_logs.setdefault(identity_id, [])
            entries.append(entry)
            if len(entries) > self.MAX_ACCESS_LOG_ENTRIES:
                del entries[: len(entries) - self.MAX_ACCESS_LOG_ENTRIES]
        logger.info(f"Logged access for identity {identity_id}: {event}")
        return entry

    def access_log(self, identity_id: str, limit: int = 50) -> List[AccessLogEntry]:
        """Most recent access events first."""
        with self._lock:
            entries = list(self._access_logs.get(identity_id, []))
        return list(reversed(entries))[:limit]

    def load_seed_file(self, path: str) -> int:
        """
        Load identities from a JSON file containing a list of objects.

        Keys follow the API field names (id, email, name, role, accessLevel,
        department, isActive, biometricEnrolled).

        Returns:
            Number of identities loaded
        """
        with open(path, "r", encoding="utf-8") as f:
            records = json.load(f)

        count = 0
        for record in records:
            self.add(Identity(
                identity_id=record.get("id") or str(uuid.uuid4()),
                email=record["email"],
                name=record.get("name", ""),
                role=record.get("role", "user"),
                access_level=record.get("accessLevel", "standard"),
                department=record.get("department", ""),
                is_active=record.get("isActive", True),
                enrolled=record.get("biometricEnrolled", False),
            ))
            count += 1

        logger.info(f"Loaded {count} identities from {path}")
        return count
