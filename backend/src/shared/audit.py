"""
Audit Logger.
Append-only record of every decision point: verification verdicts, payment
outcomes, retries, dead-letter entries and manual replays.
"""
import json
import uuid
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from .dynamo import clean_item
from .logging import logger
from .utils import DecimalEncoder, utc_now


class AuditLogger:
    """Writes AuditLogEntry records through the persistence gateway."""

    def __init__(self, persistence):
        self.persistence = persistence

    @staticmethod
    def build_entry(
        actor_id: str,
        actor_type: str,
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        success: bool,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create an entry without writing it (used inside the payment commit)."""
        entry = {
            'auditId': str(uuid.uuid4()),
            'actorId': actor_id or 'system',
            'actorType': actor_type,
            'action': action,
            'resourceType': resource_type,
            'resourceId': resource_id,
            'success': bool(success),
            'metadata': clean_item(metadata or {}),
            'createdAt': utc_now().isoformat(),
        }
        if error_message:
            entry['errorMessage'] = error_message[:1000]
        return entry

    def record(self, *args, **kwargs) -> Dict[str, Any]:
        """
        Build and persist an entry. Takes the same arguments as build_entry.

        A failed write is logged with the full entry so the decision is never lost
        from the logs; the caller's flow continues.
        """
        entry = self.build_entry(*args, **kwargs)
        log = logger.info if entry['success'] else logger.warning
        log(f"AUDIT {entry['action']} {entry['resourceType']}:{entry['resourceId']} success={entry['success']}")
        try:
            self.persistence.put_audit_entry(entry)
        except ClientError as e:
            logger.error(f"Audit write failed ({e}); entry: {json.dumps(entry, cls=DecimalEncoder)}")
        return entry
