import logging
import uuid
from datetime import datetime
from typing import Any, Callable

from .interfaces import RecordStoreGateway
from .models import AuditEntry, to_iso, utc_now

logger = logging.getLogger(__name__)


class AuditAction:
    FORM_SUBMITTED = "form_submitted"
    GENERATION_SUCCEEDED = "generation_succeeded"
    GENERATION_FAILED = "generation_failed"
    PREVIEW_FAILED = "preview_failed"
    SIGNED = "signed"
    FINALIZED = "finalized"
    INSTANCE_CREATED = "instance_created"
    SIGNER_ADDED = "signer_added"
    TOKEN_ISSUED = "token_issued"
    ADMIN_REVIEW_REQUESTED = "admin_review_requested"


class AuditLog:
    """Append-only action history per document instance."""

    def __init__(self, records: RecordStoreGateway, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._records = records
        self._clock = clock

    def record(
        self,
        instance_id: str,
        action: str,
        *,
        actor: str,
        signer_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            id=str(uuid.uuid4()),
            instance_id=instance_id,
            signer_id=signer_id,
            action=action,
            actor=actor,
            details=dict(details or {}),
            created_at=to_iso(self._clock()),
        )
        self._records.append_audit(entry)
        logger.info("audit %s instance=%s signer=%s actor=%s", action, instance_id, signer_id, actor)
        return entry

    def trail(self, instance_id: str) -> list[AuditEntry]:
        return sorted(self._records.list_audit(instance_id), key=lambda e: e.created_at)
