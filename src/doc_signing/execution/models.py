from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any


class InstanceStatus:
    DRAFT = "draft"
    SUBMITTED = "submitted"
    ADMIN_REVIEW = "admin_review"
    AWAITING_SIGNATURES = "awaiting_signatures"
    FINALIZED = "finalized"


class SignerStatus:
    PENDING = "pending"
    FORM_SUBMITTED = "form_submitted"
    SIGNED = "signed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def unix_millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


class _Record:
    """Mixin giving dataclass rows a JSON-compatible dict form."""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class FormTemplate(_Record):
    id: str
    name: str
    source_url: str | None
    body: str = ""
    created_at: str | None = None


@dataclass
class DocumentInstance(_Record):
    id: str
    template_id: str
    status: str = InstanceStatus.DRAFT
    submission: dict[str, Any] = field(default_factory=dict)
    merged_artifact_url: str | None = None
    preview_artifact_url: str | None = None
    artifact_version: int | None = None
    final_artifact_url: str | None = None
    completion_summary: dict[str, Any] | None = None
    created_at: str | None = None
    updated_at: str | None = None
    finalized_at: str | None = None


@dataclass
class Signer(_Record):
    id: str
    instance_id: str
    role: str
    email: str
    signing_order: int
    name: str | None = None
    status: str = SignerStatus.PENDING
    access_token_hash: str | None = None
    token_expires_at: str | None = None
    signature_image_url: str | None = None
    signature_type: str | None = None
    ip_hash: str | None = None
    signed_at: str | None = None
    updated_at: str | None = None

    @property
    def is_signed(self) -> bool:
        return self.status == SignerStatus.SIGNED


@dataclass(frozen=True)
class ArtifactVersion(_Record):
    instance_id: str
    version: int
    merged_artifact_url: str
    preview_artifact_url: str | None
    created_at: str


@dataclass(frozen=True)
class AuditEntry(_Record):
    id: str
    instance_id: str
    signer_id: str | None
    action: str
    actor: str
    details: dict[str, Any]
    created_at: str
