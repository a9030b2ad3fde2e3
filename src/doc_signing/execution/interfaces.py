from dataclasses import dataclass
from typing import Protocol

from .models import ArtifactVersion, AuditEntry, DocumentInstance, FormTemplate, Signer


class ConverterGateway(Protocol):
    def convert(self, source_url: str) -> bytes:
        """Convert the document at ``source_url`` into a PDF and return its bytes.
        This is a blocking call; callers should offload to threads if needed.
        """


class SourceFetcher(Protocol):
    def fetch(self, url: str) -> bytes:
        ...


class BlobStorageGateway(Protocol):
    def upload(self, path: str, data: bytes, content_type: str) -> None:
        """Store ``data`` at ``path``. Must refuse to overwrite an existing object."""

    def get_public_url(self, path: str) -> str:
        ...

    def exists(self, path: str) -> bool:
        ...


class RecordStoreGateway(Protocol):
    def get_template(self, template_id: str) -> FormTemplate | None:
        ...

    def save_template(self, template: FormTemplate) -> None:
        ...

    def get_instance(self, instance_id: str) -> DocumentInstance | None:
        ...

    def save_instance(self, instance: DocumentInstance) -> None:
        ...

    def get_signer(self, signer_id: str) -> Signer | None:
        ...

    def find_signer_by_token_hash(self, token_hash: str) -> Signer | None:
        ...

    def list_signers(self, instance_id: str) -> list[Signer]:
        """Return the instance's signers ordered by ``signing_order``."""

    def add_signer(self, signer: Signer) -> None:
        """Insert a new signer; ``(instance_id, signing_order)`` must be unique."""

    def save_signer(self, signer: Signer) -> None:
        ...

    def append_version(self, version: ArtifactVersion) -> None:
        ...

    def list_versions(self, instance_id: str) -> list[ArtifactVersion]:
        ...

    def append_audit(self, entry: AuditEntry) -> None:
        ...

    def list_audit(self, instance_id: str) -> list[AuditEntry]:
        ...


class SecurityGateway(Protocol):
    def new_token(self) -> str:
        ...

    def hash_token(self, token: str) -> str:
        ...

    def hash_ip(self, ip: str) -> str:
        ...


@dataclass(frozen=True)
class Authorization:
    signer: Signer
    instance: DocumentInstance
