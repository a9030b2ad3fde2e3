import logging
import re
from datetime import datetime
from typing import Callable

from .interfaces import BlobStorageGateway, RecordStoreGateway
from .models import ArtifactVersion, DocumentInstance, to_iso, unix_millis, utc_now

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
PNG_CONTENT_TYPE = "image/png"

_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")


def version_path(instance_id: str, version: int, artifact_name: str) -> str:
    return f"{instance_id}/v{version}/{artifact_name}"


def signature_path(instance_id: str, role: str, stamp: int) -> str:
    safe_role = _UNSAFE.sub("_", role).strip("_") or "signer"
    return f"{instance_id}/signatures/{safe_role}_{stamp}.png"


class DocumentStore:
    """Append-only bookkeeping of generated artifacts.

    Every generation writes under a fresh ``v{unix_millis}`` prefix. Earlier
    versions are never touched; only the instance's pointer to the current
    version moves.
    """

    def __init__(
        self,
        blobs: BlobStorageGateway,
        records: RecordStoreGateway,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._blobs = blobs
        self._records = records
        self._clock = clock

    def new_version(self, instance: DocumentInstance) -> int:
        """Allocate a version stamp strictly newer than the instance's current one."""
        version = unix_millis(self._clock())
        if instance.artifact_version is not None and version <= instance.artifact_version:
            version = instance.artifact_version + 1
        return version

    def put(self, path: str, data: bytes, content_type: str) -> str:
        if self._blobs.exists(path):
            raise FileExistsError(f"artifact already exists: {path}")
        self._blobs.upload(path, data, content_type)
        url = self._blobs.get_public_url(path)
        logger.info("Stored artifact %s (%d bytes)", path, len(data))
        return url

    def put_versioned(self, instance_id: str, version: int, artifact_name: str, data: bytes, content_type: str) -> str:
        return self.put(version_path(instance_id, version, artifact_name), data, content_type)

    def put_signature(self, instance_id: str, role: str, image: bytes) -> str:
        return self.put(signature_path(instance_id, role, unix_millis(self._clock())), image, PNG_CONTENT_TYPE)

    def promote(
        self,
        instance: DocumentInstance,
        version: int,
        merged_url: str,
        preview_url: str | None,
    ) -> ArtifactVersion:
        """Point ``instance`` at ``version`` and record it in the version history."""
        record = ArtifactVersion(
            instance_id=instance.id,
            version=version,
            merged_artifact_url=merged_url,
            preview_artifact_url=preview_url,
            created_at=to_iso(self._clock()),
        )
        self._records.append_version(record)
        instance.artifact_version = version
        instance.merged_artifact_url = merged_url
        instance.preview_artifact_url = preview_url
        return record

    def history(self, instance_id: str) -> list[ArtifactVersion]:
        return sorted(self._records.list_versions(instance_id), key=lambda v: v.version)
