import base64
import hashlib
import json
import os
import secrets
from pathlib import Path
from typing import Any, Iterator
from urllib.parse import quote

import requests

from .interfaces import BlobStorageGateway, RecordStoreGateway, SecurityGateway
from .models import ArtifactVersion, AuditEntry, DocumentInstance, FormTemplate, Signer


class LocalBlobStorage(BlobStorageGateway):
    """Blob storage on a local directory served under ``public_base_url``."""

    def __init__(self, data_dir: str, public_base_url: str) -> None:
        self._base = (Path(data_dir) / "blobs").resolve()
        self._public = public_base_url.rstrip("/")

    def _path(self, path: str) -> Path:
        p = (self._base / path).resolve()
        if self._base not in p.parents:
            raise ValueError(f"path escapes storage root: {path}")
        return p

    def upload(self, path: str, data: bytes, content_type: str) -> None:
        p = self._path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        # "xb" refuses to replace an existing artifact
        with p.open("xb") as f:
            f.write(data)

    def get_public_url(self, path: str) -> str:
        return f"{self._public}/{quote(path)}"

    def exists(self, path: str) -> bool:
        return self._path(path).exists()

    def read(self, path: str) -> bytes:
        return self._path(path).read_bytes()


class SupabaseBlobStorage(BlobStorageGateway):
    """Blob storage backed by the Supabase Storage REST API."""

    def __init__(self, url: str, service_key: str, bucket: str, *, session: requests.Session | None = None) -> None:
        self._url = url.rstrip("/")
        self._bucket = bucket
        self._session = session or requests.Session()
        self._headers = {"Authorization": f"Bearer {service_key}", "apikey": service_key}

    def upload(self, path: str, data: bytes, content_type: str) -> None:
        resp = self._session.post(
            f"{self._url}/storage/v1/object/{self._bucket}/{quote(path)}",
            data=data,
            headers={**self._headers, "Content-Type": content_type, "x-upsert": "false"},
            timeout=60,
        )
        resp.raise_for_status()

    def get_public_url(self, path: str) -> str:
        return f"{self._url}/storage/v1/object/public/{self._bucket}/{quote(path)}"

    def exists(self, path: str) -> bool:
        resp = self._session.head(self.get_public_url(path), timeout=30)
        return resp.status_code == 200


class LocalRecordStore(RecordStoreGateway):
    """Relational store emulated with one JSON document per row under ``data_dir``.

    Writes replace whole rows (last write wins). Audit entries and artifact
    versions are JSON lines and are only ever appended.
    """

    def __init__(self, data_dir: str) -> None:
        self._base = Path(data_dir).resolve()

    # rows

    def _row_path(self, table: str, row_id: str) -> Path:
        return self._base / table / f"{row_id}.json"

    def _load(self, table: str, row_id: str) -> dict[str, Any] | None:
        p = self._row_path(table, row_id)
        if not p.exists():
            return None
        with p.open("r", encoding="utf-8") as f:
            return json.load(f)

    def _save(self, table: str, row_id: str, row: dict[str, Any]) -> None:
        p = self._row_path(table, row_id)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_suffix(".json.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(row, f, ensure_ascii=False, indent=2)
        os.replace(tmp, p)

    def _scan(self, table: str) -> Iterator[dict[str, Any]]:
        d = self._base / table
        if not d.exists():
            return
        for p in sorted(d.glob("*.json")):
            with p.open("r", encoding="utf-8") as f:
                yield json.load(f)

    # append-only logs

    def _append(self, table: str, key: str, row: dict[str, Any]) -> None:
        p = self._base / table / f"{key}.jsonl"
        p.parent.mkdir(parents=True, exist_ok=True)
        with p.open("a", encoding="utf-8") as f:
            f.write(json.dumps(row, ensure_ascii=False) + "\n")

    def _read_log(self, table: str, key: str) -> list[dict[str, Any]]:
        p = self._base / table / f"{key}.jsonl"
        if not p.exists():
            return []
        with p.open("r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    def get_template(self, template_id: str) -> FormTemplate | None:
        row = self._load("templates", template_id)
        return FormTemplate.from_dict(row) if row else None

    def save_template(self, template: FormTemplate) -> None:
        self._save("templates", template.id, template.to_dict())

    def get_instance(self, instance_id: str) -> DocumentInstance | None:
        row = self._load("instances", instance_id)
        return DocumentInstance.from_dict(row) if row else None

    def save_instance(self, instance: DocumentInstance) -> None:
        self._save("instances", instance.id, instance.to_dict())

    def get_signer(self, signer_id: str) -> Signer | None:
        row = self._load("signers", signer_id)
        return Signer.from_dict(row) if row else None

    def find_signer_by_token_hash(self, token_hash: str) -> Signer | None:
        for row in self._scan("signers"):
            if row.get("access_token_hash") == token_hash:
                return Signer.from_dict(row)
        return None

    def list_signers(self, instance_id: str) -> list[Signer]:
        rows = [Signer.from_dict(r) for r in self._scan("signers") if r.get("instance_id") == instance_id]
        return sorted(rows, key=lambda s: s.signing_order)

    def add_signer(self, signer: Signer) -> None:
        for existing in self.list_signers(signer.instance_id):
            if existing.signing_order == signer.signing_order:
                raise ValueError(
                    f"signing_order {signer.signing_order} already taken on instance {signer.instance_id}"
                )
        self.save_signer(signer)

    def save_signer(self, signer: Signer) -> None:
        self._save("signers", signer.id, signer.to_dict())

    def append_version(self, version: ArtifactVersion) -> None:
        self._append("versions", version.instance_id, version.to_dict())

    def list_versions(self, instance_id: str) -> list[ArtifactVersion]:
        return [ArtifactVersion.from_dict(r) for r in self._read_log("versions", instance_id)]

    def append_audit(self, entry: AuditEntry) -> None:
        self._append("audit", entry.instance_id, entry.to_dict())

    def list_audit(self, instance_id: str) -> list[AuditEntry]:
        return [AuditEntry.from_dict(r) for r in self._read_log("audit", instance_id)]


class TokenSecurity(SecurityGateway):
    def new_token(self) -> str:
        raw = secrets.token_bytes(32)
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    def hash_token(self, token: str) -> str:
        """Hash the token as an unpadded base64url-encoded SHA-256 digest.

        The digest is deterministic so signers can be looked up by it.
        """
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    def hash_ip(self, ip: str) -> str:
        return hashlib.sha256(ip.encode("utf-8")).hexdigest()[:16]
