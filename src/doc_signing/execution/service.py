import base64
import binascii
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator

from .audit import AuditAction, AuditLog
from .docx import merge_source
from .documents import PDF_CONTENT_TYPE, DocumentStore
from .errors import (
    ConversionFailed,
    ExecutionError,
    GenerationFailed,
    InvalidRequest,
    InvalidState,
    NotFound,
    PersistenceFailed,
    StageFailed,
)
from .gate import DEFAULT_TOKEN_TTL, OrderGate
from .interfaces import (
    BlobStorageGateway,
    ConverterGateway,
    RecordStoreGateway,
    SecurityGateway,
    SourceFetcher,
)
from .models import (
    ArtifactVersion,
    AuditEntry,
    DocumentInstance,
    FormTemplate,
    InstanceStatus,
    Signer,
    SignerStatus,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

GENERATION_SOURCE_STATES = (InstanceStatus.SUBMITTED, InstanceStatus.ADMIN_REVIEW)
SUBMISSION_STATES = (
    InstanceStatus.DRAFT,
    InstanceStatus.SUBMITTED,
    InstanceStatus.ADMIN_REVIEW,
    InstanceStatus.AWAITING_SIGNATURES,
)


@dataclass
class GenerationResult:
    merged_artifact_url: str
    preview_artifact_url: str | None
    status: str
    version: int
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "merged_artifact_url": self.merged_artifact_url,
            "preview_artifact_url": self.preview_artifact_url,
            "status": self.status,
            "version": self.version,
            "warnings": list(self.warnings),
        }


@dataclass
class SignResult:
    status: str
    all_signed: bool
    final_artifact_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "all_signed": self.all_signed, "final_artifact_url": self.final_artifact_url}


@dataclass
class InstanceView:
    instance: DocumentInstance
    signers: list[Signer]
    versions: list[ArtifactVersion]

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.instance.to_dict(),
            "signers": [_public_signer(s) for s in self.signers],
            "versions": [v.to_dict() for v in self.versions],
        }


def _public_signer(signer: Signer) -> dict[str, Any]:
    return {k: v for k, v in signer.to_dict().items() if k not in ("access_token_hash", "ip_hash")}


def decode_signature(data: str) -> bytes:
    """Decode a base64 signature image, tolerating a ``data:`` URL prefix."""
    payload = data.split(",", 1)[1] if "," in data else data
    try:
        image = base64.b64decode(payload.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidRequest("Signature is not valid base64", code="INVALID_SIGNATURE", stage="validate") from e
    if not image:
        raise InvalidRequest("Signature required", code="SIGNATURE_REQUIRED", stage="validate")
    return image


@contextmanager
def _stage(name: str) -> Iterator[None]:
    try:
        yield
    except ExecutionError:
        raise
    except Exception as e:
        logger.exception("Unexpected failure in stage %s", name)
        raise StageFailed.wrap(name, e) from e


def _check_generatable(instance: DocumentInstance) -> None:
    if instance.status == InstanceStatus.FINALIZED:
        raise InvalidState("Document is already finalized", code="ALREADY_FINALIZED", stage="generate")
    if instance.status not in GENERATION_SOURCE_STATES:
        raise InvalidState(f"Cannot generate from status {instance.status}", stage="generate")


class ExecutionService:
    """Document execution state machine.

    Owns the DocumentInstance and Signer transitions. All collaborators are
    injected per invocation; the service keeps no state between calls.
    """

    def __init__(
        self,
        records: RecordStoreGateway,
        blobs: BlobStorageGateway,
        security: SecurityGateway,
        fetcher: SourceFetcher,
        converter: ConverterGateway | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        token_ttl: timedelta = DEFAULT_TOKEN_TTL,
    ) -> None:
        self._records = records
        self._security = security
        self._fetcher = fetcher
        self._converter = converter
        self._clock = clock
        self._token_ttl = token_ttl
        self.gate = OrderGate(records, security, clock=clock)
        self.documents = DocumentStore(blobs, records, clock=clock)
        self.audit = AuditLog(records, clock=clock)

    def _now(self) -> str:
        return to_iso(self._clock())

    # ------------------------------------------------------------------
    # Case setup
    # ------------------------------------------------------------------

    def create_template(self, name: str, source_url: str | None, body: str = "") -> FormTemplate:
        template = FormTemplate(id=str(uuid.uuid4()), name=name, source_url=source_url, body=body, created_at=self._now())
        self._records.save_template(template)
        return template

    def create_instance(self, template_id: str, *, actor: str = "admin") -> DocumentInstance:
        if self._records.get_template(template_id) is None:
            raise NotFound("Template not found", code="TEMPLATE_NOT_FOUND", stage="setup")
        now = self._now()
        instance = DocumentInstance(id=str(uuid.uuid4()), template_id=template_id, created_at=now, updated_at=now)
        self._records.save_instance(instance)
        self.audit.record(instance.id, AuditAction.INSTANCE_CREATED, actor=actor, details={"template_id": template_id})
        return instance

    def add_signer(self, instance_id: str, role: str, email: str, name: str | None = None, *, actor: str = "admin") -> Signer:
        self._require_instance(instance_id, stage="setup")
        existing = self._records.list_signers(instance_id)
        order = max((s.signing_order for s in existing), default=0) + 1
        signer = Signer(
            id=str(uuid.uuid4()),
            instance_id=instance_id,
            role=role,
            email=email,
            name=name,
            signing_order=order,
            updated_at=self._now(),
        )
        try:
            self._records.add_signer(signer)
        except ValueError as e:
            raise InvalidRequest(str(e), code="DUPLICATE_SIGNING_ORDER", stage="setup") from e
        self.audit.record(instance_id, AuditAction.SIGNER_ADDED, actor=actor, signer_id=signer.id,
                          details={"role": role, "signing_order": order})
        return signer

    def issue_token(self, signer_id: str, *, actor: str = "admin") -> tuple[Signer, str]:
        signer = self._records.get_signer(signer_id)
        if signer is None:
            raise NotFound("Signer not found", code="SIGNER_NOT_FOUND", stage="setup")
        token = self.gate.issue_token(signer, ttl=self._token_ttl)
        self.audit.record(signer.instance_id, AuditAction.TOKEN_ISSUED, actor=actor, signer_id=signer.id,
                          details={"expires_at": signer.token_expires_at})
        return signer, token

    # ------------------------------------------------------------------
    # Signer actions
    # ------------------------------------------------------------------

    def submit_form_and_generate(self, access_token: str | None, submission: Any) -> GenerationResult:
        """Validate the signer, persist the submission, and generate artifacts.

        Runs authorization, merge, conversion and the status transition in
        sequence. A failed conversion only drops the preview.
        """
        if not isinstance(submission, dict) or not submission:
            raise InvalidRequest("Form data required", code="DATA_REQUIRED", stage="validate")
        auth = self.gate.authorize(access_token)
        signer, instance = auth.signer, auth.instance

        if instance.status == InstanceStatus.FINALIZED:
            raise InvalidState("Document is already finalized", code="ALREADY_FINALIZED", stage="submit")
        if instance.status not in SUBMISSION_STATES:
            raise InvalidState(f"Cannot submit from status {instance.status}", stage="submit")
        template = self._load_template(instance)

        previous = replace(instance)
        instance.submission = dict(submission)
        if instance.status != InstanceStatus.ADMIN_REVIEW:
            instance.status = InstanceStatus.SUBMITTED
        instance.updated_at = self._now()
        try:
            self._records.save_instance(instance)
        except Exception as e:
            logger.exception("Failed to save submission for instance %s", instance.id)
            raise PersistenceFailed("Failed to save form data", code="SAVE_FAILED", stage="save_submission") from e
        self.audit.record(instance.id, AuditAction.FORM_SUBMITTED, actor=f"signer:{signer.id}", signer_id=signer.id,
                          details={"fields": sorted(instance.submission)})
        logger.info("Submission saved for instance %s, proceeding with generation", instance.id)

        try:
            result = self._generate(instance, template, actor=f"signer:{signer.id}", signer_id=signer.id)
        except ExecutionError:
            if previous.status == InstanceStatus.AWAITING_SIGNATURES:
                self._restore(previous)
            raise

        if signer.status == SignerStatus.PENDING:
            signer.status = SignerStatus.FORM_SUBMITTED
            signer.updated_at = self._now()
            self._records.save_signer(signer)
        return result

    def sign_document(
        self,
        access_token: str | None,
        signature_image: str | None,
        *,
        signature_type: str = "drawn",
        client_ip: str | None = None,
    ) -> SignResult:
        """Record a signature and finalize the instance once everyone has signed."""
        if not signature_image:
            raise InvalidRequest("Signature required", code="SIGNATURE_REQUIRED", stage="validate")
        auth = self.gate.authorize(access_token)
        signer, instance = auth.signer, auth.instance

        if signer.is_signed:
            raise InvalidState("Already signed", code="ALREADY_SIGNED", stage="sign")
        if instance.status == InstanceStatus.FINALIZED:
            raise InvalidState("Document is already finalized", code="ALREADY_FINALIZED", stage="sign")
        if instance.status != InstanceStatus.AWAITING_SIGNATURES or not instance.merged_artifact_url:
            raise InvalidState("Document has not been generated yet", code="NOT_GENERATED", stage="sign")

        image = decode_signature(signature_image)
        try:
            signature_url = self.documents.put_signature(instance.id, signer.role, image)
        except Exception as e:
            logger.exception("Failed to store signature for signer %s", signer.id)
            raise PersistenceFailed("Failed to save signature", code="SIGNATURE_SAVE_FAILED", stage="store_signature") from e

        signed_at = self._now()
        signer.status = SignerStatus.SIGNED
        signer.signed_at = signed_at
        signer.signature_image_url = signature_url
        signer.signature_type = signature_type or "drawn"
        signer.ip_hash = self._security.hash_ip(client_ip) if client_ip else None
        signer.updated_at = signed_at
        with _stage("save_signature"):
            self._records.save_signer(signer)
        self.audit.record(
            instance.id, AuditAction.SIGNED, actor=f"signer:{signer.id}", signer_id=signer.id,
            details={
                "signing_order": signer.signing_order,
                "artifact_version": instance.artifact_version,
                "merged_artifact_url": instance.merged_artifact_url,
                "preview_artifact_url": instance.preview_artifact_url,
                "signature_type": signer.signature_type,
            },
        )

        signers = self._records.list_signers(instance.id)
        all_signed = bool(signers) and all(s.is_signed for s in signers)
        logger.info("Signer %s signed instance %s; all signed: %s", signer.id, instance.id, all_signed)
        if not all_signed:
            return SignResult(status=instance.status, all_signed=False)

        with _stage("finalize"):
            self._finalize(instance, signers, actor=f"signer:{signer.id}")
        return SignResult(status=instance.status, all_signed=True, final_artifact_url=instance.final_artifact_url)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def request_admin_review(self, instance_id: str, *, actor: str = "admin") -> DocumentInstance:
        instance = self._require_instance(instance_id, stage="review")
        if instance.status != InstanceStatus.SUBMITTED:
            raise InvalidState(f"Cannot move {instance.status} to admin_review", stage="review")
        instance.status = InstanceStatus.ADMIN_REVIEW
        instance.updated_at = self._now()
        self._records.save_instance(instance)
        self.audit.record(instance.id, AuditAction.ADMIN_REVIEW_REQUESTED, actor=actor)
        return instance

    def regenerate(self, instance_id: str, *, actor: str = "admin") -> GenerationResult:
        instance = self._require_instance(instance_id, stage="generate")
        _check_generatable(instance)
        template = self._load_template(instance)
        return self._generate(instance, template, actor=actor)

    def get_instance(self, instance_id: str) -> InstanceView:
        instance = self._require_instance(instance_id, stage="lookup")
        return InstanceView(
            instance=instance,
            signers=self._records.list_signers(instance_id),
            versions=self.documents.history(instance_id),
        )

    def audit_trail(self, instance_id: str) -> list[AuditEntry]:
        self._require_instance(instance_id, stage="lookup")
        return self.audit.trail(instance_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_instance(self, instance_id: str, *, stage: str) -> DocumentInstance:
        instance = self._records.get_instance(instance_id)
        if instance is None:
            raise NotFound("Document not found", code="DOC_NOT_FOUND", stage=stage)
        return instance

    def _load_template(self, instance: DocumentInstance) -> FormTemplate:
        template = self._records.get_template(instance.template_id)
        if template is None:
            raise NotFound("Template not found", code="TEMPLATE_NOT_FOUND", stage="load_template")
        if not template.source_url:
            raise NotFound("No template source configured", code="NO_TEMPLATE", stage="load_template")
        return template

    def _restore(self, previous: DocumentInstance) -> None:
        """Put back the last generated state after a failed regeneration."""
        try:
            self._records.save_instance(previous)
        except Exception as e:
            logger.exception("Failed to restore instance %s after failed generation", previous.id)
            raise PersistenceFailed("Failed to restore document state", code="RESTORE_FAILED", stage="restore") from e
        logger.info("Instance %s restored to version %s", previous.id, previous.artifact_version)

    def _generate(
        self,
        instance: DocumentInstance,
        template: FormTemplate,
        *,
        actor: str,
        signer_id: str | None = None,
    ) -> GenerationResult:
        _check_generatable(instance)
        try:
            return self._run_generation(instance, template, actor=actor, signer_id=signer_id)
        except ExecutionError as e:
            self.audit.record(instance.id, AuditAction.GENERATION_FAILED, actor=actor, signer_id=signer_id,
                              details={**e.to_dict()})
            raise

    def _run_generation(
        self,
        instance: DocumentInstance,
        template: FormTemplate,
        *,
        actor: str,
        signer_id: str | None,
    ) -> GenerationResult:
        try:
            source = self._fetcher.fetch(template.source_url)
        except Exception as e:
            logger.exception("Failed to fetch template source for %s", template.id)
            raise GenerationFailed(f"Failed to fetch template: {e}", code="FETCH_TEMPLATE_FAILED", stage="fetch_template") from e

        with _stage("merge"):
            merged, artifact_name, content_type, warnings = merge_source(source, instance.submission)

        with _stage("allocate_version"):
            version = self.documents.new_version(instance)
        try:
            merged_url = self.documents.put_versioned(instance.id, version, artifact_name, merged, content_type)
        except Exception as e:
            logger.exception("Failed to store merged source for instance %s", instance.id)
            raise GenerationFailed(f"Failed to store merged document: {e}", code="UPLOAD_SOURCE_FAILED", stage="upload_source") from e

        preview_url, preview_failure = self._render_preview(instance, version, merged_url)
        if preview_failure is not None:
            warnings.append(f"preview unavailable: {preview_failure['message']}")
            self.audit.record(instance.id, AuditAction.PREVIEW_FAILED, actor=actor, signer_id=signer_id,
                              details={**preview_failure, "version": version})

        with _stage("promote"):
            self.documents.promote(instance, version, merged_url, preview_url)
        instance.status = InstanceStatus.AWAITING_SIGNATURES
        instance.updated_at = self._now()
        with _stage("save_instance"):
            self._records.save_instance(instance)

        self.audit.record(
            instance.id, AuditAction.GENERATION_SUCCEEDED, actor=actor, signer_id=signer_id,
            details={
                "version": version,
                "merged_artifact_url": merged_url,
                "preview_artifact_url": preview_url,
                "warnings": list(warnings),
            },
        )
        logger.info("Generated version %d for instance %s (preview: %s)", version, instance.id, bool(preview_url))
        return GenerationResult(
            merged_artifact_url=merged_url,
            preview_artifact_url=preview_url,
            status=instance.status,
            version=version,
            warnings=warnings,
        )

    def _render_preview(self, instance: DocumentInstance, version: int, merged_url: str) -> tuple[str | None, dict[str, str] | None]:
        """Best-effort PDF preview. Returns (url, None) or (None, failure)."""
        if self._converter is None:
            logger.warning("Conversion service not configured, skipping preview for instance %s", instance.id)
            return None, {"stage": "convert", "code": "CONVERTER_NOT_CONFIGURED", "message": "conversion service not configured"}
        try:
            pdf = self._converter.convert(merged_url)
        except ConversionFailed as e:
            logger.warning("Preview conversion failed for instance %s: %s", instance.id, e)
            return None, e.to_dict()
        except Exception as e:
            logger.exception("Unexpected preview conversion error for instance %s", instance.id)
            return None, {"stage": "convert", "code": "CONVERSION_FAILED", "message": str(e)}
        try:
            return self.documents.put_versioned(instance.id, version, "preview.pdf", pdf, PDF_CONTENT_TYPE), None
        except Exception as e:
            logger.warning("Failed to store preview for instance %s: %s", instance.id, e)
            return None, {"stage": "upload_preview", "code": "UPLOAD_PREVIEW_FAILED", "message": str(e)}

    def _finalize(self, instance: DocumentInstance, signers: list[Signer], *, actor: str) -> None:
        now = self._now()
        instance.status = InstanceStatus.FINALIZED
        instance.final_artifact_url = instance.preview_artifact_url or instance.merged_artifact_url
        instance.finalized_at = now
        instance.updated_at = now
        instance.completion_summary = {
            "document_id": instance.id,
            "completed_at": now,
            "artifact_version": instance.artifact_version,
            "signers": [
                {"role": s.role, "name": s.name, "email": s.email, "signing_order": s.signing_order, "signed_at": s.signed_at}
                for s in signers
            ],
        }
        self._records.save_instance(instance)
        self.audit.record(instance.id, AuditAction.FINALIZED, actor=actor,
                          details={"final_artifact_url": instance.final_artifact_url})
        logger.info("Instance %s finalized", instance.id)
