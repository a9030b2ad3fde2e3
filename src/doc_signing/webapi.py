import asyncio
import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterator

import requests
from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field

from doc_signing.execution import ExecutionError, ExecutionService, describe_failure
from doc_signing.execution.adapters import (
    LocalBlobStorage,
    LocalRecordStore,
    SupabaseBlobStorage,
    TokenSecurity,
)
from doc_signing.execution.conversion import DEFAULT_API_BASE, CloudConvertConverter, HttpSourceFetcher
from doc_signing.execution.interfaces import BlobStorageGateway

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Document Signing Service",
    version=os.getenv("DOC_SIGNING_VERSION", "0.1.0"),
    description=(
        "REST API for merging form submissions into contract templates, "
        "rendering previews and collecting signatures in a fixed order."
    ),
)

# Global configuration defaults
DATA_DIR = Path(os.getenv("DATA_DIR", "./data")).resolve()
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local").lower()
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8080/files")
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
STORAGE_BUCKET = os.getenv("STORAGE_BUCKET", "legal-documents")
CLOUDCONVERT_API_KEY = os.getenv("CLOUDCONVERT_API_KEY", "")
CLOUDCONVERT_API_BASE = os.getenv("CLOUDCONVERT_API_BASE", DEFAULT_API_BASE)
TOKEN_TTL_DAYS = int(os.getenv("TOKEN_TTL_DAYS", "30"))

# Local backend artifacts are served from the same process
if STORAGE_BACKEND == "local":
    app.mount("/files", StaticFiles(directory=str(DATA_DIR / "blobs"), check_dir=False), name="files")


class SubmitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str | None = Field(default=None, alias="accessToken")
    submission_json: Any = None


class SignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str | None = Field(default=None, alias="accessToken")
    signature_png_base64: str | None = None
    signature_type: str = "drawn"


class TemplateRequest(BaseModel):
    name: str
    source_url: str | None = None
    body: str = ""


class InstanceRequest(BaseModel):
    template_id: str


class SignerRequest(BaseModel):
    role: str
    email: str
    name: str | None = None


def _blob_storage(session: requests.Session) -> BlobStorageGateway:
    if STORAGE_BACKEND == "supabase":
        return SupabaseBlobStorage(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY, STORAGE_BUCKET, session=session)
    return LocalBlobStorage(str(DATA_DIR), PUBLIC_BASE_URL)


def get_service() -> Iterator[ExecutionService]:
    """Build a fresh service and HTTP session for each request."""
    session = requests.Session()
    try:
        converter = None
        if CLOUDCONVERT_API_KEY:
            converter = CloudConvertConverter(CLOUDCONVERT_API_KEY, session=session, api_base=CLOUDCONVERT_API_BASE)
        yield ExecutionService(
            records=LocalRecordStore(str(DATA_DIR)),
            blobs=_blob_storage(session),
            security=TokenSecurity(),
            fetcher=HttpSourceFetcher(session),
            converter=converter,
            token_ttl=timedelta(days=TOKEN_TTL_DAYS),
        )
    finally:
        session.close()


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    if ip := request.headers.get("cf-connecting-ip"):
        return ip
    return request.client.host if request.client else None


@app.exception_handler(ExecutionError)
async def _execution_error(request: Request, exc: ExecutionError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("%s %s failed at %s: %s", request.method, request.url.path, exc.stage, exc.code)
    return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error in %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": describe_failure(exc)})


@app.on_event("startup")
async def _startup() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)


@app.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.post("/sign/submit")
async def submit_form(body: SubmitRequest, service: ExecutionService = Depends(get_service)) -> dict[str, Any]:
    """Save a signer's form submission and generate the merged document and preview."""
    result = await asyncio.to_thread(service.submit_form_and_generate, body.access_token, body.submission_json)
    return {"success": True, **result.to_dict()}


@app.post("/sign/signature")
async def sign(body: SignRequest, request: Request, service: ExecutionService = Depends(get_service)) -> dict[str, Any]:
    result = await asyncio.to_thread(
        service.sign_document,
        body.access_token,
        body.signature_png_base64,
        signature_type=body.signature_type,
        client_ip=_client_ip(request),
    )
    return {"success": True, **result.to_dict()}


@app.post("/templates", status_code=status.HTTP_201_CREATED)
async def create_template(body: TemplateRequest, service: ExecutionService = Depends(get_service)) -> dict[str, Any]:
    template = await asyncio.to_thread(service.create_template, body.name, body.source_url, body.body)
    return template.to_dict()


@app.post("/instances", status_code=status.HTTP_201_CREATED)
async def create_instance(body: InstanceRequest, service: ExecutionService = Depends(get_service)) -> dict[str, Any]:
    instance = await asyncio.to_thread(service.create_instance, body.template_id)
    return instance.to_dict()


@app.post("/instances/{instance_id}/signers", status_code=status.HTTP_201_CREATED)
async def add_signer(instance_id: str, body: SignerRequest, service: ExecutionService = Depends(get_service)) -> dict[str, Any]:
    signer = await asyncio.to_thread(service.add_signer, instance_id, body.role, body.email, body.name)
    return {"id": signer.id, "role": signer.role, "signing_order": signer.signing_order, "status": signer.status}


@app.post("/signers/{signer_id}/token")
async def issue_token(signer_id: str, service: ExecutionService = Depends(get_service)) -> dict[str, Any]:
    """Issue a signing token. The token is shown once and never stored in clear."""
    signer, token = await asyncio.to_thread(service.issue_token, signer_id)
    return {"signer_id": signer.id, "access_token": token, "expires_at": signer.token_expires_at}


@app.post("/instances/{instance_id}/review")
async def request_review(instance_id: str, service: ExecutionService = Depends(get_service)) -> dict[str, Any]:
    instance = await asyncio.to_thread(service.request_admin_review, instance_id)
    return {"id": instance.id, "status": instance.status}


@app.post("/instances/{instance_id}/generate")
async def regenerate(instance_id: str, service: ExecutionService = Depends(get_service)) -> dict[str, Any]:
    result = await asyncio.to_thread(service.regenerate, instance_id)
    return result.to_dict()


@app.get("/instances/{instance_id}")
async def get_instance(instance_id: str, service: ExecutionService = Depends(get_service)) -> dict[str, Any]:
    view = await asyncio.to_thread(service.get_instance, instance_id)
    return view.to_dict()


@app.get("/instances/{instance_id}/audit")
async def get_audit(instance_id: str, service: ExecutionService = Depends(get_service)) -> list[dict[str, Any]]:
    entries = await asyncio.to_thread(service.audit_trail, instance_id)
    return [e.to_dict() for e in entries]


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    # Enable reload in dev unless explicitly disabled
    reload = os.getenv("RELOAD", "true").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("doc_signing.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
