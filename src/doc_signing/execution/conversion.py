"""
Drives an external CloudConvert job from source URL to PDF bytes.

The job is a three-task graph (import by URL, convert, export by URL). The
orchestrator polls it on a fixed schedule and gives up after a bounded number
of attempts; nothing is written to local disk.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import requests

from .errors import ConversionFailed, ConversionTimeout

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.cloudconvert.com/v2"
POLL_INTERVAL_SEC = 2.0
MAX_POLL_ATTEMPTS = 60

IMPORT_TASK = "import-source"
CONVERT_TASK = "convert-to-pdf"
EXPORT_TASK = "export-pdf"


class JobState:
    WAITING = "waiting"
    QUEUED = "queued"
    PROCESSING = "processing"
    FINISHED = "finished"
    ERROR = "error"


@dataclass
class ConversionJob:
    id: str
    status: str
    tasks: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ConversionJob":
        data = payload.get("data", payload)
        return cls(id=str(data["id"]), status=str(data.get("status", "")), tasks=list(data.get("tasks") or []))

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobState.FINISHED, JobState.ERROR)

    def failed_task(self) -> dict[str, Any] | None:
        for t in self.tasks:
            if t.get("status") == JobState.ERROR:
                return t
        return None

    def export_url(self, task_name: str = EXPORT_TASK) -> str | None:
        for t in self.tasks:
            if t.get("name") != task_name:
                continue
            files = (t.get("result") or {}).get("files") or []
            if files and files[0].get("url"):
                return str(files[0]["url"])
        return None


def task_graph(source_url: str, output_format: str = "pdf") -> dict[str, Any]:
    return {
        "tasks": {
            IMPORT_TASK: {"operation": "import/url", "url": source_url},
            CONVERT_TASK: {"operation": "convert", "input": IMPORT_TASK, "output_format": output_format},
            EXPORT_TASK: {"operation": "export/url", "input": CONVERT_TASK},
        }
    }


def download(session: requests.Session, url: str, *, timeout: float = 60) -> bytes:
    try:
        resp = session.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise ConversionFailed(f"Failed to download file: {e}", code="DOWNLOAD_FAILED", stage="download") from e
    if not resp.ok:
        raise ConversionFailed(f"Failed to download file: {resp.status_code} {resp.reason}", code="DOWNLOAD_FAILED", stage="download")
    return resp.content


class CloudConvertConverter:
    """ConverterGateway backed by the CloudConvert v2 jobs API."""

    def __init__(
        self,
        api_key: str,
        *,
        session: requests.Session | None = None,
        api_base: str = DEFAULT_API_BASE,
        poll_interval: float = POLL_INTERVAL_SEC,
        max_attempts: int = MAX_POLL_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_key = api_key
        self._session = session or requests.Session()
        self._api_base = api_base.rstrip("/")
        self._poll_interval = poll_interval
        self._max_attempts = max_attempts
        self._sleep = sleep

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    def convert(self, source_url: str) -> bytes:
        job = self.create_job(source_url)
        job = self.wait(job.id)
        url = job.export_url()
        if not url:
            raise ConversionFailed("No PDF URL in conversion result", code="NO_EXPORT_URL", stage="export")
        logger.info("Downloading converted PDF for job %s", job.id)
        return download(self._session, url)

    def create_job(self, source_url: str) -> ConversionJob:
        logger.info("Creating conversion job")
        try:
            resp = self._session.post(
                f"{self._api_base}/jobs",
                json=task_graph(source_url),
                headers={**self._headers, "Content-Type": "application/json"},
                timeout=30,
            )
        except requests.RequestException as e:
            raise ConversionFailed(f"Conversion job creation failed: {e}", code="JOB_CREATE_FAILED", stage="create_job") from e
        if not resp.ok:
            logger.error("Conversion job creation failed: %s %s", resp.status_code, resp.text)
            raise ConversionFailed(
                f"Conversion job creation failed: {resp.status_code} {resp.reason}",
                code="JOB_CREATE_FAILED",
                stage="create_job",
            )
        job = ConversionJob.from_payload(resp.json())
        logger.info("Conversion job created: %s", job.id)
        return job

    def wait(self, job_id: str) -> ConversionJob:
        """Poll until the job finishes, fails, or the attempt budget runs out."""
        for attempt in range(1, self._max_attempts + 1):
            self._sleep(self._poll_interval)
            try:
                resp = self._session.get(f"{self._api_base}/jobs/{job_id}", headers=self._headers, timeout=30)
            except requests.RequestException as e:
                logger.warning("Poll %d/%d for job %s failed: %s", attempt, self._max_attempts, job_id, e)
                continue
            if not resp.ok:
                logger.warning("Poll %d/%d for job %s returned %s", attempt, self._max_attempts, job_id, resp.status_code)
                continue
            job = ConversionJob.from_payload(resp.json())
            logger.debug("Job %s status: %s", job_id, job.status)
            if job.status == JobState.FINISHED:
                return job
            if job.status == JobState.ERROR:
                task = job.failed_task() or {}
                detail = task.get("message") or task.get("code") or "unknown error"
                raise ConversionFailed(f"Conversion job failed: {detail}", code="JOB_FAILED", stage="poll")
        raise ConversionTimeout(
            f"Conversion job {job_id} did not finish after {self._max_attempts} attempts",
            stage="poll",
        )


class HttpSourceFetcher:
    """SourceFetcher that downloads template sources over HTTP."""

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session = session or requests.Session()

    def fetch(self, url: str) -> bytes:
        return download(self._session, url)
