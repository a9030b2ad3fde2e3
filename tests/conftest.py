from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from doc_signing.execution import ExecutionService
from doc_signing.execution.adapters import LocalBlobStorage, LocalRecordStore, TokenSecurity
from doc_signing.execution.errors import ConversionFailed
from doc_signing.execution.models import DocumentInstance, Signer

TEMPLATE_URL = "https://templates.test/agreement.html"
TEMPLATE_TEXT = "Agreement between [CLIENT_NAME] and {company}. Total: {amount}"
PUBLIC_BASE = "http://files.test"


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeFetcher:
    def __init__(self, sources: dict[str, bytes] | None = None) -> None:
        self.sources = sources if sources is not None else {TEMPLATE_URL: TEMPLATE_TEXT.encode("utf-8")}
        self.calls: list[str] = []

    def fetch(self, url: str) -> bytes:
        self.calls.append(url)
        if url not in self.sources:
            raise ConnectionError(f"cannot reach {url}")
        return self.sources[url]


class FakeConverter:
    def __init__(self, result: bytes = b"%PDF-1.7 fake", error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[str] = []

    def convert(self, source_url: str) -> bytes:
        self.calls.append(source_url)
        if self.error is not None:
            raise self.error
        return self.result


@dataclass
class Case:
    instance: DocumentInstance
    signers: list[Signer]
    tokens: list[str]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def records(tmp_path) -> LocalRecordStore:
    return LocalRecordStore(str(tmp_path / "db"))


@pytest.fixture
def blobs(tmp_path) -> LocalBlobStorage:
    return LocalBlobStorage(str(tmp_path / "storage"), PUBLIC_BASE)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def converter() -> FakeConverter:
    return FakeConverter()


@pytest.fixture
def service(records, blobs, fetcher, converter, clock) -> ExecutionService:
    return ExecutionService(records, blobs, TokenSecurity(), fetcher, converter, clock=clock)


@pytest.fixture
def make_case(service):
    def _make(n_signers: int = 2, source_url: str | None = TEMPLATE_URL) -> Case:
        template = service.create_template("Services agreement", source_url, body="<p>[CLIENT_NAME]</p>")
        instance = service.create_instance(template.id)
        signers, tokens = [], []
        for i in range(n_signers):
            signer = service.add_signer(instance.id, role=f"party_{i + 1}", email=f"p{i + 1}@example.com")
            signer, token = service.issue_token(signer.id)
            signers.append(signer)
            tokens.append(token)
        return Case(instance=instance, signers=signers, tokens=tokens)

    return _make


SUBMISSION = {"client_name": "Ana", "company": "Acme", "amount": 42}
SIGNATURE_B64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="


def conversion_error() -> ConversionFailed:
    return ConversionFailed("Conversion job failed: bad input", code="JOB_FAILED", stage="poll")
