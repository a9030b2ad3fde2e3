import pytest
import requests

from doc_signing.execution.conversion import (
    CONVERT_TASK,
    EXPORT_TASK,
    IMPORT_TASK,
    CloudConvertConverter,
    ConversionJob,
    task_graph,
)
from doc_signing.execution.errors import ConversionFailed, ConversionTimeout

API = "https://cc.test/v2"
EXPORT_URL = "https://storage.cc.test/out.pdf"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, content=b""):
        self.status_code = status_code
        self._payload = payload
        self.content = content
        self.reason = "OK" if status_code < 400 else "Error"
        self.text = str(payload)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._payload


def job_payload(status, tasks=None):
    return {"data": {"id": "job-1", "status": status, "tasks": tasks or []}}


def finished_payload(url=EXPORT_URL):
    return job_payload("finished", [
        {"name": IMPORT_TASK, "status": "finished"},
        {"name": CONVERT_TASK, "status": "finished"},
        {"name": EXPORT_TASK, "status": "finished", "result": {"files": [{"filename": "out.pdf", "url": url}]}},
    ])


class FakeSession:
    def __init__(self, polls, create=None):
        self.create = create or FakeResponse(201, job_payload("waiting"))
        self.polls = list(polls)
        self.posts = []
        self.poll_count = 0
        self.downloads = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append((url, json, headers))
        return self.create

    def get(self, url, headers=None, timeout=None):
        if url == EXPORT_URL:
            self.downloads.append(url)
            return FakeResponse(200, content=b"%PDF-1.7")
        assert url == f"{API}/jobs/job-1"
        self.poll_count += 1
        item = self.polls.pop(0) if len(self.polls) > 1 else self.polls[0]
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def sleeps():
    return []


def make_converter(session, sleeps):
    return CloudConvertConverter("secret", session=session, api_base=API, sleep=sleeps.append)


def test_task_graph_chains_import_convert_export():
    graph = task_graph("https://files.test/merged.docx")["tasks"]
    assert graph[IMPORT_TASK] == {"operation": "import/url", "url": "https://files.test/merged.docx"}
    assert graph[CONVERT_TASK]["input"] == IMPORT_TASK
    assert graph[CONVERT_TASK]["output_format"] == "pdf"
    assert graph[EXPORT_TASK] == {"operation": "export/url", "input": CONVERT_TASK}


def test_convert_polls_until_finished_and_downloads(sleeps):
    session = FakeSession([
        FakeResponse(200, job_payload("processing")),
        FakeResponse(200, job_payload("processing")),
        FakeResponse(200, finished_payload()),
    ])
    pdf = make_converter(session, sleeps).convert("https://files.test/merged.docx")

    assert pdf == b"%PDF-1.7"
    assert session.poll_count == 3
    assert sleeps == [2.0, 2.0, 2.0]
    url, body, headers = session.posts[0]
    assert url == f"{API}/jobs"
    assert headers["Authorization"] == "Bearer secret"
    assert body["tasks"][IMPORT_TASK]["url"] == "https://files.test/merged.docx"
    assert session.downloads == [EXPORT_URL]


def test_job_error_raises_conversion_failed(sleeps):
    session = FakeSession([
        FakeResponse(200, job_payload("processing")),
        FakeResponse(200, job_payload("error", [{"name": CONVERT_TASK, "status": "error", "message": "corrupt file"}])),
    ])
    with pytest.raises(ConversionFailed) as info:
        make_converter(session, sleeps).convert("https://files.test/merged.docx")
    assert not isinstance(info.value, ConversionTimeout)
    assert info.value.code == "JOB_FAILED"
    assert "corrupt file" in info.value.message
    assert session.downloads == []


def test_times_out_after_exactly_sixty_attempts(sleeps):
    session = FakeSession([FakeResponse(200, job_payload("processing"))])
    with pytest.raises(ConversionTimeout) as info:
        make_converter(session, sleeps).convert("https://files.test/merged.docx")
    assert session.poll_count == 60
    assert sleeps == [2.0] * 60
    assert info.value.code == "CONVERSION_TIMEOUT"


def test_failed_polls_count_as_attempts_and_polling_continues(sleeps):
    session = FakeSession([
        FakeResponse(503, {"message": "busy"}),
        requests.ConnectionError("reset"),
        FakeResponse(200, finished_payload()),
    ])
    assert make_converter(session, sleeps).convert("https://files.test/merged.docx") == b"%PDF-1.7"
    assert session.poll_count == 3


def test_job_creation_failure(sleeps):
    session = FakeSession([], create=FakeResponse(422, {"message": "invalid"}))
    with pytest.raises(ConversionFailed) as info:
        make_converter(session, sleeps).convert("https://files.test/merged.docx")
    assert info.value.stage == "create_job"
    assert sleeps == []


def test_finished_job_without_export_url(sleeps):
    session = FakeSession([FakeResponse(200, job_payload("finished", [{"name": EXPORT_TASK, "status": "finished"}]))])
    with pytest.raises(ConversionFailed) as info:
        make_converter(session, sleeps).convert("https://files.test/merged.docx")
    assert info.value.code == "NO_EXPORT_URL"


def test_conversion_job_parsing():
    job = ConversionJob.from_payload(finished_payload())
    assert job.id == "job-1"
    assert job.is_terminal
    assert job.export_url() == EXPORT_URL
    assert job.failed_task() is None
    assert not ConversionJob.from_payload(job_payload("processing")).is_terminal
