import pytest
from fastapi.testclient import TestClient

from conftest import SIGNATURE_B64, SUBMISSION, TEMPLATE_URL
from doc_signing.webapi import app, get_service


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def _setup_case(client, n_signers=2):
    template = client.post("/templates", json={"name": "NDA", "source_url": TEMPLATE_URL}).json()
    instance = client.post("/instances", json={"template_id": template["id"]}).json()
    tokens = []
    for i in range(n_signers):
        signer = client.post(f"/instances/{instance['id']}/signers",
                             json={"role": f"party_{i + 1}", "email": f"p{i}@example.com"}).json()
        tokens.append(client.post(f"/signers/{signer['id']}/token").json()["access_token"])
    return instance["id"], tokens


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_submit_and_sign_over_http(client):
    instance_id, tokens = _setup_case(client)

    resp = client.post("/sign/submit", json={"accessToken": tokens[0], "submission_json": SUBMISSION})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "awaiting_signatures"
    assert body["merged_artifact_url"].endswith("/merged.html")
    assert body["preview_artifact_url"].endswith("/preview.pdf")

    for token in tokens:
        resp = client.post("/sign/signature", json={"accessToken": token, "signature_png_base64": SIGNATURE_B64},
                           headers={"x-forwarded-for": "203.0.113.5, 10.0.0.1"})
        assert resp.status_code == 200
    assert resp.json()["status"] == "finalized"
    assert resp.json()["all_signed"] is True

    view = client.get(f"/instances/{instance_id}").json()
    assert view["status"] == "finalized"
    assert len(view["versions"]) == 1
    actions = [e["action"] for e in client.get(f"/instances/{instance_id}/audit").json()]
    assert actions[-1] == "finalized"


def test_errors_are_structured(client):
    _, tokens = _setup_case(client)

    resp = client.post("/sign/submit", json={"accessToken": "bogus", "submission_json": SUBMISSION})
    assert resp.status_code == 404
    assert resp.json() == {"error": {"stage": "authorize", "code": "INVALID_TOKEN",
                                     "message": "Invalid or expired access token"}}

    client.post("/sign/submit", json={"accessToken": tokens[0], "submission_json": SUBMISSION})
    resp = client.post("/sign/signature", json={"accessToken": tokens[1], "signature_png_base64": SIGNATURE_B64})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "ORDER_VIOLATION"

    resp = client.post("/sign/submit", json={"accessToken": tokens[0]})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "DATA_REQUIRED"

    assert client.get("/instances/unknown").status_code == 404


class ExplodingService:
    def submit_form_and_generate(self, access_token, submission):
        raise RuntimeError("boom")


def test_unexpected_errors_become_internal_error():
    app.dependency_overrides[get_service] = lambda: ExplodingService()
    try:
        client = TestClient(app, raise_server_exceptions=False)
        resp = client.post("/sign/submit", json={"accessToken": "t", "submission_json": {"a": 1}})
    finally:
        app.dependency_overrides.clear()
    assert resp.status_code == 500
    assert resp.json() == {"error": {"stage": "internal", "code": "INTERNAL_ERROR", "message": "boom"}}
