"""Tests for the Flask HTTP surface."""
from __future__ import annotations

import pytest

from handlegraph.api.server import create_app
from handlegraph.config import WorkerSettings
from handlegraph.errors import RateLimitedError

pytestmark = pytest.mark.integration

TRIGGER = "X-Appengine-Cron"


@pytest.fixture
def app(tmp_path, job_store, blob_store, fake_client):
    fake_client.add_account("100", "root", followers=["11", "12"])
    fake_client.add_account("11", "c1")
    fake_client.add_account("12", "c2")
    settings = WorkerSettings(
        api_base_url="https://api.example.com/1.1",
        min_tick_seconds=60,
        lease_seconds=120,
        max_workers=2,
        admin_ids=frozenset({"admin"}),
        trigger_header=TRIGGER,
    )
    return create_app(
        {
            "TESTING": True,
            "LOG_DIR": str(tmp_path / "logs"),
            "JOB_STORE": job_store,
            "BLOB_STORE": blob_store,
            "CLIENT_FACTORY": lambda owner_id: fake_client,
            "WORKER_SETTINGS": settings,
        }
    )


@pytest.fixture
def client(app):
    return app.test_client()


def _as(owner_id: str) -> dict:
    return {"X-Owner-Id": owner_id}


def _add_root(client) -> None:
    response = client.post("/addHandle", data={"handle": "root"}, headers=_as("alice"))
    assert response.status_code == 201


# ==============================================================================
# Health and handle management
# ==============================================================================

def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_add_handle_requires_owner(client):
    assert client.post("/addHandle", data={"handle": "root"}).status_code == 401


def test_add_handle_creates_job(client):
    response = client.post("/addHandle", data={"handle": "root"}, headers=_as("alice"))

    assert response.status_code == 201
    payload = response.get_json()
    assert payload["root_id"] == "100"
    assert payload["phase"] == "paging_followers"
    assert payload["status"] == "Preparing to fetch"


def test_add_handle_twice_conflicts(client):
    _add_root(client)
    response = client.post("/addHandle", data={"handle": "root"}, headers=_as("alice"))
    assert response.status_code == 409


def test_add_unknown_handle_is_not_found(client):
    response = client.post("/addHandle", data={"handle": "ghost"}, headers=_as("alice"))
    assert response.status_code == 404


def test_add_handle_requires_handle(client):
    assert client.post("/addHandle", data={}, headers=_as("alice")).status_code == 400


def test_add_handle_while_rate_limited_says_when_to_retry(client, fake_client):
    def rate_limited(_handle):
        raise RateLimitedError("users/show.json rate limited", retry_after=120)

    fake_client.lookup_by_handle = rate_limited

    response = client.post("/addHandle", data={"handle": "root"}, headers=_as("alice"))

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "120"


def test_delete_handle_removes_job(client, job_store):
    _add_root(client)
    response = client.post("/deleteHandle", data={"id": "100"}, headers=_as("alice"))

    assert response.status_code == 200
    assert client.get("/status/100", headers=_as("alice")).status_code == 404


def test_delete_unknown_handle(client):
    response = client.post("/deleteHandle", data={"id": "404"}, headers=_as("alice"))
    assert response.status_code == 404


def test_update_owner_stores_token(client, job_store):
    response = client.post(
        "/updateOwner", data={"name": "alice", "token": "secret"}, headers=_as("alice")
    )

    assert response.status_code == 200
    assert job_store.get_owner("alice").bearer_token == "secret"


def test_update_owner_requires_token(client):
    response = client.post("/updateOwner", data={"name": "alice"}, headers=_as("alice"))
    assert response.status_code == 400


def test_status_lists_owner_jobs(client):
    _add_root(client)

    payload = client.get("/status", headers=_as("alice")).get_json()
    assert [job["root_id"] for job in payload["jobs"]] == ["100"]
    assert client.get("/status", headers=_as("bob")).get_json() == {"jobs": []}


# ==============================================================================
# Worker
# ==============================================================================

def test_worker_requires_trigger_or_admin(client):
    _add_root(client)

    assert client.get("/worker/").status_code == 403
    assert client.get("/worker/", headers=_as("alice")).status_code == 403


def test_trigger_advances_job(client):
    _add_root(client)

    response = client.get("/worker/", headers={TRIGGER: "true"})

    assert response.status_code == 200
    assert response.get_data(as_text=True) == "Updated alice: Fetched 2 follower IDs"


def test_worker_with_nothing_to_do(client):
    response = client.get("/worker/alice", headers={TRIGGER: "true"})
    assert response.get_data(as_text=True) == "Nothing to do"


def test_worker_unknown_job_is_not_found(client):
    response = client.get("/worker/alice/404", headers={TRIGGER: "true"})
    assert response.status_code == 404


def test_admin_runs_job_to_download(client):
    _add_root(client)

    statuses = []
    for _ in range(6):
        response = client.post("/worker/alice/100", headers=_as("admin"))
        assert response.status_code == 200
        statuses.append(response.get_data(as_text=True))

    assert statuses[-1] == "Updated alice: Graph built"
    status = client.get("/status/100", headers=_as("alice")).get_json()
    assert status["done"] is True
    assert status["children_hydrated"] == 2
    assert status["download_path"] == "graphs/alice/100"

    download = client.get("/download/100", headers=_as("alice"))
    assert download.status_code == 200
    assert download.headers["Content-Disposition"] == "Attachment; filename=root.gml"
    assert download.data.startswith(b"graph [")


def test_worker_ticks_run_under_configured_deadline(tmp_path, job_store, blob_store, fake_client):
    fake_client.add_account("100", "root", followers=["11"])
    settings = WorkerSettings(
        api_base_url="https://api.example.com/1.1",
        min_tick_seconds=60,
        lease_seconds=120,
        max_workers=1,
        admin_ids=frozenset(),
        trigger_header=TRIGGER,
        tick_timeout_seconds=0,
    )
    app = create_app(
        {
            "TESTING": True,
            "LOG_DIR": str(tmp_path / "logs"),
            "JOB_STORE": job_store,
            "BLOB_STORE": blob_store,
            "CLIENT_FACTORY": lambda owner_id: fake_client,
            "WORKER_SETTINGS": settings,
        }
    )
    client = app.test_client()
    _add_root(client)

    response = client.get("/worker/", headers={TRIGGER: "true"})

    assert response.status_code == 500
    assert response.get_data(as_text=True) == "worker error: (alice) follower page cancelled"
    job = job_store.get_job("alice", "100")
    assert job.status == "worker error: (alice) follower page cancelled"
    assert job.followers_cursor == "-1"
    assert fake_client.count("follower_ids") == 0


def test_download_before_done_is_not_found(client):
    _add_root(client)
    assert client.get("/download/100", headers=_as("alice")).status_code == 404
