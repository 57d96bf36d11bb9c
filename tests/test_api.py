"""HTTP surface: worker trigger endpoint and process controls."""
from __future__ import annotations

import threading
import time
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from batchwork.api.app import create_app


@pytest.fixture
def client(registry) -> Iterator[TestClient]:
    with TestClient(create_app(registry)) as test_client:
        yield test_client


def _trigger(client: TestClient, transport):
    return client.post("/async", params=transport.last.params)


def test_health_lists_registered_processes(client, make_process) -> None:
    make_process(action="rows")

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "processes": ["bw_rows"]}


def test_enqueue_dispatch_and_drain(client, make_process, transport) -> None:
    process = make_process()

    response = client.post("/processes/bw_import_rows/items", json={"items": [1, 2, 3]})

    assert response.status_code == 201
    body = response.json()
    assert body["items"] == 3
    assert body["batch_key"].startswith("bw_import_rows_batch_")
    assert body["dispatch"]["ok"] is True

    status = client.get("/processes/bw_import_rows").json()
    assert status["is_queued"] is True
    assert status["queued_items"] == 3
    assert status["next_healthcheck_at"] is not None

    worker = _trigger(client, transport)
    assert worker.status_code == 200
    assert worker.json() == {"action": "bw_import_rows", "outcome": "handled"}
    assert process.seen == [1, 2, 3]

    status = client.get("/processes/bw_import_rows").json()
    assert status["is_active"] is False
    assert status["batches"] == 0


def test_trigger_forwards_caller_cookies(client, make_process, transport) -> None:
    make_process()
    client.cookies.set("session", "abc")

    client.post("/processes/bw_import_rows/items", json={"items": ["a"]})

    assert transport.last.cookies.get("session") == "abc"


def test_enqueue_without_dispatch(client, make_process, transport) -> None:
    make_process()

    response = client.post("/processes/bw_import_rows/items", json={"items": ["a"], "dispatch": False})

    assert response.status_code == 201
    assert response.json()["dispatch"] is None
    assert transport.requests == []


def test_enqueue_validation_error_payload(client, make_process) -> None:
    make_process()

    response = client.post("/processes/bw_import_rows/items", json={"items": []})

    assert response.status_code == 422
    assert response.json()["error"] == "invalid_request"


def test_unknown_process_is_404(client) -> None:
    assert client.get("/processes/bw_nope").status_code == 404
    assert client.post("/async", params={"action": "bw_nope", "nonce": "x"}).status_code == 404


def test_forged_nonce_is_403(client, make_process) -> None:
    process = make_process()
    process.push("a").save()

    response = client.post("/async", params={"action": "bw_import_rows", "nonce": "forged"})

    assert response.status_code == 403
    assert process.seen == []


def test_dispatch_conflict_is_409(client, make_process, transport) -> None:
    process = make_process()
    process.lock_process()

    response = client.post("/processes/bw_import_rows/dispatch")

    assert response.status_code == 409
    assert response.json()["detail"]["error"] == "already_processing"
    assert transport.requests == []


def test_pause_resume_cancel_flow(client, make_process, transport) -> None:
    process = make_process()
    client.post("/processes/bw_import_rows/items", json={"items": ["a", "b"], "dispatch": False})

    paused = client.post("/processes/bw_import_rows/pause").json()
    assert paused["is_paused"] is True
    assert paused["status"] == "paused"

    resumed = client.post("/processes/bw_import_rows/resume")
    assert resumed.status_code == 200
    assert resumed.json()["ok"] is True

    cancelled = client.post("/processes/bw_import_rows/cancel")
    assert cancelled.status_code == 202
    assert _trigger(client, transport).json()["outcome"] == "cancelled"
    assert process.seen == []
    assert process.get_batches() == []


def test_delete_queue(client, make_process) -> None:
    process = make_process()
    process.push("a").save()

    response = client.delete("/processes/bw_import_rows/queue")

    assert response.status_code == 200
    assert response.json()["queued_items"] == 0
    assert process.is_queue_empty()


def test_startup_rearms_queued_processes(registry, make_process, scheduler) -> None:
    process = make_process()
    process.push("a").save()

    with TestClient(create_app(registry)):
        assert process.cron_hook_identifier in scheduler.schedules
    assert scheduler.shut_down is True


def test_concurrent_enqueue_requests_keep_their_own_batches(client, make_process, monkeypatch) -> None:
    process = make_process()
    generate_key = process.generate_key

    def slow_generate_key(length=None):
        time.sleep(0.05)
        return generate_key(length)

    monkeypatch.setattr(process, "generate_key", slow_generate_key)
    start = threading.Barrier(2)
    responses = {}

    def enqueue(name, items):
        start.wait()
        responses[name] = client.post(
            "/processes/bw_import_rows/items", json={"items": items, "dispatch": False}
        ).json()

    threads = [
        threading.Thread(target=enqueue, args=("a", ["a1", "a2"])),
        threading.Thread(target=enqueue, args=("b", ["b1", "b2"])),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    batches = {batch.key: batch.data for batch in process.get_batches()}
    assert batches == {
        responses["a"]["batch_key"]: ["a1", "a2"],
        responses["b"]["batch_key"]: ["b1", "b2"],
    }
