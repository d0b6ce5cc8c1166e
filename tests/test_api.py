import csv
import io

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from plate_reader.api import batches as batches_api
from plate_reader.api import worker as worker_api
from plate_reader.core.errors import register_error_handlers
from plate_reader.worker.importer import BatchImporter


@pytest.fixture
def api(client, photos, batches, scheduler, test_config):
    app = FastAPI()
    register_error_handlers(app)
    app.include_router(batches_api.router, prefix="/api")
    app.include_router(worker_api.router, prefix="/api")

    importer = BatchImporter(photos, batches, test_config)
    app.dependency_overrides[batches_api.get_photo_store] = lambda: photos
    app.dependency_overrides[batches_api.get_batch_store] = lambda: batches
    app.dependency_overrides[batches_api.get_importer] = lambda: importer
    app.dependency_overrides[batches_api.get_scheduler] = lambda: scheduler
    app.dependency_overrides[worker_api.get_scheduler] = lambda: scheduler
    return TestClient(app)


def test_unknown_batch_is_404_with_error_body(api):
    response = api.get("/api/batches/missing/status")

    assert response.status_code == 404
    assert response.json() == {"error": "not_found", "message": "Batch missing not found"}


def test_status_snapshot(api, client):
    client.add_batch(name="45_ROCHA", total_photos=4, success_photos=3, failure_photos=1)

    response = api.get("/api/batches/45_ROCHA/status")

    body = response.json()
    assert response.status_code == 200
    assert body["name"] == "45_ROCHA"
    assert body["success_percentage"] == 75.0
    assert body["completed_percentage"] == 100.0


def test_list_batches_is_paginated(api, client):
    for i in range(3):
        client.add_batch(name=f"batch_{i}", status="pending" if i else "concluded")

    response = api.get("/api/batches", params={"status": "pending", "page": 1, "limit": 1})

    body = response.json()
    assert response.status_code == 200
    assert len(body["batches"]) == 1
    assert body["pagination"] == {"page": 1, "totalPages": 2, "totalRecords": 2, "perPage": 1}


def test_invalid_status_filter_is_400(api, client):
    client.add_batch(name="45_ROCHA")

    response = api.get("/api/batches/45_ROCHA/photos", params={"status": "done"})

    assert response.status_code == 400
    assert response.json()["error"] == "bad_request"


def test_photos_list_filters_by_status(api, client):
    batch = client.add_batch(name="45_ROCHA")
    client.add_photo(batch, external_id="1", status="success", detected_number="012345")
    client.add_photo(batch, external_id="2", status="pending")

    response = api.get("/api/batches/45_ROCHA/photos", params={"status": "success"})

    body = response.json()
    assert [photo["external_id"] for photo in body["photos"]] == ["1"]
    assert body["photos"][0]["detected_number"] == "012345"
    assert body["pagination"]["totalRecords"] == 1


def test_export_csv(api, client):
    batch = client.add_batch(name="45_ROCHA")
    client.add_photo(batch, external_id="2", status="failure", reason="no text detected")
    client.add_photo(batch, external_id="1", status="success", detected_number="000123", confidence=98.5)
    client.add_photo(batch, external_id="3", status="pending")

    response = api.get("/api/batches/45_ROCHA/export")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "45_ROCHA_results.csv" in response.headers["content-disposition"]
    rows = list(csv.DictReader(io.StringIO(response.text)))
    assert [row["id"] for row in rows] == ["1", "2"]
    assert rows[0]["detected_number"] == "000123"
    assert rows[0]["confidence"] == "98.50"
    assert rows[1]["failed"] == "true"


def test_review_queue_lists_warnings_with_alternatives(api, client):
    batch = client.add_batch(name="45_ROCHA")
    client.add_photo(
        batch,
        external_id="9",
        status="warning",
        requires_review=True,
        detected_number="222222",
        confidence=99.0,
        alternatives=[{"text": "111111", "confidence": 96.0}],
    )
    client.add_photo(batch, external_id="10", status="success")

    response = api.get("/api/batches/45_ROCHA/review")

    photos = response.json()["photos"]
    assert len(photos) == 1
    assert photos[0]["id"] == "9"
    assert photos[0]["alternatives"] == [{"text": "111111", "confidence": 96.0}]


@pytest.mark.parametrize("status", ["processing", "concluded"])
def test_process_rejects_busy_or_finished_batch(api, client, status):
    client.add_batch(name="45_ROCHA", status=status)

    response = api.post("/api/batches/45_ROCHA/process")

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_state"


def test_process_unknown_batch(api):
    assert api.post("/api/batches/missing/process").status_code == 404


def test_process_runs_scheduler_in_background(api, client):
    batch = client.add_batch(name="45_ROCHA")
    client.add_photo(batch)

    response = api.post("/api/batches/45_ROCHA/process")

    assert response.status_code == 200
    assert response.json()["status"] == "processing_started"
    assert client.batch(batch["id"])["status"] == "concluded"


def test_process_while_cycle_in_progress_does_not_start(api, client, lock):
    batch = client.add_batch(name="45_ROCHA")
    client.add_photo(batch)
    lock.acquire()

    response = api.post("/api/batches/45_ROCHA/process")

    body = response.json()
    assert response.status_code == 200
    assert body["status"] == "cycle_in_progress"
    assert "not started" in body["message"]
    assert client.batch(batch["id"])["status"] == "pending"
    assert client.tables["photos"][0]["status"] == "pending"


def test_statistics(api, client):
    done = client.add_batch(name="45_ROCHA", status="concluded", actual_cost=0.002, estimated_cost=0.003)
    waiting = client.add_batch(name="46_LIMA", estimated_cost=0.001)
    client.add_photo(done, status="success", cost=0.001)
    client.add_photo(done, status="success", cost=0.001)
    client.add_photo(done, status="failure")
    client.add_photo(waiting)

    response = api.get("/api/statistics")

    body = response.json()
    assert response.status_code == 200
    assert body["batches"]["concluded"] == 1
    assert body["batches"]["pending"] == 1
    assert body["batches"]["total"] == 2
    assert body["photos"]["success"] == 2
    assert body["photos"]["total"] == 4
    assert body["photos"]["success_rate"] == 50.0
    assert body["costs"]["actual"] == 0.002
    assert body["costs"]["estimated"] == 0.004
    assert {item["name"] for item in body["latest_batches"]} == {"45_ROCHA", "46_LIMA"}


def test_import_upload_then_duplicate(api, client):
    content = b"id,file_url\n0001,https://photos.example.com/a/1.jpg\n"

    first = api.post("/api/batches/import", files={"file": ("45_ROCHA.csv", content, "text/csv")})
    second = api.post("/api/batches/import", files={"file": ("again.csv", content, "text/csv")})

    assert first.status_code == 201
    assert first.json()["imported"] == 1
    assert first.json()["batch"]["name"] == "45_ROCHA"
    assert second.status_code == 409
    assert second.json()["error"] == "duplicate"
    assert len(client.tables["batches"]) == 1


def test_import_rejects_unreadable_sheet(api):
    response = api.post("/api/batches/import", files={"file": ("x.csv", b"a,b\n1,2\n", "text/csv")})

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_import"


def test_worker_run_returns_cycle_report(api, client):
    batch = client.add_batch(name="45_ROCHA")
    client.add_photo(batch)

    response = api.post("/api/worker/run")

    body = response.json()
    assert response.status_code == 200
    assert body["batch_name"] == "45_ROCHA"
    assert body["batches_processed"] == 1
    assert body["already_in_progress"] is False


def test_worker_run_while_cycle_in_progress(api, lock):
    lock.acquire()

    body = api.post("/api/worker/run").json()

    assert body["already_in_progress"] is True


def test_worker_status_before_start(api):
    body = api.get("/api/worker/status").json()

    assert body["status"] == "not_started"
    assert body["lock"]["running"] is False
    assert body["config"]["page_size"] >= 1
