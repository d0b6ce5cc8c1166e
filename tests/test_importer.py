from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from plate_reader.core.errors import DuplicateBatchError, ImportValidationError
from plate_reader.core.spreadsheet import content_hash
from plate_reader.worker.importer import BatchImporter, batch_name_from_file

CSV = (
    "ID_PRISMA;LINK_FOTO_PLAQUETA\n"
    "0001;https://photos.example.com/45_ROCHA/JPEG_1.jpg\n"
    "0002;https://photos.example.com/45_ROCHA/JPEG_2.jpg\n"
    "0003;https://drive.google.com/file/d/1AbC_dEf/view?usp=sharing\n"
).encode("utf-8")


@pytest.fixture
def importer(photos, batches, test_config):
    return BatchImporter(photos, batches, test_config)


def test_batch_name_from_file():
    assert batch_name_from_file("uploads/45_ROCHA.csv") == "45_ROCHA"
    with pytest.raises(ImportValidationError):
        batch_name_from_file(".csv")


async def test_import_creates_pending_batch_and_photos(client, importer):
    report = await importer.import_batch(CSV, "45_ROCHA.csv", source_file_id="drive-file-1")

    assert report.created is True
    assert report.imported == 3
    assert report.duplicates == 0
    assert report.invalid == 0

    batch = client.batch(report.batch.id)
    assert batch["name"] == "45_ROCHA"
    assert batch["status"] == "pending"
    assert batch["total_photos"] == 3
    assert batch["pending_photos"] == 3
    assert batch["imported_photos"] == 3
    assert batch["digit_length"] == 6
    assert batch["estimated_cost"] == pytest.approx(0.003)
    assert batch["source_file_id"] == "drive-file-1"

    rows = {row["external_id"]: row for row in client.tables["photos"]}
    assert set(rows) == {"0001", "0002", "0003"}
    assert all(row["status"] == "pending" for row in rows.values())
    assert rows["0001"]["source_kind"] == "http"
    assert rows["0001"]["http_url"] == "https://photos.example.com/45_ROCHA/JPEG_1.jpg"
    assert rows["0003"]["source_kind"] == "drive"
    assert rows["0003"]["drive_file_id"] == "1AbC_dEf"
    imported_at = [datetime.fromisoformat(rows[key]["imported_at"]) for key in ("0001", "0002", "0003")]
    assert imported_at == sorted(imported_at)
    assert len(set(imported_at)) == 3


async def test_reimporting_same_file_is_a_no_op(client, importer):
    first = await importer.import_batch(CSV, "45_ROCHA.csv")
    second = await importer.import_batch(CSV, "45_ROCHA_copy.csv")

    assert second.created is False
    assert second.batch.id == first.batch.id
    assert len(client.tables["batches"]) == 1
    assert len(client.tables["photos"]) == 3


async def test_duplicate_rows_produce_one_photo(client, importer):
    content = (
        "id,file_url\n"
        "10,https://photos.example.com/a/1.jpg\n"
        "10,https://photos.example.com/a/1.jpg\n"
        "10,https://other-host.example.com/a/1.jpg\n"
    ).encode("utf-8")

    report = await importer.import_batch(content, "dups.csv")

    # Same id and same normalized path, whatever the host
    assert report.imported == 1
    assert report.duplicates == 2
    assert len(client.tables["photos"]) == 1
    assert client.batch(report.batch.id)["errors"][-1]["kind"] == "import_notice"


async def test_rows_already_known_from_other_batches_are_skipped(client, importer):
    await importer.import_batch(CSV, "45_ROCHA.csv")
    content = CSV + b"0004;https://photos.example.com/45_ROCHA/JPEG_4.jpg\n"

    report = await importer.import_batch(content, "45_ROCHA_v2.csv")

    assert report.imported == 1
    assert report.duplicates == 3
    assert client.batch(report.batch.id)["total_photos"] == 1


async def test_invalid_rows_are_counted(importer):
    content = (
        "cid;link_ftp\n"
        ";45_ROCHA/JPEG_1.jpg\n"
        "2;\n"
        "3;45_ROCHA/JPEG_3.jpg\n"
    ).encode("utf-8")

    report = await importer.import_batch(content, "partial.csv")

    assert report.imported == 1
    assert report.invalid == 2


async def test_missing_columns_are_rejected_before_creating_batch(client, importer):
    with pytest.raises(ImportValidationError):
        await importer.import_batch(b"foo,bar\n1,2\n", "bad.csv")
    assert client.tables["batches"] == []


async def test_empty_upload_is_rejected(importer):
    with pytest.raises(ImportValidationError):
        await importer.import_batch(b"", "empty.csv")


async def test_existing_batch_name_is_rejected(client, importer):
    client.add_batch(name="45_ROCHA")

    with pytest.raises(DuplicateBatchError):
        await importer.import_batch(CSV, "45_ROCHA.csv")


async def test_insert_failure_marks_batch_error(client, photos, importer):
    photos.insert_many = AsyncMock(side_effect=RuntimeError("statement timeout"))

    with pytest.raises(RuntimeError):
        await importer.import_batch(CSV, "45_ROCHA.csv")

    batch = client.tables["batches"][0]
    assert batch["status"] == "error"
    assert "statement timeout" in batch["last_error"]["message"]


async def test_failed_import_is_resumed_on_reimport(client, photos, importer):
    insert_many = photos.insert_many
    photos.insert_many = AsyncMock(side_effect=RuntimeError("statement timeout"))
    with pytest.raises(RuntimeError):
        await importer.import_batch(CSV, "45_ROCHA.csv")
    photos.insert_many = insert_many

    report = await importer.import_batch(CSV, "45_ROCHA.csv")

    assert report.created is True
    assert report.resumed is True
    assert report.imported == 3
    assert len(client.tables["batches"]) == 1
    batch = client.tables["batches"][0]
    assert batch["status"] == "pending"
    assert batch["total_photos"] == 3
    assert batch["pending_photos"] == 3
    assert batch["last_error"] is None
    assert len(client.tables["photos"]) == 3


async def test_resumed_import_keeps_rows_written_before_the_crash(client, photos, importer):
    insert_many = photos.insert_many

    async def insert_then_fail(records):
        await insert_many(records)
        raise RuntimeError("connection reset")

    photos.insert_many = insert_then_fail
    with pytest.raises(RuntimeError):
        await importer.import_batch(CSV, "45_ROCHA.csv")
    photos.insert_many = insert_many

    report = await importer.import_batch(CSV, "45_ROCHA.csv")

    assert report.resumed is True
    assert report.imported == 0
    assert report.duplicates == 0
    assert len(client.tables["photos"]) == 3
    assert client.tables["batches"][0]["total_photos"] == 3
    assert client.tables["batches"][0]["status"] == "pending"


async def test_stale_importing_batch_is_resumed(client, importer):
    stale = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
    client.add_batch(name="45_ROCHA", file_hash=content_hash(CSV), status="importing", updated_at=stale)

    report = await importer.import_batch(CSV, "45_ROCHA.csv")

    assert report.created is True
    assert report.resumed is True
    assert client.tables["batches"][0]["status"] == "pending"
    assert len(client.tables["photos"]) == 3


async def test_live_import_is_left_alone(client, importer):
    client.add_batch(name="45_ROCHA", file_hash=content_hash(CSV), status="importing")

    report = await importer.import_batch(CSV, "45_ROCHA.csv")

    assert report.created is False
    assert client.tables["photos"] == []


async def test_batch_that_failed_processing_is_not_reimported(client, importer):
    client.add_batch(
        name="45_ROCHA",
        file_hash=content_hash(CSV),
        status="error",
        last_error={"message": "Rekognition unavailable", "timestamp": datetime.now(timezone.utc).isoformat(), "kind": "processing"},
    )

    report = await importer.import_batch(CSV, "45_ROCHA.csv")

    assert report.created is False
    assert client.tables["photos"] == []
