from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from plate_reader.core.models import Photo
from plate_reader.worker.recovery import STALE_RESET_NOTE


def minutes_ago(minutes):
    return (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat()


async def test_stale_processing_photo_is_reset(client, sweeper):
    batch = client.add_batch(status="processing")
    stale = client.add_photo(batch, status="processing", updated_at=minutes_ago(25), attempts=1)

    count = await sweeper.reset_stale(batch["id"])

    stored = client.photo(stale["id"])
    assert count == 1
    assert stored["status"] == "pending"
    assert stored["attempts"] == 1
    assert stored["notes"][-1]["kind"] == "stale_reset"
    assert STALE_RESET_NOTE in stored["notes"][-1]["message"]


async def test_recent_and_other_photos_are_left_alone(client, sweeper):
    batch = client.add_batch(status="processing")
    other_batch = client.add_batch(name="141_PAVUNA", status="processing")
    recent = client.add_photo(batch, status="processing", updated_at=minutes_ago(2))
    old_pending = client.add_photo(batch, status="pending", updated_at=minutes_ago(60))
    old_success = client.add_photo(batch, status="success", updated_at=minutes_ago(60))
    other = client.add_photo(other_batch, status="processing", updated_at=minutes_ago(60))

    count = await sweeper.reset_stale(batch["id"])

    assert count == 0
    assert client.photo(recent["id"])["status"] == "processing"
    assert client.photo(old_pending["id"])["notes"] == []
    assert client.photo(old_success["id"])["status"] == "success"
    assert client.photo(other["id"])["status"] == "processing"


async def test_staleness_window_can_be_overridden(client, sweeper):
    batch = client.add_batch(status="processing")
    photo = client.add_photo(batch, status="processing", updated_at=minutes_ago(3))

    count = await sweeper.reset_stale(batch["id"], staleness=timedelta(minutes=1))

    assert count == 1
    assert client.photo(photo["id"])["status"] == "pending"


async def test_photo_that_progressed_meanwhile_is_not_reset(client, photos, sweeper):
    batch = client.add_batch(status="processing")
    row = client.add_photo(batch, status="processing", updated_at=minutes_ago(30))
    snapshot = Photo.model_validate(dict(row))

    # The owner finishes the photo between the scan and the reset
    client.photo(row["id"]).update({"status": "success", "updated_at": minutes_ago(0)})
    photos.find_stale = AsyncMock(return_value=[snapshot])

    count = await sweeper.reset_stale(batch["id"])

    assert count == 0
    assert client.photo(row["id"])["status"] == "success"


async def test_reset_is_idempotent(client, sweeper):
    batch = client.add_batch(status="processing")
    client.add_photo(batch, status="processing", updated_at=minutes_ago(30))

    assert await sweeper.reset_stale(batch["id"]) == 1
    assert await sweeper.reset_stale(batch["id"]) == 0
