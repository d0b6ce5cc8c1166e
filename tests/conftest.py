import pytest

from fakes import FakeDetector, FakeDownloader, FakeNotifier, FakeSupabase
from plate_reader.core.config import Config
from plate_reader.core.extraction import NumberExtractor
from plate_reader.worker.database import BatchDatabase, PhotoDatabase
from plate_reader.worker.lock import ProcessingLock
from plate_reader.worker.processor import PhotoProcessor
from plate_reader.worker.recovery import StaleSweeper
from plate_reader.worker.scheduler import BatchScheduler
from plate_reader.worker.storage import PhotoStorage


@pytest.fixture
def test_config():
    cfg = Config()
    cfg.min_confidence = 95.0
    cfg.digit_length = 6
    cfg.max_attempts = 3
    cfg.stale_minutes = 10
    cfg.page_size = 10
    cfg.photo_delay_ms = 0
    cfg.cost_per_photo = 0.001
    cfg.photo_source = "auto"
    return cfg


@pytest.fixture
def client():
    return FakeSupabase()


@pytest.fixture
def photos(client):
    return PhotoDatabase(client)


@pytest.fixture
def batches(client):
    return BatchDatabase(client)


@pytest.fixture
def detector():
    return FakeDetector()


@pytest.fixture
def downloader():
    return FakeDownloader()


@pytest.fixture
def storage(test_config, downloader):
    return PhotoStorage(test_config, drive=downloader, ftp=downloader, http=downloader)


@pytest.fixture
def processor(photos, storage, detector, test_config):
    extractor = NumberExtractor(detector, min_confidence=test_config.min_confidence)
    return PhotoProcessor(photos, storage, extractor, test_config)


@pytest.fixture
def sweeper(photos):
    return StaleSweeper(photos, stale_minutes=10)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def lock():
    return ProcessingLock()


@pytest.fixture
def scheduler(photos, batches, processor, sweeper, notifier, lock, test_config):
    return BatchScheduler(
        photos,
        batches,
        processor,
        sweeper,
        notifier=notifier,
        lock=lock,
        config=test_config,
    )
