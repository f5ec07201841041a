import pytest

from metaindex.run_config import IndexerRunConfig
from metaindex.storage import LocalSnapshotStore

from fakes import FakeClock, FakeTransport


BASE_URL = "https://example.com"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store(tmp_path):
    return LocalSnapshotStore(str(tmp_path / "store"))


@pytest.fixture
def config(tmp_path):
    """Config with tiny discovery surfaces so fakes only need a few routes."""
    return IndexerRunConfig(
        base_url=BASE_URL,
        max_retries=3,
        max_workers=4,
        store_dir=str(tmp_path / "store"),
        prefetch_delay=0.0,
        api_endpoints=[],
        scan_directories=[],
        scan_page_names=[],
        bootstrap_paths=["/pages/index.html"],
    )
