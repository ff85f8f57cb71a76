"""Shared fixtures for workshop-sync tests."""

import shutil
import sys
import zipfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to path so we can import modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from catalog import CatalogRecord
from config import Config


@pytest.fixture
def sample_config(tmp_path):
    """Pre-configured Config instance for testing."""
    return Config(
        manifest_path=tmp_path / "mods.yaml",
        mods_dir=tmp_path / "mods",
        catalog_url="https://catalog.example.com/details",
        workshop_url="https://steamcommunity.com/sharedfiles/filedetails/?id={id}",
        concurrent_downloads=1,
        download_attempts=5,
        retry_delay=0.0,
        download_timeout=10.0,
        catalog_timeout=5.0,
        failure_policy="fail-fast",
        sync_mode="reset",
        state_file=".state.json",
    )


@pytest.fixture
def config_toml_content():
    """Sample workshop-sync.toml content."""
    return """
manifest_path = "/tmp/custom/mods.yaml"
mods_dir = "/tmp/custom/mods"
concurrent_downloads = 4
failure_policy = "isolate"
"""


@pytest.fixture
def catalog_payload():
    """Raw catalog response for two mods, in reverse id order."""
    return [
        {
            "result": 1,
            "publishedfileid": "222",
            "title": "Beta Mod",
            "title_disk_safe": "Beta_Mod",
            "file_url": "https://cdn.example.com/222.zip",
            "time_updated": 1700000200,
        },
        {
            "result": 1,
            "publishedfileid": "111",
            "title": "Alpha Mod",
            "title_disk_safe": "Alpha_Mod",
            "file_url": "https://cdn.example.com/111.zip",
            "time_updated": 1700000100,
        },
    ]


def make_record(mod_id, title, updated=1700000000):
    return CatalogRecord(
        id=mod_id,
        title=title,
        title_safe=title.replace(" ", "_"),
        download_url=f"https://cdn.example.com/{mod_id}.zip",
        updated_at=datetime.fromtimestamp(updated, tz=timezone.utc),
    )


@pytest.fixture
def records():
    """Catalog records for the mods used across reconciler tests."""
    return [
        make_record(111, "Alpha Mod"),
        make_record(222, "Beta Mod"),
        make_record(333, "Gamma Mod"),
    ]


@pytest.fixture
def make_zip(tmp_path):
    """Factory writing a ZIP archive with the given {name: content} members."""
    counter = iter(range(1000))

    def _make(members):
        path = tmp_path / "archives" / f"archive_{next(counter)}.zip"
        path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(path, "w") as zf:
            for name, content in members.items():
                zf.writestr(name, content)
        return path

    return _make


class FakeFetcher:
    """Stands in for fetch_archive by copying prepared archives per URL."""

    def __init__(self, archives=None, failures=None):
        self.archives = archives or {}
        self.failures = failures or {}
        self.calls = []

    def __call__(self, url, destination, attempts=5, delay=0.0, timeout=120.0, on_progress=None):
        self.calls.append(url)
        if url in self.failures:
            raise self.failures[url]
        shutil.copyfile(self.archives[url], destination)
        size = destination.stat().st_size
        if on_progress:
            on_progress(size, size)
        return size


class FakeCatalog:
    """Stands in for fetch_details, returning fixed records."""

    def __init__(self, records, error=None):
        self.records = list(records)
        self.error = error
        self.requested = []

    def __call__(self, catalog_url, ids, timeout=30.0):
        self.requested.append(list(ids))
        if self.error is not None:
            raise self.error
        return list(self.records)
