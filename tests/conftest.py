from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from catalog.archive import ArchiveProcessor
from catalog.config import CrawlOptions, SourceConfig
from catalog.crawler import CatalogCrawler
from catalog.db import connect_db, init_schema
from catalog.drive import file_id_from_url
from catalog.errors import ExtractionError, StorageError
from catalog.models import FOLDER_MIME_TYPE, SHORTCUT_MIME_TYPE, DriveItem

ROOT_ID = "root0"
ROOT_LINK = f"https://drive.google.com/drive/folders/{ROOT_ID}"


def folder_link(folder_id: str) -> str:
    return f"https://drive.google.com/drive/folders/{folder_id}"


def view_link(file_id: str) -> str:
    return f"https://drive.google.com/file/d/{file_id}/view"


def content_link(file_id: str) -> str:
    return f"https://drive.google.com/uc?id={file_id}&export=download"


class FakeDrive:
    """フォルダID -> エントリ一覧を持つメモリ上のDrive。"""

    def __init__(self):
        self.children: dict[str, list[str]] = {ROOT_ID: []}
        self.entries: dict[str, dict] = {}
        self.blobs: dict[str, bytes] = {}
        self.list_calls: list[str] = []
        self.downloads: list[str] = []
        self.fail_listing: set[str] = set()

    def add_folder(self, parent_id: str, folder_id: str, name: str, modified: str) -> str:
        self.entries[folder_id] = {
            "id": folder_id,
            "name": name,
            "mimeType": FOLDER_MIME_TYPE,
            "webViewLink": folder_link(folder_id),
            "modifiedTime": modified,
        }
        self.children.setdefault(folder_id, [])
        self.children[parent_id].append(folder_id)
        return folder_id

    def add_file(
        self,
        parent_id: str,
        file_id: str,
        name: str,
        modified: str,
        size: int = 1000,
        data: bytes = b"",
    ) -> str:
        ext = name.rsplit(".", 1)[1] if "." in name else None
        self.entries[file_id] = {
            "id": file_id,
            "name": name,
            "mimeType": "application/octet-stream",
            "fileExtension": ext,
            "size": str(size),
            "webViewLink": view_link(file_id),
            "webContentLink": content_link(file_id),
            "modifiedTime": modified,
        }
        self.blobs[file_id] = data
        self.children[parent_id].append(file_id)
        return file_id

    def add_shortcut(self, parent_id: str, shortcut_id: str, target_id: str) -> str:
        self.entries[shortcut_id] = {
            "id": shortcut_id,
            "name": f"shortcut-{target_id}",
            "mimeType": SHORTCUT_MIME_TYPE,
            "shortcutDetails": {"targetId": target_id},
        }
        self.children[parent_id].append(shortcut_id)
        return shortcut_id

    def touch(self, entry_id: str, modified: str) -> None:
        self.entries[entry_id]["modifiedTime"] = modified

    def list(self, folder_id: str) -> list[DriveItem]:
        self.list_calls.append(folder_id)
        if folder_id in self.fail_listing:
            raise StorageError(f"HTTP fetch failed: {folder_id}")
        return [DriveItem.from_api(self.entries[i]) for i in self.children.get(folder_id, [])]

    def info(self, file_id: str) -> DriveItem:
        return DriveItem.from_api(self.entries[file_id])

    def get(self, file_id: str) -> bytes:
        return self.blobs[file_id]

    def download(self, url: str) -> bytes:
        self.downloads.append(url)
        return self.blobs[file_id_from_url(url)]


class FakeFolderExtractor:
    """呼び出し回数を数えるフォルダ抽出器。譜面ファイルのIDから決まった値を返す。"""

    def __init__(self):
        self.calls = 0
        self.failing: set[str] = set()

    def extract(self, files):
        self.calls += 1
        chart = (files.chart or files.mid)[0]
        if chart.id in self.failing:
            raise ExtractionError(f"broken chart {chart.id}")
        return {
            "diff_guitar": "4",
            "note_counts": {"guitar": {"x": 500, "h": 10}},
            "hashes": {"file": f"hash-{chart.id}", "guitar": {"x": f"x-{chart.id}"}},
            "has_sections": True,
        }


class FakeArchiveExtractor:
    """呼び出し回数を数えるアーカイブ抽出器。バイト列 -> メタデータ一覧の対応で結果を決める。"""

    extensions = ("zip", "rar", "7z")

    def __init__(self):
        self.calls = 0
        self.results: dict[bytes, list[dict]] = {}

    def extract(self, data: bytes, extension: str) -> list[dict]:
        self.calls += 1
        if data == b"corrupt":
            raise ExtractionError("corrupt archive")
        return [dict(meta) for meta in self.results.get(data, [])]


@pytest.fixture
def con(tmp_path: Path):
    connection = connect_db(str(tmp_path / "chart_catalog.sqlite"))
    init_schema(connection)
    yield connection
    connection.close()


@pytest.fixture
def drive() -> FakeDrive:
    return FakeDrive()


@pytest.fixture
def folder_extractor() -> FakeFolderExtractor:
    return FakeFolderExtractor()


@pytest.fixture
def archive_extractor() -> FakeArchiveExtractor:
    return FakeArchiveExtractor()


@pytest.fixture
def source_config() -> SourceConfig:
    return SourceConfig(name="Test Charter", link=ROOT_LINK)


@pytest.fixture
def make_crawler(con, drive, folder_extractor, archive_extractor):
    def _make(**options) -> CatalogCrawler:
        processor = ArchiveProcessor(
            drive, {ext: archive_extractor for ext in archive_extractor.extensions}
        )
        return CatalogCrawler(
            con=con,
            storage=drive,
            folder_extractor=folder_extractor,
            archive_processor=processor,
            options=CrawlOptions(**options),
        )

    return _make


@pytest.fixture(scope="session")
def artifact_sqlite_path() -> Path:
    candidate = os.environ.get("CATALOG_SQLITE_PATH", "chart_catalog.sqlite")
    path = Path(candidate)
    if path.exists():
        return path.resolve()
    if os.environ.get("CI") and os.environ.get("CATALOG_SQLITE_PATH"):
        pytest.fail(f"CATALOG_SQLITE_PATH が存在しません: {path}")
    pytest.skip("カタログ成果物が無いためスキップ")
