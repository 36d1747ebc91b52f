"""
Sourceのフォルダツリーを再帰的に走査し、譜面をカタログに登録する。

曲は以下のどちらかとして見つかる:
- song.ini / notes.chart / 音声ファイル等を含むフォルダ
- アーカイブ(.zip/.rar/.7z)。複数曲を含む場合はパック

処理方針:
- 前回状態と更新日時(秒精度)が一致するノードは再展開せず、前回のメタデータを再登録する
- 1ノードの抽出失敗はクロール全体を止めない(曲なしとして扱う)
- 一覧取得・ダウンロードの失敗は伝播させる
- 曲が見つからなかったアーカイブは無視リストに登録し、以後は展開しない
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Protocol, Set

from catalog.archive import ArchiveProcessor, log_found, pack_link
from catalog.config import CrawlOptions, SourceConfig
from catalog.db import link_exists, upsert_links_to_ignore, upsert_source
from catalog.errors import StorageError
from catalog.extractors import FolderExtractor
from catalog.ingest import SongIngestor
from catalog.models import (
    ARCHIVE_EXTENSIONS,
    ClassifiedContent,
    DriveItem,
    FolderNode,
    IgnoreMarker,
    ParentRef,
    SongDescriptor,
    SourceRef,
)
from catalog.normalize import latest_timestamp, parse_default_name, truncate_timestamp
from catalog.snapshot import SnapshotEntry, load_links_map

logger = logging.getLogger(__name__)

_AUDIO_RE = re.compile(r"\.(ogg|mp3|wav)$", re.IGNORECASE)
_BACKGROUND_RE = re.compile(r"^background(\d+)?\.")
_IMAGE_EXTENSIONS = ("png", "jpg", "jpeg")


class Storage(Protocol):
    def list(self, folder_id: str) -> List[DriveItem]:
        ...

    def info(self, file_id: str) -> DriveItem:
        ...


def classify_content(items: Iterable[DriveItem], max_archive_size: int) -> ClassifiedContent:
    """
    フォルダ直下のエントリをサブフォルダ・アーカイブ・役割ごとの譜面関連ファイルに分類する。

    上限サイズ以上のアーカイブは処理対象から外す(無視リストにも載せない)。

    Args:
        items: ショートカット解決済みのエントリ。
        max_archive_size: アーカイブの上限バイト数。

    Returns:
        ClassifiedContent。
    """
    files = ClassifiedContent()
    for item in items:
        if item.is_folder:
            files.subfolders.append(item)
            continue

        ext = (item.file_extension or "").lower()
        if (
            ext in ARCHIVE_EXTENSIONS
            and item.size is not None
            and item.size < max_archive_size
            and item.web_content_link
        ):
            files.archives.append(item)
            continue

        name = item.name
        if name == "song.ini":
            files.ini = item
        elif name.startswith("video."):
            files.video = item
        elif _AUDIO_RE.search(name):
            files.audio.append(item)
        elif ext in _IMAGE_EXTENSIONS:
            if name.lower().startswith("album."):
                files.album = item
            elif _BACKGROUND_RE.match(name.lower()):
                files.background.append(item)
        elif ext == "chart":
            files.chart.append(item)
        elif ext == "mid":
            files.mid.append(item)
    return files


def compute_uploaded_at(folder: FolderNode, files: ClassifiedContent) -> str:
    """
    フォルダの実効的な更新日時を求める。

    フォルダ自身と、分類されたファイル(アルバム画像/ini/動画/譜面/音声)の
    更新日時のうち最も新しいものを秒精度で返す。
    """
    return latest_timestamp(
        [folder.modified_time] + [item.modified_time for item in files.timestamped_files()]
    )


@dataclass
class CrawlResult:
    """1つのSourceのクロール結果。"""

    source: str
    folders: int = 0
    songs_found: int = 0
    songs_reused: int = 0
    ignored: int = 0
    skipped: int = 0


@dataclass
class _CrawlContext:
    source: SourceRef
    links_map: Dict[str, SnapshotEntry]
    ingestor: SongIngestor
    result: CrawlResult
    recovering: bool = False
    visited: Set[str] = field(default_factory=set)
    pending_ignores: List[str] = field(default_factory=list)


class CatalogCrawler:
    """
    Sourceのクロールを行う。

    Args:
        con: SQLite接続。
        storage: 一覧取得・ショートカット解決に使うストレージ。
        folder_extractor: フォルダから曲メタデータを作る抽出器。
        archive_processor: アーカイブを展開する処理。
        options: クロールオプション。
    """

    def __init__(
        self,
        con: sqlite3.Connection,
        storage: Storage,
        folder_extractor: FolderExtractor,
        archive_processor: ArchiveProcessor,
        options: Optional[CrawlOptions] = None,
    ):
        self.con = con
        self.storage = storage
        self.folder_extractor = folder_extractor
        self.archive_processor = archive_processor
        self.options = options or CrawlOptions()

    def crawl(self, source_config: SourceConfig) -> CrawlResult:
        """
        1つのSourceをクロールし、見つかった曲をカタログに登録する。

        1. Sourceを登録(登録済みならIDを取得)
        2. 前回状態を読み込む
        3. フォルダツリーを再帰的に走査する
        4. 無視リストを更新する

        Args:
            source_config: Source定義。

        Returns:
            CrawlResult。

        Raises:
            StorageError: 一覧取得・ダウンロードに失敗した場合。
            IngestionError: カタログへの書き込みに失敗した場合。
        """
        logger.info("Adding %s", source_config.name)
        source = upsert_source(self.con, source_config)
        links_map = load_links_map(self.con, source, force_refresh=self.options.force_refresh)

        ctx = _CrawlContext(
            source=source,
            links_map=links_map,
            ingestor=SongIngestor(self.con, batch_size=self.options.batch_size),
            result=CrawlResult(source=source.name),
            recovering=self.options.recover_cutover_link is not None,
        )

        logger.info("Looking for chart folders and archives")
        root = FolderNode.root(source)
        try:
            self._search_folder(ctx, root)
        except StorageError:
            logger.error("Crawl of %s aborted, saving what was found so far", source.name)
            ctx.ingestor.flush()
            self._flush_ignores(ctx)
            raise

        ctx.ingestor.flush()
        self._flush_ignores(ctx)
        logger.info(
            "Finished %s: %d found, %d reused, %d ignored",
            source.name,
            ctx.result.songs_found,
            ctx.result.songs_reused,
            ctx.result.ignored,
        )
        return ctx.result

    def _skip_for_recovery(self, ctx: _CrawlContext, link: Optional[str]) -> bool:
        if not ctx.recovering or not link:
            return False
        if link == self.options.recover_cutover_link:
            logger.info("Reached recovery cut-over point %s", link)
            ctx.recovering = False
            return False
        return link_exists(self.con, link) or link_exists(self.con, pack_link(link, 1))

    def _search_folder(self, ctx: _CrawlContext, folder: FolderNode) -> None:
        if folder.depth > self.options.max_depth:
            logger.warning("Skipping %s: deeper than %d levels", folder.name, self.options.max_depth)
            ctx.result.skipped += 1
            return
        if folder.id in ctx.visited:
            logger.warning("Skipping %s: already visited (shortcut cycle?)", folder.name)
            ctx.result.skipped += 1
            return
        ctx.visited.add(folder.id)

        logger.info("Looking inside %s", folder.name)
        if self._skip_for_recovery(ctx, folder.link):
            return
        if isinstance(ctx.links_map.get(folder.link), IgnoreMarker):
            return
        ctx.result.folders += 1

        items: List[DriveItem] = []
        for item in self.storage.list(folder.id):
            if self._skip_for_recovery(ctx, item.web_view_link):
                continue
            # ショートカットは分類前に実体へ解決する
            if item.is_shortcut and item.shortcut_target_id:
                item = self.storage.info(item.shortcut_target_id)
            items.append(item)

        files = classify_content(items, self.options.max_archive_size)
        uploaded_at = compute_uploaded_at(folder, files)

        self._process_folder_song(ctx, folder, files, uploaded_at)

        archive_parent = folder.as_parent() if folder.can_be_parent else None
        for archive in files.archives:
            self._process_archive(ctx, archive, archive_parent)
        if self.options.flush_ignores_per_folder:
            self._flush_ignores(ctx)

        for subfolder in files.subfolders:
            self._search_folder(ctx, folder.child(subfolder))

    def _reuse(self, ctx: _CrawlContext, cached: SongDescriptor, parent: Optional[ParentRef]) -> None:
        ctx.ingestor.submit(replace(cached, source=ctx.source, parent=parent), reused=True)
        ctx.result.songs_reused += 1

    def _process_folder_song(
        self,
        ctx: _CrawlContext,
        folder: FolderNode,
        files: ClassifiedContent,
        uploaded_at: str,
    ) -> None:
        parent = None
        if folder.can_be_parent and folder.parent_folder is not None:
            parent = folder.parent_folder.as_parent()

        # 登録済みで更新日時が同じなら、前回のメタデータをそのまま再登録する
        cached = ctx.links_map.get(folder.link)
        if isinstance(cached, SongDescriptor) and truncate_timestamp(cached.uploaded_at) == uploaded_at:
            self._reuse(ctx, cached, parent)
            return
        if not files.chart and not files.mid:
            return

        try:
            meta = self.folder_extractor.extract(files)
        except StorageError:
            raise
        except Exception:
            logger.warning("Failed to read chart folder %s", folder.name, exc_info=True)
            return
        if not meta:
            return

        default_artist, default_name = parse_default_name(folder.name)
        song = SongDescriptor.from_meta(
            meta,
            link=folder.link,
            default_name=default_name,
            default_artist=default_artist,
            # フォルダはファイル単位の本当の更新日時が取れないため持たない
            last_modified=None,
            uploaded_at=uploaded_at,
            source=ctx.source,
            parent=parent,
            is_folder=True,
        )
        log_found(song)
        ctx.ingestor.submit(song)
        ctx.result.songs_found += 1

    def _process_archive(self, ctx: _CrawlContext, archive: DriveItem, parent: Optional[ParentRef]) -> None:
        link = archive.web_view_link or ""
        modified = truncate_timestamp(archive.modified_time)

        cached = ctx.links_map.get(link)
        if isinstance(cached, IgnoreMarker):
            return
        if isinstance(cached, SongDescriptor) and truncate_timestamp(cached.uploaded_at) == modified:
            self._reuse(ctx, cached, parent)
            return

        first = ctx.links_map.get(pack_link(link, 1))
        if isinstance(first, SongDescriptor) and truncate_timestamp(first.uploaded_at) == modified:
            index = 1
            entry = first
            while isinstance(entry, SongDescriptor):
                self._reuse(ctx, entry, parent)
                index += 1
                entry = ctx.links_map.get(pack_link(link, index))
            return

        if not self.archive_processor.supports(archive.file_extension):
            logger.info("No extractor for %s, leaving it for a later pass", archive.name)
            return

        songs = self.archive_processor.process(archive, source=ctx.source, parent=parent)
        if not songs:
            ctx.pending_ignores.append(link)
            return
        for song in songs:
            ctx.ingestor.submit(song)
        ctx.result.songs_found += len(songs)

    def _flush_ignores(self, ctx: _CrawlContext) -> None:
        if not ctx.pending_ignores:
            return
        pending, ctx.pending_ignores = ctx.pending_ignores, []
        upsert_links_to_ignore(self.con, pending, source_id=ctx.source.chorus_id)
        for link in pending:
            ctx.links_map[link] = IgnoreMarker(link=link)
        ctx.result.ignored += len(pending)
