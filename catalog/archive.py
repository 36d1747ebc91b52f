"""
アーカイブ(zip/rar/7z)の処理。

アーカイブをダウンロードし、拡張子に対応する抽出器に渡して曲情報を得る。
2曲以上を含むアーカイブはパックとして扱い、各曲のリンクに "&i=N" を付与する。
"""

from __future__ import annotations

import logging
from typing import List, Mapping, Optional, Protocol

from catalog.extractors import ArchiveExtractor
from catalog.models import DriveItem, ParentRef, SongDescriptor, SourceRef
from catalog.normalize import parse_default_name

logger = logging.getLogger(__name__)


class Downloader(Protocol):
    def download(self, url: str) -> bytes:
        ...


def pack_link(link: str, index: int) -> str:
    """パック内の曲リンク(1始まりの位置を付与)を返す。"""
    return f"{link}&i={index}"


def log_found(song: SongDescriptor) -> None:
    logger.info('> Found "%s" by "%s"', song.resolved_name, song.resolved_artist or "???")


class ArchiveProcessor:
    """
    アーカイブから曲情報を作る。

    抽出に失敗した、または曲が1つも無かったアーカイブは空リストを返す。
    無視リストへの登録は呼び出し側が他の候補とまとめて行う。
    """

    def __init__(self, storage: Downloader, extractors: Mapping[str, ArchiveExtractor]):
        self.storage = storage
        self.extractors = dict(extractors)

    def supports(self, extension: Optional[str]) -> bool:
        return bool(extension) and extension.lower() in self.extractors

    def process(
        self,
        archive: DriveItem,
        source: Optional[SourceRef] = None,
        parent: Optional[ParentRef] = None,
    ) -> List[SongDescriptor]:
        """
        アーカイブを展開して曲情報のリストを返す。

        Args:
            archive: アーカイブのエントリ。
            source: 発見元Source。
            parent: アーカイブを含むフォルダ。

        Returns:
            SongDescriptor のリスト(アーカイブ内の順序)。

        Raises:
            StorageError: ダウンロードに失敗した場合。
        """
        extension = (archive.file_extension or "").lower()
        logger.info("Extracting %s", archive.name)
        data = self.storage.download(archive.web_content_link or "")

        try:
            metas = self.extractors[extension].extract(data, extension)
        except Exception:
            logger.warning("Failed to extract %s", archive.name, exc_info=True)
            return []
        if not metas:
            return []

        default_artist, default_name = parse_default_name(archive.name)
        link = archive.web_view_link or ""
        is_pack = len(metas) > 1

        songs = []
        for index, meta in enumerate(metas, start=1):
            song = SongDescriptor.from_meta(
                meta,
                link=pack_link(link, index) if is_pack else link,
                default_name=default_name,
                default_artist=default_artist,
                last_modified=archive.modified_time,
                uploaded_at=archive.modified_time,
                source=source,
                parent=parent,
                direct_links={"archive": archive.web_content_link} if archive.web_content_link else None,
                is_pack=is_pack,
            )
            log_found(song)
            songs.append(song)
        return songs
