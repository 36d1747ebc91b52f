"""
フォルダ・アーカイブからの曲メタデータ抽出。

譜面ファイル(.chart/.mid)自体の解析は行わず、song.ini とファイル構成から
分かる情報のみを返す。クロール側は以下のインターフェースにのみ依存する。

- FolderExtractor.extract(files) -> メタデータdict | None
- ArchiveExtractor.extract(data, extension) -> メタデータdictのリスト
"""

from __future__ import annotations

import configparser
import io
import posixpath
import zipfile
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from catalog.errors import ExtractionError
from catalog.models import TIER_INSTRUMENTS, ClassifiedContent

_AUDIO_SUFFIXES = (".ogg", ".mp3", ".wav", ".opus")
_IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg")

_INI_TEXT_KEYS = ("name", "artist", "album", "genre", "year", "charter", "frets")


class FolderExtractor(Protocol):
    def extract(self, files: ClassifiedContent) -> Optional[Dict[str, Any]]:
        ...


class ArchiveExtractor(Protocol):
    extensions: Tuple[str, ...]

    def extract(self, data: bytes, extension: str) -> List[Dict[str, Any]]:
        ...


class FileFetcher(Protocol):
    def get(self, file_id: str) -> bytes:
        ...


def parse_song_ini(text: str) -> Dict[str, Any]:
    """
    song.ini の内容をメタデータdictに変換する。

    [song] セクション(大文字小文字は問わない)の曲名・アーティスト等と、
    diff_<楽器> の tier、song_length を読み取る。

    Args:
        text: song.ini の文字列。

    Returns:
        メタデータdict。

    Raises:
        ExtractionError: INIとして解釈できない場合。
    """
    parser = configparser.ConfigParser(strict=False, interpolation=None)
    try:
        parser.read_string(text)
    except configparser.Error as e:
        raise ExtractionError(f"Invalid song.ini ({e})") from e

    section = next((s for s in parser.sections() if s.strip().lower() == "song"), None)
    if section is None:
        return {}
    values = parser[section]

    meta: Dict[str, Any] = {}
    for key in _INI_TEXT_KEYS:
        value = (values.get(key) or "").strip()
        if value:
            meta[key] = value
    for instrument in TIER_INSTRUMENTS:
        value = (values.get(f"diff_{instrument}") or "").strip()
        if value:
            meta[f"diff_{instrument}"] = value
    song_length = (values.get("song_length") or "").strip()
    if song_length.isdigit():
        meta["song_length"] = int(song_length)
    return meta


def _needs_renaming(chart_names: Sequence[str], mid_names: Sequence[str]) -> bool:
    names = [n.lower() for n in chart_names] + [n.lower() for n in mid_names]
    return bool(names) and "notes.chart" not in names and "notes.mid" not in names


class IniFolderExtractor:
    """
    ストレージ上のフォルダから曲メタデータを作る抽出器。

    .chart も .mid も無いフォルダは曲ではないとみなす。
    """

    def __init__(self, storage: FileFetcher):
        self.storage = storage

    def extract(self, files: ClassifiedContent) -> Optional[Dict[str, Any]]:
        if not files.chart and not files.mid:
            return None

        meta: Dict[str, Any] = {}
        direct_links: Dict[str, str] = {}
        if files.ini is not None:
            text = self.storage.get(files.ini.id).decode("utf-8-sig", errors="replace")
            meta.update(parse_song_ini(text))
            if files.ini.web_content_link:
                direct_links["ini"] = files.ini.web_content_link

        for role, items in (("chart", files.chart), ("mid", files.mid)):
            if items and items[0].web_content_link:
                direct_links[role] = items[0].web_content_link
        for role, item in (("album", files.album), ("video", files.video)):
            if item is not None and item.web_content_link:
                direct_links[role] = item.web_content_link
        for item in files.audio:
            if item.web_content_link:
                direct_links[posixpath.splitext(item.name)[0]] = item.web_content_link

        meta.update({
            "has_video": files.video is not None,
            "has_background": bool(files.background),
            "has_stems": len(files.audio) > 1,
            "has_no_audio": not files.audio,
            "needs_renaming": _needs_renaming(
                [c.name for c in files.chart], [m.name for m in files.mid]
            ),
            "direct_links": direct_links,
        })
        return meta


class ZipArchiveExtractor:
    """
    zip アーカイブ内の曲フォルダを列挙してメタデータを作る抽出器。

    .chart または .mid を含むディレクトリを1曲とみなし、
    アーカイブ内での出現順に返す(パックの番号付けはこの順序に従う)。
    """

    extensions = ("zip",)

    def extract(self, data: bytes, extension: str) -> List[Dict[str, Any]]:
        if extension not in self.extensions:
            raise ExtractionError(f"Unsupported archive format: {extension}")
        try:
            archive = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as e:
            raise ExtractionError(f"Invalid zip archive ({e})") from e

        with archive:
            folders: Dict[str, List[zipfile.ZipInfo]] = {}
            for info in archive.infolist():
                if info.is_dir():
                    continue
                folders.setdefault(posixpath.dirname(info.filename), []).append(info)

            metas: List[Dict[str, Any]] = []
            for entries in folders.values():
                meta = self._extract_folder(archive, entries)
                if meta is not None:
                    metas.append(meta)
            return metas

    def _extract_folder(
        self,
        archive: zipfile.ZipFile,
        entries: List[zipfile.ZipInfo],
    ) -> Optional[Dict[str, Any]]:
        names = {posixpath.basename(e.filename).lower(): e for e in entries}
        charts = [n for n in names if n.endswith(".chart")]
        mids = [n for n in names if n.endswith(".mid")]
        if not charts and not mids:
            return None

        meta: Dict[str, Any] = {}
        if "song.ini" in names:
            try:
                text = archive.read(names["song.ini"]).decode("utf-8-sig", errors="replace")
            except (zipfile.BadZipFile, RuntimeError) as e:
                raise ExtractionError(f"Unreadable song.ini ({e})") from e
            meta.update(parse_song_ini(text))

        audio = [n for n in names if n.endswith(_AUDIO_SUFFIXES)]
        meta.update({
            "has_video": any(n.startswith("video.") for n in names),
            "has_background": any(
                n.startswith("background") and n.endswith(_IMAGE_SUFFIXES) for n in names
            ),
            "has_stems": len(audio) > 1,
            "has_no_audio": not audio,
            "needs_renaming": _needs_renaming(charts, mids),
        })
        return meta
