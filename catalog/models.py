"""
データモデル定義モジュール。

クロール中に扱うストレージ上のエントリ(DriveItem / FolderNode)、
フォルダ内ファイルの分類結果(ClassifiedContent)、
カタログに登録する曲情報(SongDescriptor)を定義する。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
SHORTCUT_MIME_TYPE = "application/vnd.google-apps.shortcut"

ARCHIVE_EXTENSIONS = ("zip", "rar", "7z")

# tier_* 列を持つ楽器
TIER_INSTRUMENTS = (
    "band", "guitar", "bass", "rhythm", "drums",
    "vocals", "keys", "guitarghl", "bassghl",
)

# diff_* (難易度ビットマスク)列を持つ楽器
DIFF_INSTRUMENTS = (
    "guitar", "bass", "rhythm", "drums", "keys", "guitarghl", "bassghl",
)

# e=easy, m=medium, h=hard, x=expert
DIFFICULTY_BITS = {"e": 1, "m": 2, "h": 4, "x": 8}

SONG_FLAGS = (
    "has_forced",
    "has_open",
    "has_tap",
    "has_sections",
    "has_star_power",
    "has_solo_sections",
    "has_stems",
    "has_video",
    "has_lyrics",
    "has_no_audio",
    "needs_renaming",
    "is_folder",
    "has_broken_notes",
    "has_background",
    "is_pack",
    "is_120",
)


@dataclass(frozen=True)
class SourceRef:
    """
    登録済みのクロール起点(Source)。

    Attributes:
        chorus_id: sources テーブル上のID。
        name: 表示名。
        link: 表示用リンク(プロキシ指定時はプロキシ)。
        origin_link: 実際にクロールするフォルダのリンク。
        storage_id: ストレージ上のフォルダID。
        is_setlist: セットリスト扱いのSourceかどうか。
        hide_single_downloads: 個別ダウンロードリンクを隠すかどうか。
    """

    chorus_id: int
    name: str
    link: str
    origin_link: str
    storage_id: str
    is_setlist: bool = False
    hide_single_downloads: bool = False


@dataclass(frozen=True)
class ParentRef:
    """曲を含む直近の親フォルダ(1階層のみ保持する)。"""

    name: str
    link: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "link": self.link}

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> Optional["ParentRef"]:
        if not payload:
            return None
        return cls(name=str(payload.get("name") or ""), link=str(payload.get("link") or ""))


@dataclass(frozen=True)
class DriveItem:
    """
    ストレージの一覧APIが返す1エントリ。

    size は API 上文字列で返るため int に変換して保持する。
    file_extension は小文字に揃える。
    """

    id: str
    name: str
    mime_type: str = ""
    file_extension: Optional[str] = None
    size: Optional[int] = None
    web_view_link: Optional[str] = None
    web_content_link: Optional[str] = None
    modified_time: Optional[str] = None
    shortcut_target_id: Optional[str] = None

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "DriveItem":
        """
        一覧APIのJSON(camelCase)から DriveItem を生成する。

        Args:
            payload: files リソースのdict。

        Returns:
            DriveItem。
        """
        size = payload.get("size")
        shortcut = payload.get("shortcutDetails") or {}
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name") or ""),
            mime_type=str(payload.get("mimeType") or ""),
            file_extension=(payload.get("fileExtension") or "").lower() or None,
            size=int(size) if size not in (None, "") else None,
            web_view_link=payload.get("webViewLink"),
            web_content_link=payload.get("webContentLink"),
            modified_time=payload.get("modifiedTime"),
            shortcut_target_id=shortcut.get("targetId"),
        )

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @property
    def is_shortcut(self) -> bool:
        return self.mime_type == SHORTCUT_MIME_TYPE


@dataclass
class FolderNode:
    """
    クロール中のフォルダ。

    parent_folder は直近の親のみ保持し、祖父母への参照は持たない。
    can_be_parent は Source 直下より深いフォルダでのみ True になる。
    name は既定曲名の推定用に親フォルダ名を前置したパスになる。
    """

    id: str
    name: str
    link: str
    modified_time: Optional[str] = None
    parent_folder: Optional["FolderNode"] = None
    can_be_parent: bool = False
    depth: int = 0

    @classmethod
    def root(cls, source: SourceRef) -> "FolderNode":
        return cls(id=source.storage_id, name=source.name, link=source.origin_link)

    def child(self, item: DriveItem) -> "FolderNode":
        """
        サブフォルダの FolderNode を生成する。

        現在のフォルダが親になれる場合のみ parent_folder と名前の前置を行う。
        親の parent_folder は引き継がない。

        Args:
            item: サブフォルダのエントリ。

        Returns:
            子の FolderNode。
        """
        node = FolderNode(
            id=item.id,
            name=item.name,
            link=item.web_view_link or "",
            modified_time=item.modified_time,
            can_be_parent=True,
            depth=self.depth + 1,
        )
        if self.can_be_parent:
            node.parent_folder = FolderNode(
                id=self.id,
                name=self.name,
                link=self.link,
                modified_time=self.modified_time,
                can_be_parent=True,
                depth=self.depth,
            )
            node.name = f"{self.name}/{item.name}"
        return node

    def as_parent(self) -> ParentRef:
        return ParentRef(name=self.name, link=self.link)


@dataclass
class ClassifiedContent:
    """
    フォルダ内エントリの分類結果。

    chart/mid/audio/background は複数存在しうるためリストで保持する。
    """

    subfolders: List[DriveItem] = field(default_factory=list)
    archives: List[DriveItem] = field(default_factory=list)
    ini: Optional[DriveItem] = None
    chart: List[DriveItem] = field(default_factory=list)
    mid: List[DriveItem] = field(default_factory=list)
    audio: List[DriveItem] = field(default_factory=list)
    video: Optional[DriveItem] = None
    album: Optional[DriveItem] = None
    background: List[DriveItem] = field(default_factory=list)

    def timestamped_files(self) -> Iterator[DriveItem]:
        """更新日時の算出対象となるファイルを返す(背景画像は対象外)。"""
        for item in (self.album, self.ini, self.video):
            if item is not None:
                yield item
        yield from self.chart
        yield from self.mid
        yield from self.audio


@dataclass(frozen=True)
class IgnoreMarker:
    """無視リストに登録済みのリンクを表すスナップショット上の印。"""

    link: str


def _to_tier(value: Any) -> int:
    if value is None or value == "":
        return -1
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return -1


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class SongDescriptor:
    """
    発見された(または再確認された)1曲分の情報。

    - name/artist/... は明示値 -> chart_meta -> コンテナ名由来の既定値の順で解決する
    - tiers は楽器ごとの難易度評価(-1 は未設定)
    - note_counts は {part: {difficulty: ノーツ数}}
    - hashes は {"file": hash} または {part: {difficulty: hash}}
    - link はカタログ全体で一意。パックは "&i=N" を付与したリンクを持つ

    キャッシュ再利用時は dataclasses.replace で source/parent を差し替えた
    コピーを作る。
    """

    link: str
    name: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    genre: Optional[str] = None
    year: Optional[str] = None
    charter: Optional[str] = None
    default_name: Optional[str] = None
    default_artist: Optional[str] = None
    chart_meta: Mapping[str, Any] = field(default_factory=dict)
    tiers: Mapping[str, int] = field(default_factory=dict)
    note_counts: Optional[Mapping[str, Mapping[str, int]]] = None
    hashes: Optional[Mapping[str, Any]] = None
    song_length: Optional[int] = None
    length: Optional[int] = None
    effective_length: Optional[int] = None
    direct_links: Optional[Mapping[str, str]] = None
    last_modified: Optional[str] = None
    uploaded_at: Optional[str] = None
    parent: Optional[ParentRef] = None
    source: Optional[SourceRef] = None
    has_forced: bool = False
    has_open: bool = False
    has_tap: bool = False
    has_sections: bool = False
    has_star_power: bool = False
    has_solo_sections: bool = False
    has_stems: bool = False
    has_video: bool = False
    has_lyrics: bool = False
    has_no_audio: bool = False
    needs_renaming: bool = False
    is_folder: bool = False
    has_broken_notes: bool = False
    has_background: bool = False
    is_pack: bool = False
    is_120: bool = False

    @classmethod
    def from_meta(cls, meta: Mapping[str, Any], **container: Any) -> "SongDescriptor":
        """
        抽出器が返したメタデータdictとコンテナ由来の値から SongDescriptor を生成する。

        メタデータのキー:
        - name/artist/album/genre/year/charter/frets
        - diff_<楽器>: tier (文字列でも可)
        - has_*/needs_renaming/is_120 などのフラグ
        - song_length(ミリ秒)/length/effective_length
        - note_counts/hashes/chart_meta/direct_links

        コンテナ側の値(link/source/parent/uploaded_at 等)はメタデータより優先する。
        direct_links のみ両者をマージし、メタデータ側を優先する。

        Args:
            meta: 抽出器の結果。
            **container: コンテナ由来のフィールド値。

        Returns:
            SongDescriptor。
        """
        charter = meta.get("charter") or meta.get("frets") or None
        kwargs: Dict[str, Any] = {
            "name": meta.get("name") or None,
            "artist": meta.get("artist") or None,
            "album": meta.get("album") or None,
            "genre": meta.get("genre") or None,
            "year": str(meta["year"]) if meta.get("year") else None,
            "charter": charter,
            "chart_meta": dict(meta.get("chart_meta") or {}),
            "tiers": {
                instrument: _to_tier(meta.get(f"diff_{instrument}"))
                for instrument in TIER_INSTRUMENTS
            },
            "note_counts": meta.get("note_counts") or None,
            "hashes": meta.get("hashes") or None,
            "song_length": _to_int(meta.get("song_length")),
            "length": _to_int(meta.get("length")),
            "effective_length": _to_int(meta.get("effective_length")),
        }
        for flag in SONG_FLAGS:
            kwargs[flag] = bool(meta.get(flag))

        meta_links = meta.get("direct_links") or {}
        container_links = container.pop("direct_links", None) or {}
        merged_links = {**container_links, **meta_links}
        kwargs["direct_links"] = merged_links or None

        kwargs.update(container)
        return cls(**kwargs)

    def tier(self, instrument: str) -> int:
        return int(self.tiers.get(instrument, -1))

    @property
    def resolved_name(self) -> Optional[str]:
        return self.name or self.chart_meta.get("Name") or self.default_name or None

    @property
    def resolved_artist(self) -> Optional[str]:
        return self.artist or self.chart_meta.get("Artist") or self.default_artist or None

    @property
    def resolved_album(self) -> Optional[str]:
        return self.album or self.chart_meta.get("Album") or None

    @property
    def resolved_genre(self) -> Optional[str]:
        return self.genre or self.chart_meta.get("Genre") or None

    @property
    def resolved_year(self) -> Optional[str]:
        year = self.year or self.chart_meta.get("Year")
        return str(year) if year else None

    @property
    def resolved_charter(self) -> Optional[str]:
        return self.charter or self.chart_meta.get("Charter") or None

    @property
    def resolved_length(self) -> Optional[int]:
        if self.song_length:
            return self.song_length // 1000
        return _to_int(self.chart_meta.get("length")) or self.length

    @property
    def resolved_effective_length(self) -> Optional[int]:
        return _to_int(self.chart_meta.get("effectiveLength")) or self.effective_length
