"""
SQLiteへの譜面カタログ保存処理を提供するモジュール。

スキーマ初期化、Source登録、無視リンク登録、および読み出し系の補助関数を持つ。
曲情報のバッチ登録は ingest.py、前回状態の読み出しは snapshot.py が担当する。

処理方針:
- songs は link を一意キーとして upsert する
- sources は link(クロール元リンク)を一意キーとして upsert する
- songs_sources は (song_id, source_id) を一意制約として parent のみ更新する
- songs_hashes / links_to_ignore は一度登録したら変更しない
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from catalog.config import SourceConfig
from catalog.errors import IngestionError
from catalog.models import DIFF_INSTRUMENTS, TIER_INSTRUMENTS, SourceRef

logger = logging.getLogger(__name__)


def now_iso() -> str:
    """
    現在時刻(UTC)をISO 8601形式で返す。

    Returns:
        UTC時刻のISO文字列。
    """
    return datetime.now(timezone.utc).isoformat()


def connect_db(path: str) -> sqlite3.Connection:
    """
    SQLite DBへ接続する。

    Args:
        path: SQLiteファイルパス。

    Returns:
        sqlite3.Connectionオブジェクト。
    """
    con = sqlite3.connect(path)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys = ON")
    return con


def init_schema(con: sqlite3.Connection) -> None:
    """
    DBスキーマを初期化する。

    sources/songs/songs_sources/songs_hashes/links_to_ignore テーブルが
    存在しない場合に作成する。

    Args:
        con: SQLite接続。
    """
    cur = con.cursor()

    cur.execute("""
    CREATE TABLE IF NOT EXISTS sources (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        link TEXT NOT NULL UNIQUE,
        display_link TEXT NOT NULL,
        is_setlist INTEGER NOT NULL DEFAULT 0,
        hide_single_downloads INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """)

    tier_columns = ",\n        ".join(f"tier_{i} INTEGER NULL" for i in TIER_INSTRUMENTS)
    diff_columns = ",\n        ".join(f"diff_{i} INTEGER NULL" for i in DIFF_INSTRUMENTS)
    cur.execute(f"""
    CREATE TABLE IF NOT EXISTS songs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NULL,
        artist TEXT NULL,
        album TEXT NULL,
        genre TEXT NULL,
        year TEXT NULL,
        charter TEXT NULL,
        {tier_columns},
        {diff_columns},
        has_forced INTEGER NOT NULL DEFAULT 0,
        has_open INTEGER NOT NULL DEFAULT 0,
        has_tap INTEGER NOT NULL DEFAULT 0,
        has_sections INTEGER NOT NULL DEFAULT 0,
        has_star_power INTEGER NOT NULL DEFAULT 0,
        has_solo_sections INTEGER NOT NULL DEFAULT 0,
        has_stems INTEGER NOT NULL DEFAULT 0,
        has_video INTEGER NOT NULL DEFAULT 0,
        has_lyrics INTEGER NOT NULL DEFAULT 0,
        has_no_audio INTEGER NOT NULL DEFAULT 0,
        needs_renaming INTEGER NOT NULL DEFAULT 0,
        is_folder INTEGER NOT NULL DEFAULT 0,
        has_broken_notes INTEGER NOT NULL DEFAULT 0,
        has_background INTEGER NOT NULL DEFAULT 0,
        note_counts TEXT NULL,
        link TEXT NOT NULL UNIQUE,
        direct_links TEXT NULL,
        length INTEGER NULL,
        effective_length INTEGER NULL,
        is_120 INTEGER NOT NULL DEFAULT 0,
        last_modified TEXT NULL,
        uploaded_at TEXT NOT NULL,
        is_pack INTEGER NOT NULL DEFAULT 0,
        words TEXT NOT NULL
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS songs_sources (
        song_id INTEGER NOT NULL,
        source_id INTEGER NOT NULL,
        parent TEXT NULL,
        UNIQUE(song_id, source_id),
        FOREIGN KEY(song_id) REFERENCES songs(id),
        FOREIGN KEY(source_id) REFERENCES sources(id)
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS songs_hashes (
        hash TEXT NOT NULL,
        part TEXT NOT NULL,
        difficulty TEXT NULL,
        song_id INTEGER NOT NULL,
        FOREIGN KEY(song_id) REFERENCES songs(id)
    )
    """)

    # difficulty が NULL のファイルハッシュ行も重複させないため式インデックスにする
    cur.execute("""
    CREATE UNIQUE INDEX IF NOT EXISTS uq_songs_hashes
    ON songs_hashes(hash, part, IFNULL(difficulty, ''), song_id)
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS links_to_ignore (
        link TEXT NOT NULL PRIMARY KEY,
        source_id INTEGER NULL,
        created_at TEXT NOT NULL
    )
    """)

    cur.execute("CREATE INDEX IF NOT EXISTS idx_songs_sources_source_id ON songs_sources(source_id)")

    con.commit()


def extract_storage_id(link: str) -> str:
    """
    フォルダリンクからストレージ上のIDを取り出す。

    https://drive.google.com/open?id=<id> と
    https://drive.google.com/drive/folders/<id> の両形式に対応する。

    Args:
        link: フォルダリンク。

    Returns:
        フォルダID。
    """
    marker = "/open?id="
    if marker in link:
        return link[link.index(marker) + len(marker):]

    question_mark = link.find("?")
    end = question_mark if question_mark >= 0 else len(link)
    return link[link.rfind("/", 0, end) + 1:end]


def upsert_source(con: sqlite3.Connection, source: SourceConfig) -> SourceRef:
    """
    Sourceを登録する。既に同じリンクで登録済みなら名前と表示リンクのみ更新する。

    Args:
        con: SQLite接続。
        source: 設定ファイル上のSource定義。

    Returns:
        DB上のIDを持つ SourceRef。
    """
    display_link = source.proxy or source.link
    cur = con.cursor()
    cur.execute("""
    INSERT INTO sources (
        name, link, display_link, is_setlist, hide_single_downloads, created_at
    ) VALUES (?, ?, ?, ?, ?, ?)
    ON CONFLICT(link) DO UPDATE
    SET name = excluded.name,
        display_link = excluded.display_link
    """, (
        source.name,
        source.link,
        display_link,
        int(source.is_setlist),
        int(source.hide_single_downloads),
        now_iso(),
    ))
    cur.execute("SELECT id FROM sources WHERE link=?", (source.link,))
    row = cur.fetchone()
    con.commit()

    return SourceRef(
        chorus_id=int(row["id"]),
        name=source.name,
        link=display_link,
        origin_link=source.link,
        storage_id=extract_storage_id(source.link),
        is_setlist=source.is_setlist,
        hide_single_downloads=source.hide_single_downloads,
    )


def upsert_links_to_ignore(
    con: sqlite3.Connection,
    links: Iterable[str],
    source_id: Optional[int] = None,
) -> int:
    """
    中身が譜面でないと判明したリンクを無視リストに登録する。

    既に登録済みのリンクは変更しない(削除操作は存在しない)。

    Args:
        con: SQLite接続。
        links: 登録するリンク。
        source_id: 発見元SourceのID(記録用)。

    Returns:
        新たに登録された件数。

    Raises:
        IngestionError: SQLiteの処理に失敗した場合。
    """
    unique_links = list(dict.fromkeys(link for link in links if link))
    if not unique_links:
        return 0

    now = now_iso()
    try:
        cur = con.executemany("""
        INSERT INTO links_to_ignore (link, source_id, created_at)
        VALUES (?, ?, ?)
        ON CONFLICT(link) DO NOTHING
        """, [(link, source_id, now) for link in unique_links])
        con.commit()
    except sqlite3.Error as e:
        con.rollback()
        raise IngestionError(f"Failed to record links to ignore ({e})") from e

    inserted = max(cur.rowcount, 0)
    logger.info("Recorded %d link(s) to ignore (%d new)", len(unique_links), inserted)
    return inserted


def link_exists(con: sqlite3.Connection, link: Optional[str]) -> bool:
    """
    指定リンクの曲が既にカタログに存在するか判定する。

    Args:
        con: SQLite接続。
        link: 曲リンク。

    Returns:
        存在すれば True。
    """
    if not link:
        return False
    cur = con.cursor()
    cur.execute("SELECT 1 FROM songs WHERE link=?", (link,))
    return cur.fetchone() is not None


def count_songs(con: sqlite3.Connection) -> int:
    """
    カタログ上の曲数を取得する。

    Args:
        con: SQLite接続。

    Returns:
        曲数。
    """
    cur = con.cursor()
    cur.execute("SELECT COUNT(*) AS cnt FROM songs")
    return int(cur.fetchone()["cnt"])


def _placeholders(values: List[Any]) -> str:
    return ", ".join("?" for _ in values)


def get_latest_songs(
    con: sqlite3.Connection,
    offset: int = 0,
    limit: int = 20,
) -> List[Dict[str, Any]]:
    """
    更新日時の新しい順に曲を取得する。

    各曲には sources(発見元と親フォルダ)と hashes を付与し、検索用ワードは除く。
    hide_single_downloads が有効なSource経由の曲は link を隠す。

    Args:
        con: SQLite接続。
        offset: 取得開始位置。
        limit: 取得件数。

    Returns:
        曲dictのリスト。
    """
    cur = con.cursor()
    cur.execute("""
    SELECT * FROM songs
    ORDER BY COALESCE(last_modified, uploaded_at) DESC, id DESC
    LIMIT ? OFFSET ?
    """, (int(limit), max(int(offset or 0), 0)))
    songs = [dict(row) for row in cur.fetchall()]
    if not songs:
        return []

    song_map: Dict[int, Dict[str, Any]] = {}
    for song in songs:
        song.pop("words", None)
        song["note_counts"] = json.loads(song["note_counts"]) if song["note_counts"] else None
        song["direct_links"] = json.loads(song["direct_links"]) if song["direct_links"] else None
        song_map[song["id"]] = song

    ids = list(song_map)
    cur.execute(f"""
    SELECT ss.song_id, s.id, s.name, s.display_link, ss.parent,
           s.is_setlist, s.hide_single_downloads
    FROM songs_sources ss
    JOIN sources s ON ss.source_id = s.id
    WHERE ss.song_id IN ({_placeholders(ids)})
    """, ids)
    for row in cur.fetchall():
        song = song_map[row["song_id"]]
        if row["hide_single_downloads"]:
            song["link"] = None
        parent = json.loads(row["parent"]) if row["parent"] else None
        if parent:
            # 祖父母は不要
            parent.pop("parent", None)
        song.setdefault("sources", []).append({
            "id": row["id"],
            "name": row["name"],
            "link": row["display_link"],
            "parent": parent,
            "is_setlist": bool(row["is_setlist"]),
        })

    cur.execute(f"""
    SELECT song_id, hash, part, difficulty FROM songs_hashes
    WHERE song_id IN ({_placeholders(ids)})
    """, ids)
    for row in cur.fetchall():
        hashes = song_map[row["song_id"]].setdefault("hashes", {})
        if row["part"] == "file":
            hashes["file"] = row["hash"]
        else:
            hashes.setdefault(row["part"], {})[row["difficulty"]] = row["hash"]

    return [song_map[song["id"]] for song in songs]
