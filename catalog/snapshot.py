"""
前回クロール時点のカタログ状態(スナップショット)を読み出すモジュール。

Sourceごとに、既にカタログにあるリンクから前回のメタデータへの対応表を作る。
クロールはこの対応表と更新日時を比べ、変化のないノードの再展開を省く。
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, Mapping, Union

from catalog.models import SONG_FLAGS, TIER_INSTRUMENTS, IgnoreMarker, SongDescriptor, SourceRef

logger = logging.getLogger(__name__)

SnapshotEntry = Union[SongDescriptor, IgnoreMarker]


def song_from_row(row: Mapping[str, Any], hashes: Dict[str, Any]) -> SongDescriptor:
    """
    songs テーブルの1行を SongDescriptor に戻す。

    tier 列の NULL は -1 に戻す。source/parent はクロール側で付け直すため設定しない。

    Args:
        row: songs の行。
        hashes: {"file": hash} / {part: {difficulty: hash}} 形式のハッシュ。

    Returns:
        SongDescriptor。
    """
    tiers = {}
    for instrument in TIER_INSTRUMENTS:
        value = row[f"tier_{instrument}"]
        tiers[instrument] = -1 if value is None else int(value)

    return SongDescriptor(
        link=row["link"],
        name=row["name"],
        artist=row["artist"],
        album=row["album"],
        genre=row["genre"],
        year=row["year"],
        charter=row["charter"],
        tiers=tiers,
        note_counts=json.loads(row["note_counts"]) if row["note_counts"] else None,
        hashes=hashes or None,
        length=row["length"],
        effective_length=row["effective_length"],
        direct_links=json.loads(row["direct_links"]) if row["direct_links"] else None,
        last_modified=row["last_modified"],
        uploaded_at=row["uploaded_at"],
        **{flag: bool(row[flag]) for flag in SONG_FLAGS},
    )


def _load_hashes(con: sqlite3.Connection, source_link: str) -> Dict[int, Dict[str, Any]]:
    cur = con.cursor()
    cur.execute("""
    SELECT sh.song_id, sh.hash, sh.part, sh.difficulty
    FROM songs_hashes sh
    JOIN songs_sources ss ON ss.song_id = sh.song_id
    JOIN sources src ON src.id = ss.source_id
    WHERE src.link = ?
    """, (source_link,))

    by_song: Dict[int, Dict[str, Any]] = {}
    for row in cur.fetchall():
        parts = by_song.setdefault(int(row["song_id"]), {})
        if row["part"] == "file":
            parts["file"] = row["hash"]
        else:
            parts.setdefault(row["part"], {})[row["difficulty"]] = row["hash"]
    return by_song


def load_links_map(
    con: sqlite3.Connection,
    source: SourceRef,
    force_refresh: bool = False,
) -> Dict[str, SnapshotEntry]:
    """
    Sourceの前回状態を link -> SongDescriptor | IgnoreMarker の対応表として返す。

    対象:
    - そのSource経由で登録済みの全曲(tier/ノーツ数/ハッシュを含む)
    - 無視リストに登録済みの全リンク(Sourceを問わない)

    読み出しに失敗した場合はクロールを止めず、空の対応表を返す
    (全ノードが変更ありとして再処理される)。

    Args:
        con: SQLite接続。
        source: 対象Source。
        force_refresh: True の場合は常に空の対応表を返す。

    Returns:
        リンクをキーとする対応表。
    """
    if force_refresh:
        logger.info("Force refresh enabled, ignoring previous state of %s", source.name)
        return {}

    try:
        hashes = _load_hashes(con, source.origin_link)

        cur = con.cursor()
        cur.execute("""
        SELECT s.*
        FROM songs_sources ss
        JOIN songs s ON ss.song_id = s.id
        JOIN sources src ON src.id = ss.source_id
        WHERE src.link = ?
        """, (source.origin_link,))

        links_map: Dict[str, SnapshotEntry] = {}
        for row in cur.fetchall():
            links_map[row["link"]] = song_from_row(row, hashes.get(int(row["id"]), {}))

        cur.execute("SELECT link FROM links_to_ignore")
        for row in cur.fetchall():
            links_map[row["link"]] = IgnoreMarker(link=row["link"])
    except (sqlite3.Error, ValueError):
        logger.exception("Failed to load previous state of %s, crawling everything", source.name)
        return {}

    logger.info("Loaded %d known link(s) for %s", len(links_map), source.name)
    return links_map
