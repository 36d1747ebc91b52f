"""
曲情報のカタログ登録(取り込みパイプライン)。

クロールで得た SongDescriptor を link で重複排除し、一定件数ごとのバッチで
songs / songs_sources / songs_hashes に upsert する。

処理方針:
- 同じ link が複数回渡された場合は後勝ち
- ノーツ数10以下の難易度はノイズとみなし、ビットマスクにも保存するノーツ数にも含めない
- songs_hashes は一度登録したら変更しない(衝突時は何もしない)
- バッチ中のSQLiteエラーはロールバックして IngestionError として伝播する
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from catalog.db import now_iso
from catalog.errors import IngestionError
from catalog.models import (
    DIFF_INSTRUMENTS,
    DIFFICULTY_BITS,
    SONG_FLAGS,
    TIER_INSTRUMENTS,
    SongDescriptor,
)
from catalog.normalize import build_initials, build_search_words

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50

# これ以下のノーツ数の難易度は存在しないものとして扱う
MIN_NOTE_COUNT = 10

_DESCRIPTIVE_COLUMNS = (
    ["name", "artist", "album", "genre", "year", "charter"]
    + [f"tier_{i}" for i in TIER_INSTRUMENTS]
    + [f"diff_{i}" for i in DIFF_INSTRUMENTS]
    + [flag for flag in SONG_FLAGS if flag not in ("is_pack", "is_120")]
    + ["note_counts", "direct_links", "length", "effective_length", "is_120", "uploaded_at", "is_pack", "words"]
)

SONG_COLUMNS = _DESCRIPTIVE_COLUMNS[:] + ["link", "last_modified"]


def get_diffs_from_note_counts(
    note_counts: Optional[Mapping[str, Mapping[str, int]]],
) -> Tuple[Dict[str, int], Optional[Dict[str, Dict[str, int]]]]:
    """
    ノーツ数から楽器ごとの難易度ビットマスクを求める。

    ビットは e=1, m=2, h=4, x=8。
    例: 0b0001 (1) は easy のみ、0b1100 (12) は expert + hard。
    ノーツ数が10以下の難易度はビットを立てず、返すノーツ数からも取り除く。
    入力は変更しない。

    Args:
        note_counts: {part: {difficulty: ノーツ数}}。

    Returns:
        (ビットマスクのdict, 枝刈り後のノーツ数dict)。ノーツ数が無ければ ({}, None)。
    """
    if not note_counts:
        return {}, None

    diffs: Dict[str, int] = {}
    pruned: Dict[str, Dict[str, int]] = {}
    for part, counts in note_counts.items():
        flag = 0
        kept: Dict[str, int] = {}
        for diff, count in (counts or {}).items():
            bit = DIFFICULTY_BITS.get(diff)
            if bit is None:
                kept[diff] = count
                continue
            if int(count) > MIN_NOTE_COUNT:
                flag |= bit
                kept[diff] = count
        if flag:
            diffs[part] = flag
        if kept:
            pruned[part] = kept

    return diffs, pruned or None


def build_song_words(song: SongDescriptor) -> str:
    """
    曲の検索用ワード文字列を生成する。

    曲名・アーティスト・アルバム・ジャンル・年・譜面作者・Source名・親フォルダ名、
    および曲名の頭文字を対象とする。

    Args:
        song: 曲情報。

    Returns:
        検索用ワード文字列。
    """
    name = song.resolved_name
    return build_search_words([
        name,
        song.resolved_artist,
        song.resolved_album,
        song.resolved_genre,
        song.resolved_year,
        song.resolved_charter,
        song.source.name if song.source else None,
        song.parent.name if song.parent else None,
        build_initials(name),
    ])


def build_song_row(song: SongDescriptor) -> Dict[str, Any]:
    """
    SongDescriptor を songs テーブルの1行分のdictに変換する。

    Args:
        song: 曲情報。

    Returns:
        列名をキーとするdict。
    """
    diffs, note_counts = get_diffs_from_note_counts(song.note_counts)

    row: Dict[str, Any] = {
        "name": song.resolved_name,
        "artist": song.resolved_artist,
        "album": song.resolved_album,
        "genre": song.resolved_genre,
        "year": song.resolved_year,
        "charter": song.resolved_charter,
    }
    for instrument in TIER_INSTRUMENTS:
        tier = song.tier(instrument)
        row[f"tier_{instrument}"] = tier if tier >= 0 else None
    for instrument in DIFF_INSTRUMENTS:
        row[f"diff_{instrument}"] = diffs.get(instrument) or None
    for flag in SONG_FLAGS:
        row[flag] = int(bool(getattr(song, flag)))

    row["note_counts"] = json.dumps(note_counts, sort_keys=True) if note_counts else None
    row["direct_links"] = json.dumps(dict(song.direct_links), sort_keys=True) if song.direct_links else None
    row["length"] = song.resolved_length
    row["effective_length"] = song.resolved_effective_length
    row["uploaded_at"] = song.uploaded_at or now_iso()
    row["words"] = build_song_words(song)
    row["link"] = song.link
    row["last_modified"] = song.last_modified
    return row


def _hash_rows(song_id: int, hashes: Optional[Mapping[str, Any]]) -> List[Tuple[str, str, Optional[str], int]]:
    rows: List[Tuple[str, str, Optional[str], int]] = []
    for part, value in (hashes or {}).items():
        if part == "file":
            if value:
                rows.append((str(value), "file", None, song_id))
            continue
        for diff, hash_value in (value or {}).items():
            rows.append((str(hash_value), part.strip(), diff.strip(), song_id))
    return rows


def dedupe_by_link(songs: Iterable[SongDescriptor]) -> List[SongDescriptor]:
    """link で重複排除する(後勝ち、順序は初出位置)。"""
    by_link: Dict[str, SongDescriptor] = {}
    for song in songs:
        by_link[song.link] = song
    return list(by_link.values())


class SongIngestor:
    """
    曲情報をバッチで upsert する取り込みパイプライン。

    ingest() は即時に書き込む。submit()/flush() はクロール中に曲を溜めておき、
    batch_size に達した時点でまとめて書き込む。
    """

    def __init__(self, con: sqlite3.Connection, batch_size: int = DEFAULT_BATCH_SIZE):
        self.con = con
        self.batch_size = batch_size
        self.written = 0
        self._pending: Dict[str, SongDescriptor] = {}
        self._pending_reused: Dict[str, SongDescriptor] = {}

    def submit(self, song: SongDescriptor, reused: bool = False) -> None:
        """
        曲を書き込み待ちに追加する。

        Args:
            song: 曲情報。
            reused: 前回状態から再利用した曲なら True(last_modified を更新しない)。
        """
        self._pending.pop(song.link, None)
        self._pending_reused.pop(song.link, None)
        if reused:
            self._pending_reused[song.link] = song
        else:
            self._pending[song.link] = song

        if len(self._pending) + len(self._pending_reused) >= self.batch_size:
            self.flush()

    def flush(self) -> None:
        """書き込み待ちの曲をすべて書き込む。"""
        pending, self._pending = list(self._pending.values()), {}
        reused, self._pending_reused = list(self._pending_reused.values()), {}
        self.ingest(pending)
        self.ingest(reused, no_update_last_modified=True)

    def ingest(self, songs: Iterable[SongDescriptor], no_update_last_modified: bool = False) -> int:
        """
        曲情報を重複排除し、バッチごとに upsert する。

        Args:
            songs: 曲情報。
            no_update_last_modified: True の場合、既存行の last_modified を上書きしない。

        Returns:
            書き込んだ曲数。

        Raises:
            IngestionError: バッチの書き込みに失敗した場合。
        """
        unique_songs = dedupe_by_link(songs)
        for i in range(0, len(unique_songs), self.batch_size):
            batch = unique_songs[i:i + self.batch_size]
            logger.info("Inserting from %d to %d", i, i + len(batch))
            self._write_batch(batch, no_update_last_modified)
        self.written += len(unique_songs)
        return len(unique_songs)

    def _write_batch(self, batch: List[SongDescriptor], no_update_last_modified: bool) -> None:
        update_columns = list(_DESCRIPTIVE_COLUMNS)
        if not no_update_last_modified:
            update_columns.append("last_modified")

        sql = (
            f"INSERT INTO songs ({', '.join(SONG_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in SONG_COLUMNS)}) "
            "ON CONFLICT(link) DO UPDATE SET "
            + ", ".join(f"{col} = excluded.{col}" for col in update_columns)
        )
        rows = [build_song_row(song) for song in batch]

        try:
            cur = self.con.cursor()
            cur.executemany(sql, [[row[col] for col in SONG_COLUMNS] for row in rows])

            links = [song.link for song in batch]
            cur.execute(
                f"SELECT id, link FROM songs WHERE link IN ({', '.join('?' for _ in links)})",
                links,
            )
            ids = {row["link"]: int(row["id"]) for row in cur.fetchall()}

            provenance = []
            hash_rows = []
            for song in batch:
                song_id = ids[song.link]
                if song.source is not None:
                    parent = json.dumps(song.parent.to_dict()) if song.parent else None
                    provenance.append((song_id, song.source.chorus_id, parent))
                hash_rows.extend(_hash_rows(song_id, song.hashes))

            cur.executemany("""
            INSERT INTO songs_sources (song_id, source_id, parent)
            VALUES (?, ?, ?)
            ON CONFLICT(song_id, source_id) DO UPDATE SET parent = excluded.parent
            """, provenance)

            if hash_rows:
                cur.executemany("""
                INSERT INTO songs_hashes (hash, part, difficulty, song_id)
                VALUES (?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """, hash_rows)

            self.con.commit()
        except sqlite3.Error as e:
            self.con.rollback()
            raise IngestionError(f"Failed to upsert songs batch ({e})") from e
