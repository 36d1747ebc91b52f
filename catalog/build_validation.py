"""
ビルド後検証用のヘルパー群。
"""

from __future__ import annotations

import re
import sqlite3

_PACK_LINK_RE = re.compile(r"^(?P<base>.+)&i=(?P<index>\d+)$")


def _index_columns(conn: sqlite3.Connection, index_name: str) -> list[str]:
    cur = conn.cursor()
    cur.execute(f"PRAGMA index_info({index_name});")
    rows = cur.fetchall()
    return [row[2] for row in rows]


def _has_unique_index(
    conn: sqlite3.Connection,
    table_name: str,
    expected_columns: list[str],
) -> bool:
    cur = conn.cursor()
    cur.execute(f"PRAGMA index_list({table_name});")
    for row in cur.fetchall():
        index_name = row[1]
        is_unique = row[2]
        if is_unique != 1:
            continue
        if _index_columns(conn, index_name) == expected_columns:
            return True
    return False


def _assert_not_null_column(conn: sqlite3.Connection, table_name: str, column_name: str):
    cur = conn.cursor()
    cur.execute(f"PRAGMA table_info({table_name});")
    for row in cur.fetchall():
        if row[1] == column_name:
            if row[3] != 1:
                raise RuntimeError(f"{table_name}.{column_name} は NOT NULL である必要があります")
            return
    raise RuntimeError(f"列が見つかりません: {table_name}.{column_name}")


def _assert_index_exists(conn: sqlite3.Connection, table_name: str, index_name: str):
    cur = conn.cursor()
    cur.execute(f"PRAGMA index_list({table_name});")
    names = {row[1] for row in cur.fetchall()}
    if index_name not in names:
        raise RuntimeError(f"インデックスが見つかりません: {index_name}")


def validate_db_schema_and_data(sqlite_path: str):
    conn = sqlite3.connect(sqlite_path)
    try:
        _assert_not_null_column(conn, "songs", "link")
        _assert_not_null_column(conn, "songs", "words")
        _assert_not_null_column(conn, "songs", "uploaded_at")

        if not _has_unique_index(conn, "songs", ["link"]):
            raise RuntimeError("songs.link の UNIQUE 制約が見つかりません")
        if not _has_unique_index(conn, "sources", ["link"]):
            raise RuntimeError("sources.link の UNIQUE 制約が見つかりません")
        if not _has_unique_index(conn, "songs_sources", ["song_id", "source_id"]):
            raise RuntimeError("songs_sources の複合 UNIQUE 制約が見つかりません")
        if not _has_unique_index(conn, "links_to_ignore", ["link"]):
            raise RuntimeError("links_to_ignore.link の UNIQUE 制約が見つかりません")

        _assert_index_exists(conn, "songs_hashes", "uq_songs_hashes")

        cur = conn.cursor()
        cur.execute(
            """
            SELECT COUNT(*) FROM songs s
            WHERE NOT EXISTS (
                SELECT 1 FROM songs_sources ss WHERE ss.song_id = s.id
            );
            """
        )
        orphan_count = int(cur.fetchone()[0])
        if orphan_count > 0:
            raise RuntimeError(f"発見元の無い曲があります: {orphan_count} 件")
    finally:
        conn.close()


def _load_pack_map(sqlite_path: str) -> dict[str, dict[int, str]]:
    conn = sqlite3.connect(sqlite_path)
    try:
        cur = conn.cursor()
        cur.execute("SELECT link, name FROM songs WHERE is_pack = 1")
        packs: dict[str, dict[int, str]] = {}
        for link, name in cur.fetchall():
            match = _PACK_LINK_RE.match(link)
            if not match:
                continue
            packs.setdefault(match.group("base"), {})[int(match.group("index"))] = name or ""
        return packs
    finally:
        conn.close()


def validate_pack_link_stability(
    old_sqlite_path: str,
    new_sqlite_path: str,
    missing_policy: str = "error",
) -> dict:
    """
    2つのカタログ間でパック内の番号付け(link&i=N)が変わっていないか検証する。

    同じパックの同じ曲名が別の番号に移っていれば不一致とする。
    旧カタログにあった番号が新カタログで欠けている場合は missing_policy に従う。
    """
    if missing_policy not in {"error", "warn"}:
        raise ValueError("missing_policy は 'error' または 'warn' を指定してください")

    old_map = _load_pack_map(old_sqlite_path)
    new_map = _load_pack_map(new_sqlite_path)

    moved: list[tuple[str, str, int, int]] = []
    missing_in_new: list[str] = []

    for base, old_entries in old_map.items():
        new_entries = new_map.get(base)
        if new_entries is None:
            continue
        new_index_by_name = {name: index for index, name in new_entries.items()}
        for index, name in old_entries.items():
            if index not in new_entries:
                missing_in_new.append(f"{base}&i={index}")
                continue
            new_index = new_index_by_name.get(name)
            if new_entries[index] != name and new_index is not None and new_index != index:
                moved.append((base, name, index, new_index))

    if moved:
        sample = ", ".join(
            [f"{base} '{name}' old=i{old} new=i{new}" for base, name, old, new in moved[:10]]
        )
        raise RuntimeError(f"パック内の番号ずれを検出しました ({len(moved)} 件): {sample}")

    if missing_in_new and missing_policy == "error":
        sample = ", ".join(missing_in_new[:10])
        raise RuntimeError(
            f"新カタログに存在しないパック曲があります ({len(missing_in_new)} 件): {sample}"
        )

    return {
        "old_packs": len(old_map),
        "new_packs": len(new_map),
        "shared_packs": len(set(old_map) & set(new_map)),
        "moved_total": len(moved),
        "missing_in_new_total": len(missing_in_new),
        "missing_policy": missing_policy,
    }
