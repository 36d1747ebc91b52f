"""Tests for folder/archive crawling against an in-memory drive tree."""

from __future__ import annotations

import json

import pytest

from catalog.archive import ArchiveProcessor
from catalog.config import CrawlOptions
from catalog.crawler import CatalogCrawler, classify_content, compute_uploaded_at
from catalog.errors import StorageError
from catalog.models import DriveItem, FolderNode
from conftest import ROOT_ID, folder_link, view_link

T0 = "2024-01-01T00:00:00.000Z"
T2 = "2024-01-01T00:00:02.000Z"
T9 = "2024-02-01T00:00:00.000Z"


def _snapshot_tables(con) -> dict:
    cur = con.cursor()
    cur.execute("SELECT * FROM songs ORDER BY link")
    songs = [dict(row) for row in cur.fetchall()]
    cur.execute("SELECT song_id, source_id, parent FROM songs_sources ORDER BY song_id, source_id")
    sources = [tuple(row) for row in cur.fetchall()]
    cur.execute("SELECT hash, part, difficulty, song_id FROM songs_hashes ORDER BY song_id, part, hash")
    hashes = [tuple(row) for row in cur.fetchall()]
    return {"songs": songs, "songs_sources": sources, "songs_hashes": hashes}


def _song(con, link: str) -> dict:
    cur = con.cursor()
    cur.execute("SELECT * FROM songs WHERE link = ?", (link,))
    row = cur.fetchone()
    return dict(row) if row else None


def _parent_of(con, link: str):
    cur = con.cursor()
    cur.execute("""
    SELECT ss.parent FROM songs_sources ss JOIN songs s ON s.id = ss.song_id
    WHERE s.link = ?
    """, (link,))
    row = cur.fetchone()
    return json.loads(row["parent"]) if row and row["parent"] else None


def _ignored_links(con) -> list:
    cur = con.cursor()
    cur.execute("SELECT link, created_at FROM links_to_ignore ORDER BY link")
    return [tuple(row) for row in cur.fetchall()]


def _build_scenario(drive, archive_extractor):
    song_a = drive.add_folder(ROOT_ID, "songA", "Some Artist - SongA", T0)
    drive.add_file(song_a, "ini1", "song.ini", T0)
    drive.add_file(song_a, "chart1", "notes.chart", T0)
    drive.add_file(song_a, "audio1", "song.ogg", T0)
    drive.add_file(ROOT_ID, "pack1", "Pack.zip", T0, size=5_000_000, data=b"pack-bytes")
    archive_extractor.results[b"pack-bytes"] = [
        {"name": "First", "artist": "Band", "diff_drums": "2"},
        {"name": "Second", "artist": "Band", "note_counts": {"drums": {"x": 300}}},
    ]


@pytest.mark.light
def test_first_crawl_registers_folder_song_and_pack_songs(
    con, drive, folder_extractor, archive_extractor, make_crawler, source_config
):
    """フォルダ曲1件とパック2曲が登録され、無視リストは空のまま。"""
    _build_scenario(drive, archive_extractor)

    result = make_crawler().crawl(source_config)

    links = [row["link"] for row in _snapshot_tables(con)["songs"]]
    assert sorted(links) == sorted([
        folder_link("songA"),
        view_link("pack1") + "&i=1",
        view_link("pack1") + "&i=2",
    ])
    assert _ignored_links(con) == []
    assert result.songs_found == 3
    assert folder_extractor.calls == 1
    assert archive_extractor.calls == 1

    song_a = _song(con, folder_link("songA"))
    assert song_a["name"] == "SongA"
    assert song_a["artist"] == "Some Artist"
    assert song_a["is_folder"] == 1
    assert song_a["uploaded_at"] == "2024-01-01T00:00:00"
    assert song_a["last_modified"] is None

    first = _song(con, view_link("pack1") + "&i=1")
    assert first["is_pack"] == 1
    assert first["tier_drums"] == 2
    assert json.loads(first["direct_links"]) == {"archive": drive.entries["pack1"]["webContentLink"]}


@pytest.mark.light
def test_second_crawl_without_changes_skips_extraction_and_keeps_rows(
    con, drive, folder_extractor, archive_extractor, make_crawler, source_config
):
    """変更が無ければ抽出は一切呼ばれず、保存内容も変わらない。"""
    _build_scenario(drive, archive_extractor)
    make_crawler().crawl(source_config)
    before = _snapshot_tables(con)
    folder_extractor.calls = 0
    archive_extractor.calls = 0

    result = make_crawler().crawl(source_config)

    assert folder_extractor.calls == 0
    assert archive_extractor.calls == 0
    assert drive.downloads == [drive.entries["pack1"]["webContentLink"]]
    assert result.songs_reused == 3
    assert result.songs_found == 0
    assert _snapshot_tables(con) == before


@pytest.mark.light
def test_third_crawl_reextracts_only_the_touched_folder(
    con, drive, folder_extractor, archive_extractor, make_crawler, source_config
):
    """譜面ファイルの更新日時が2秒進んだフォルダだけが再抽出される。"""
    _build_scenario(drive, archive_extractor)
    make_crawler().crawl(source_config)
    make_crawler().crawl(source_config)
    before = _snapshot_tables(con)
    folder_extractor.calls = 0
    archive_extractor.calls = 0

    drive.touch("chart1", T2)
    make_crawler().crawl(source_config)

    assert folder_extractor.calls == 1
    assert archive_extractor.calls == 0
    after = _snapshot_tables(con)
    before_by_link = {row["link"]: row for row in before["songs"]}
    after_by_link = {row["link"]: row for row in after["songs"]}
    assert after_by_link[folder_link("songA")]["uploaded_at"] == "2024-01-01T00:00:02"
    for suffix in ("&i=1", "&i=2"):
        link = view_link("pack1") + suffix
        assert after_by_link[link] == before_by_link[link]
    assert after["songs_hashes"] == before["songs_hashes"]


@pytest.mark.light
def test_small_note_counts_are_pruned_in_stored_rows(
    con, drive, folder_extractor, archive_extractor, make_crawler, source_config
):
    """ノーツ数10の難易度はビットもノーツ数も保存されない。"""
    _build_scenario(drive, archive_extractor)
    make_crawler().crawl(source_config)

    song_a = _song(con, folder_link("songA"))
    assert song_a["diff_guitar"] == 8
    assert json.loads(song_a["note_counts"]) == {"guitar": {"x": 500}}


@pytest.mark.light
def test_pack_numbering_is_stable_when_metadata_changes(
    con, drive, archive_extractor, make_crawler, source_config
):
    """パックの内容が変わっても同じ位置には同じ番号が振られる。"""
    _build_scenario(drive, archive_extractor)
    make_crawler().crawl(source_config)

    drive.touch("pack1", T9)
    archive_extractor.results[b"pack-bytes"] = [
        {"name": "First (v2)", "artist": "Band"},
        {"name": "Second (v2)", "artist": "Band"},
    ]
    make_crawler().crawl(source_config)

    assert _song(con, view_link("pack1") + "&i=1")["name"] == "First (v2)"
    assert _song(con, view_link("pack1") + "&i=2")["name"] == "Second (v2)"
    assert _song(con, view_link("pack1") + "&i=3") is None


@pytest.mark.light
def test_parent_is_only_the_immediate_folder(
    con, drive, archive_extractor, make_crawler, source_config
):
    """3階層下の曲の親は直近のフォルダのみを指し、祖父母は持たない。"""
    artists = drive.add_folder(ROOT_ID, "fA", "Artists", T0)
    album = drive.add_folder(artists, "fB", "Album", T0)
    deep = drive.add_folder(album, "fC", "Deep Song", T0)
    drive.add_file(deep, "chartC", "notes.chart", T0)
    drive.add_file(album, "packB", "Bonus.zip", T0, data=b"bonus")
    archive_extractor.results[b"bonus"] = [{"name": "Bonus"}]

    make_crawler().crawl(source_config)

    parent = _parent_of(con, folder_link("fC"))
    assert parent == {"name": "Artists/Album", "link": folder_link("fB")}
    assert _parent_of(con, view_link("packB")) == {"name": "Artists/Album", "link": folder_link("fB")}


@pytest.mark.light
def test_songs_directly_under_source_root_have_no_parent(
    con, drive, archive_extractor, make_crawler, source_config
):
    """Source直下のフォルダ曲・アーカイブは親を持たない。"""
    _build_scenario(drive, archive_extractor)
    make_crawler().crawl(source_config)

    assert _parent_of(con, folder_link("songA")) is None
    assert _parent_of(con, view_link("pack1") + "&i=1") is None


@pytest.mark.light
def test_ignored_archive_is_never_extracted_again(
    con, drive, archive_extractor, make_crawler, source_config
):
    """曲の無いアーカイブは無視リストに入り、更新されても再展開されない。"""
    drive.add_file(ROOT_ID, "empty1", "Empty.zip", T0, data=b"nothing")

    first = make_crawler().crawl(source_config)
    ignored = _ignored_links(con)
    assert [link for link, _ in ignored] == [view_link("empty1")]
    assert first.ignored == 1
    assert archive_extractor.calls == 1

    drive.touch("empty1", T9)
    make_crawler().crawl(source_config)

    assert archive_extractor.calls == 1
    assert _ignored_links(con) == ignored


@pytest.mark.light
def test_ignores_are_written_at_end_when_not_flushed_per_folder(
    con, drive, archive_extractor, make_crawler, source_config
):
    """フォルダごとの書き込みを無効にしても、クロール完了時に無視リストが書かれる。"""
    drive.add_file(ROOT_ID, "empty1", "Empty.zip", T0, data=b"nothing")

    make_crawler(flush_ignores_per_folder=False).crawl(source_config)

    assert [link for link, _ in _ignored_links(con)] == [view_link("empty1")]


@pytest.mark.light
def test_failed_extraction_does_not_abort_crawl(
    con, drive, folder_extractor, archive_extractor, make_crawler, source_config
):
    """1フォルダ・1アーカイブの抽出失敗でクロール全体は止まらない。"""
    _build_scenario(drive, archive_extractor)
    song_b = drive.add_folder(ROOT_ID, "songB", "SongB", T0)
    drive.add_file(song_b, "chartB", "notes.chart", T0)
    drive.add_file(ROOT_ID, "bad1", "Broken.zip", T0, data=b"corrupt")
    folder_extractor.failing.add("chart1")

    make_crawler().crawl(source_config)

    assert _song(con, folder_link("songA")) is None
    assert _song(con, folder_link("songB")) is not None
    assert _song(con, view_link("pack1") + "&i=2") is not None
    assert view_link("bad1") in [link for link, _ in _ignored_links(con)]


@pytest.mark.light
def test_listing_failure_propagates_after_saving_found_songs(
    con, drive, archive_extractor, make_crawler, source_config
):
    """一覧取得の失敗は伝播し、それまでに見つかった曲は保存される。"""
    _build_scenario(drive, archive_extractor)
    drive.fail_listing.add("songA")

    with pytest.raises(StorageError):
        make_crawler().crawl(source_config)

    assert _song(con, view_link("pack1") + "&i=1") is not None
    assert _song(con, view_link("pack1") + "&i=2") is not None


@pytest.mark.light
def test_shortcut_cycle_is_visited_once(con, drive, make_crawler, source_config):
    """自身を指すショートカットがあってもフォルダは1回だけ走査される。"""
    loop = drive.add_folder(ROOT_ID, "loop", "Loop", T0)
    drive.add_shortcut(loop, "sc1", "loop")

    result = make_crawler().crawl(source_config)

    assert drive.list_calls.count("loop") == 1
    assert result.skipped == 1


@pytest.mark.light
def test_recursion_depth_is_bounded(con, drive, make_crawler, source_config):
    """最大深さを超えるフォルダは走査しない。"""
    a = drive.add_folder(ROOT_ID, "d1", "One", T0)
    b = drive.add_folder(a, "d2", "Two", T0)
    drive.add_file(b, "chartD", "notes.chart", T0)

    result = make_crawler(max_depth=1).crawl(source_config)

    assert "d2" not in drive.list_calls
    assert result.skipped == 1
    assert _song(con, folder_link("d2")) is None


@pytest.mark.light
def test_oversized_archive_is_skipped_without_ignoring(
    con, drive, archive_extractor, make_crawler, source_config
):
    """上限サイズ以上のアーカイブは展開せず、無視リストにも載せない。"""
    drive.add_file(ROOT_ID, "big1", "Huge.zip", T0, size=52428800, data=b"pack-bytes")

    make_crawler().crawl(source_config)

    assert archive_extractor.calls == 0
    assert drive.downloads == []
    assert _ignored_links(con) == []


@pytest.mark.light
def test_archive_without_extractor_is_left_for_later(
    con, drive, folder_extractor, archive_extractor, source_config
):
    """対応する抽出器の無い形式はダウンロードも無視リスト登録もしない。"""
    drive.add_file(ROOT_ID, "rar1", "Songs.rar", T0, data=b"pack-bytes")
    crawler = CatalogCrawler(
        con=con,
        storage=drive,
        folder_extractor=folder_extractor,
        archive_processor=ArchiveProcessor(drive, {"zip": archive_extractor}),
        options=CrawlOptions(),
    )

    crawler.crawl(source_config)

    assert drive.downloads == []
    assert _ignored_links(con) == []


@pytest.mark.light
def test_uppercase_archive_extension_is_extracted(
    con, drive, folder_extractor, archive_extractor, source_config
):
    """拡張子が大文字の .ZIP も zip として展開・登録される。"""
    drive.add_file(ROOT_ID, "up1", "Song.ZIP", T0, data=b"upper")
    archive_extractor.results[b"upper"] = [{"name": "One"}]
    crawler = CatalogCrawler(
        con=con,
        storage=drive,
        folder_extractor=folder_extractor,
        archive_processor=ArchiveProcessor(drive, {"zip": archive_extractor}),
        options=CrawlOptions(),
    )

    crawler.crawl(source_config)

    assert drive.downloads == [drive.entries["up1"]["webContentLink"]]
    assert archive_extractor.calls == 1
    assert _song(con, view_link("up1"))["name"] == "One"


@pytest.mark.light
def test_recover_mode_skips_known_links_until_cutover(
    con, drive, folder_extractor, archive_extractor, make_crawler, source_config
):
    """再開モードでは到達点までの登録済みリンクを飛ばし、以降は通常通り処理する。"""
    _build_scenario(drive, archive_extractor)
    make_crawler().crawl(source_config)
    song_b = drive.add_folder(ROOT_ID, "songB", "SongB", T0)
    drive.add_file(song_b, "chartB", "notes.chart", T0)
    folder_extractor.calls = 0
    archive_extractor.calls = 0

    make_crawler(force_refresh=True, recover_cutover_link=folder_link("songB")).crawl(source_config)

    assert folder_extractor.calls == 1
    assert archive_extractor.calls == 0
    assert drive.list_calls.count("songA") == 1
    assert _song(con, folder_link("songB")) is not None


@pytest.mark.light
def test_force_refresh_reprocesses_everything(
    con, drive, folder_extractor, archive_extractor, make_crawler, source_config
):
    """強制更新では前回状態を使わず全ノードを再処理する。"""
    _build_scenario(drive, archive_extractor)
    make_crawler().crawl(source_config)
    folder_extractor.calls = 0
    archive_extractor.calls = 0

    result = make_crawler(force_refresh=True).crawl(source_config)

    assert folder_extractor.calls == 1
    assert archive_extractor.calls == 1
    assert result.songs_reused == 0
    assert len(_snapshot_tables(con)["songs"]) == 3


@pytest.mark.light
def test_classify_content_roles():
    """フォルダ内のファイルが役割ごとに分類される。"""

    def item(name, **kwargs):
        ext = name.rsplit(".", 1)[1] if "." in name else None
        return DriveItem(id=name, name=name, file_extension=ext, **kwargs)

    files = classify_content(
        [
            item("song.ini"),
            item("notes.chart"),
            item("notes.mid"),
            item("guitar.ogg"),
            item("drums.wav"),
            item("album.png"),
            item("background2.jpg"),
            item("video.webm"),
            item("Pack.zip", size=10, web_content_link="https://example.com/uc?id=z"),
            item("Huge.7z", size=60_000_000, web_content_link="https://example.com/uc?id=h"),
            DriveItem(id="sub", name="Sub", mime_type="application/vnd.google-apps.folder"),
        ],
        max_archive_size=52428800,
    )

    assert files.ini.name == "song.ini"
    assert [c.name for c in files.chart] == ["notes.chart"]
    assert [m.name for m in files.mid] == ["notes.mid"]
    assert [a.name for a in files.audio] == ["guitar.ogg", "drums.wav"]
    assert files.album.name == "album.png"
    assert [b.name for b in files.background] == ["background2.jpg"]
    assert files.video.name == "video.webm"
    assert [a.name for a in files.archives] == ["Pack.zip"]
    assert [s.name for s in files.subfolders] == ["Sub"]


@pytest.mark.light
def test_compute_uploaded_at_ignores_background_images():
    """更新日時は背景画像を除くファイルとフォルダ自身の最大値(秒精度)になる。"""
    folder = FolderNode(id="f", name="F", link="l", modified_time="2024-01-01T00:00:00.000Z")
    files = classify_content(
        [
            DriveItem(id="c", name="notes.chart", file_extension="chart",
                      modified_time="2024-01-03T10:00:00.123Z"),
            DriveItem(id="b", name="background.png", file_extension="png",
                      modified_time="2024-05-01T00:00:00.000Z"),
        ],
        max_archive_size=52428800,
    )

    assert compute_uploaded_at(folder, files) == "2024-01-03T10:00:00"
