"""
設定ファイル(settings.yaml)の読み込み処理を提供するモジュール。

settings.yaml から譜面カタログのクロールに必要な各種設定を読み込み、
アプリ内で扱いやすい dataclass に変換する。
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional, Tuple

import yaml

from catalog.errors import ConfigError

# 50 MB。巨大なパックで帯域を使い切らないための上限
DEFAULT_MAX_ARCHIVE_SIZE = 52428800


@dataclass(frozen=True)
class DriveConfig:
    """
    ストレージ(Google Drive API)接続設定。

    Attributes:
        api_key: Drive API キー。
        timeout: 1リクエストあたりのタイムアウト秒。
        retries: 一時的な失敗に対する最大リトライ回数。
        backoff_factor: 指数バックオフの係数。
    """

    api_key: str = ""
    timeout: int = 60
    retries: int = 5
    backoff_factor: float = 1.0


@dataclass(frozen=True)
class CrawlOptions:
    """
    1回のクロールの挙動を決めるオプション。

    Attributes:
        force_refresh: True の場合、前回状態を使わず全ノードを再処理する。
        recover_cutover_link: 中断したクロールの再開時に指定する。
            このリンクのノードに到達するまでは、既にカタログにあるリンクを飛ばす。
        max_depth: フォルダ再帰の最大深さ。
        max_archive_size: 処理対象とするアーカイブの最大バイト数(未満のみ対象)。
        batch_size: 1回のupsertで扱う曲数。
        flush_ignores_per_folder: フォルダごとに無視リストを書き込むかどうか。
            False の場合は Source のクロール完了時にまとめて書き込む。
    """

    force_refresh: bool = False
    recover_cutover_link: Optional[str] = None
    max_depth: int = 32
    max_archive_size: int = DEFAULT_MAX_ARCHIVE_SIZE
    batch_size: int = 50
    flush_ignores_per_folder: bool = True


@dataclass(frozen=True)
class SourceConfig:
    """
    クロール起点(Source)の定義。

    Attributes:
        name: 表示名。
        link: クロールするフォルダのリンク。
        proxy: 表示用に差し替えるリンク(再ホスト時など)。
        is_setlist: セットリスト扱いかどうか。
        hide_single_downloads: 個別ダウンロードリンクを隠すかどうか。
    """

    name: str
    link: str
    proxy: Optional[str] = None
    is_setlist: bool = False
    hide_single_downloads: bool = False


@dataclass(frozen=True)
class Settings:
    """
    アプリケーション全体設定。

    Attributes:
        sqlite_path: 出力SQLiteファイルパス。
        drive: ストレージ接続設定。
        crawl: クロールオプション。
        sources: クロール対象のSource一覧。
    """

    sqlite_path: str
    drive: DriveConfig = field(default_factory=DriveConfig)
    crawl: CrawlOptions = field(default_factory=CrawlOptions)
    sources: Tuple[SourceConfig, ...] = ()


def _load_flag(data: Mapping[str, Any], key: str, default: bool) -> bool:
    # "false" 等の文字列を真とみなさないよう、YAMLの真偽値以外は受け付けない
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"{key} は true/false で指定してください: {value!r}")
    return value


def _load_source(data: Mapping[str, Any]) -> SourceConfig:
    try:
        name = str(data["name"]).strip()
        link = str(data["link"]).strip()
    except KeyError as e:
        raise ConfigError(f"source に必須キーがありません: {e}") from e
    if not name or not link:
        raise ConfigError("source の name/link が空です")

    return SourceConfig(
        name=name,
        link=link,
        proxy=str(data["proxy"]).strip() if data.get("proxy") else None,
        is_setlist=_load_flag(data, "is_setlist", False),
        hide_single_downloads=_load_flag(data, "hide_single_downloads", False),
    )


def load_settings(path: str) -> Settings:
    """
    settings.yaml を読み込み Settings に変換する。

    Args:
        path: settings.yaml のファイルパス。

    Returns:
        Settingsオブジェクト。

    Raises:
        FileNotFoundError: 設定ファイルが存在しない場合。
        ConfigError: sources の定義が不正な場合や数値変換に失敗した場合。
        yaml.YAMLError: YAMLのパースに失敗した場合。
    """
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    drive_data = data.get("drive") or {}
    crawl_data = data.get("crawl") or {}
    sources_data = data.get("sources") or []
    if not isinstance(sources_data, list):
        raise ConfigError("sources はリストで指定してください")

    try:
        drive = DriveConfig(
            api_key=str(drive_data.get("api_key") or ""),
            timeout=int(drive_data.get("timeout", 60)),
            retries=int(drive_data.get("retries", 5)),
            backoff_factor=float(drive_data.get("backoff_factor", 1.0)),
        )
        crawl = CrawlOptions(
            force_refresh=_load_flag(crawl_data, "force_refresh", False),
            recover_cutover_link=crawl_data.get("recover_cutover_link") or None,
            max_depth=int(crawl_data.get("max_depth", 32)),
            max_archive_size=int(crawl_data.get("max_archive_size", DEFAULT_MAX_ARCHIVE_SIZE)),
            batch_size=int(crawl_data.get("batch_size", 50)),
            flush_ignores_per_folder=_load_flag(crawl_data, "flush_ignores_per_folder", True),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"settings.yaml の数値設定が不正です ({e})") from e

    if crawl.batch_size <= 0:
        raise ConfigError("crawl.batch_size は1以上を指定してください")

    return Settings(
        sqlite_path=str(data.get("sqlite_path", "chart_catalog.sqlite")),
        drive=drive,
        crawl=crawl,
        sources=tuple(_load_source(s) for s in sources_data),
    )


def apply_env_overrides(settings: Settings, env: Mapping[str, str]) -> Settings:
    """
    環境変数による上書きを反映した Settings を返す。

    - DRIVE_API_KEY: drive.api_key
    - FORCE_REFRESH=1: crawl.force_refresh
    - SQLITE_PATH: sqlite_path

    Args:
        settings: 読み込み済み設定。
        env: 環境変数のマッピング。

    Returns:
        上書き後の Settings。
    """
    if env.get("DRIVE_API_KEY"):
        settings = replace(settings, drive=replace(settings.drive, api_key=env["DRIVE_API_KEY"]))
    if env.get("FORCE_REFRESH") == "1":
        settings = replace(settings, crawl=replace(settings.crawl, force_refresh=True))
    if env.get("SQLITE_PATH"):
        settings = replace(settings, sqlite_path=env["SQLITE_PATH"])
    return settings
