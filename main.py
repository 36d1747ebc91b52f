import logging
import os
import shutil
import sys
import tempfile
import traceback
from typing import Optional

from catalog.archive import ArchiveProcessor
from catalog.build_validation import validate_db_schema_and_data, validate_pack_link_stability
from catalog.config import apply_env_overrides, load_settings
from catalog.crawler import CatalogCrawler
from catalog.db import connect_db, count_songs, init_schema
from catalog.discord_notify import build_crawl_message, send_discord_message
from catalog.drive import DriveClient
from catalog.extractors import IniFolderExtractor, ZipArchiveExtractor

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )


def snapshot_catalog(sqlite_path: str, work_dir: str) -> Optional[str]:
    """クロール前のカタログを比較用にコピーする。カタログが無ければ None。"""
    if not os.path.exists(sqlite_path):
        return None
    dest = os.path.join(work_dir, f"previous_{os.path.basename(sqlite_path)}")
    shutil.copyfile(sqlite_path, dest)
    return dest


def check_pack_stability(previous_path: Optional[str], sqlite_path: str) -> Optional[dict]:
    """
    前回のカタログと比べてパック内の番号付けが変わっていないか検証する。

    番号ずれは失敗とし、欠けた番号(パックの曲数減少)は警告に留める。

    Returns:
        検証結果の統計。前回のカタログが無い場合は None。

    Raises:
        RuntimeError: パック内の番号ずれを検出した場合。
    """
    if previous_path is None:
        return None
    stats = validate_pack_link_stability(previous_path, sqlite_path, missing_policy="warn")
    if stats["missing_in_new_total"]:
        logger.warning("%d pack entries disappeared since the previous build", stats["missing_in_new_total"])
    return stats


def main():
    """
    譜面カタログのクロールとDB更新を行うメイン処理。
    以下の処理を順序実行する:
    1. settings.yaml を読み込み、環境変数の上書きを反映
    2. SQLiteデータベースを初期化
    3. 設定された Source を順にクロールしてカタログを更新
    4. DBスキーマと整合性、前回カタログからのパック番号ずれを検証
    5. Discord Webhookで処理結果を通知（成功/失敗）
    環境変数:
    - SETTINGS_PATH: 設定ファイルパス(デフォルト: "settings.yaml")
    - DRIVE_API_KEY: Drive API キー(設定ファイルより優先)
    - SQLITE_PATH: SQLiteファイルパス(設定ファイルより優先)
    - FORCE_REFRESH: "1" の場合、前回状態を使わず全て再処理する
    - DISCORD_WEBHOOK_URL: Discord通知先(オプション)
    - LOG_LEVEL: ログレベル(デフォルト: INFO)
    Raises:
        Exception: 処理中に任意のエラーが発生した場合。
                   エラー内容はDiscordに通知される（設定済みの場合）
    """
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))
    discord_webhook = os.environ.get("DISCORD_WEBHOOK_URL")

    try:
        settings = load_settings(os.environ.get("SETTINGS_PATH", "settings.yaml"))
        settings = apply_env_overrides(settings, os.environ)

        with tempfile.TemporaryDirectory() as work_dir:
            previous_path = snapshot_catalog(settings.sqlite_path, work_dir)

            con = connect_db(settings.sqlite_path)
            try:
                init_schema(con)

                drive = DriveClient(
                    api_key=settings.drive.api_key,
                    timeout=settings.drive.timeout,
                    retries=settings.drive.retries,
                    backoff_factor=settings.drive.backoff_factor,
                )
                crawler = CatalogCrawler(
                    con=con,
                    storage=drive,
                    folder_extractor=IniFolderExtractor(drive),
                    archive_processor=ArchiveProcessor(drive, {"zip": ZipArchiveExtractor()}),
                    options=settings.crawl,
                )

                results = [crawler.crawl(source) for source in settings.sources]
                total_songs = count_songs(con)
            finally:
                con.close()

            validate_db_schema_and_data(settings.sqlite_path)
            check_pack_stability(previous_path, settings.sqlite_path)

        if discord_webhook:
            send_discord_message(discord_webhook, build_crawl_message(results, total_songs))

        print("SUCCESS")

    except Exception:
        err = traceback.format_exc()
        print(err, file=sys.stderr)

        if discord_webhook:
            msg = (
                f"❌ chart catalog 更新失敗\n"
                f"```{err[:1800]}```"
            )
            send_discord_message(discord_webhook, msg)

        raise


if __name__ == "__main__":
    main()
