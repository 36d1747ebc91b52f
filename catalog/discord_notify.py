"""
Discord Webhook通知を行うユーティリティ。

このモジュールはクロール結果(成功/失敗/統計)をDiscordへ送信する用途で使用する。
通知失敗は処理全体の失敗とはみなさず、ログに残して終了する。
"""

from __future__ import annotations

import logging
from typing import Sequence

import requests
from requests import RequestException

from catalog.crawler import CrawlResult

logger = logging.getLogger(__name__)

DISCORD_MESSAGE_LIMIT = 1900


def send_discord_message(webhook_url: str, message: str) -> None:
    """
    Discord Webhookへメッセージを送信する。

    webhook_urlが空の場合は何もせず終了する。
    通知失敗は致命的なエラーとしない。

    Args:
        webhook_url: Discord Webhook URL。
        message: 送信する本文。
    """
    if not webhook_url:
        return

    payload = {"content": message}

    try:
        requests.post(webhook_url, json=payload, timeout=15)
    except RequestException as e:
        # 通知失敗は致命にしない
        logger.warning("Discord notification failed (%s)", e)


def build_crawl_message(
    results: Sequence[CrawlResult],
    total_songs: int,
    limit: int = DISCORD_MESSAGE_LIMIT,
) -> str:
    """
    クロール結果の通知本文を組み立てる。

    Source ごとの内訳が limit を超える場合は合計のみの本文にフォールバックする。

    Args:
        results: Source ごとのクロール結果。
        total_songs: クロール後のカタログ上の曲数。
        limit: 本文の最大文字数。

    Returns:
        通知本文。
    """
    found = sum(r.songs_found for r in results)
    reused = sum(r.songs_reused for r in results)
    ignored = sum(r.ignored for r in results)

    header = (
        f"✅ chart catalog 更新成功\n"
        f"- sources: {len(results)}\n"
        f"- songs found: {found}\n"
        f"- songs reused: {reused}\n"
        f"- ignored: {ignored}\n"
        f"- total songs: {total_songs}\n"
    )

    lines = [
        f"  - {r.source}: found={r.songs_found} reused={r.songs_reused} ignored={r.ignored}"
        for r in results
    ]
    detailed = header + "Sources:\n" + "\n".join(lines)
    if len(detailed) <= limit:
        return detailed
    return header + "Sources: See log"
