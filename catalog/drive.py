"""
Google Drive API へのアクセス処理。

フォルダ一覧・ファイル情報の取得とファイル本体のダウンロードを担当する。
中身の解析は extractors.py / archive.py 側で行い、本モジュールは通信のみを担当する。

例外方針:
- requests 由来の例外は StorageError に変換して上位へ伝播する。
- 一時的な失敗(接続エラー、429、5xx)は指数バックオフでリトライする。
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional

import requests
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from catalog.errors import StorageError
from catalog.models import DriveItem

logger = logging.getLogger(__name__)

DRIVE_API = "https://www.googleapis.com/drive/v3"
FILE_FIELDS = (
    "id,name,mimeType,fileExtension,size,webViewLink,"
    "webContentLink,modifiedTime,shortcutDetails"
)
PAGE_SIZE = 1000

_FILE_ID_RES = [
    re.compile(r"id=([^&]+)&?"),
    re.compile(r"folders/([^?]+)"),
]


def build_session(retries: int = 5, backoff_factor: float = 1.0) -> requests.Session:
    """
    リトライ設定済みの requests.Session を生成する。

    Args:
        retries: 最大リトライ回数。
        backoff_factor: 指数バックオフの係数。

    Returns:
        requests.Session。
    """
    session = requests.Session()
    retry = Retry(
        total=retries,
        backoff_factor=backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def file_id_from_url(url: str) -> Optional[str]:
    """
    ダウンロードURLからファイルIDを取り出す。

    Args:
        url: uc?id=... や folders/... 形式のURL。

    Returns:
        ファイルID。見つからなければ None。
    """
    for pattern in _FILE_ID_RES:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def looks_like_html(body: bytes) -> bool:
    """レスポンス本文がバイナリではなくHTMLページかどうか判定する。"""
    head = body[:15].lstrip().lower()
    return head.startswith(b"<!doctype html") or head.startswith(b"<html")


def find_confirm_form(html: str) -> Optional[tuple]:
    """
    「ウイルススキャンできません」等の確認ページからダウンロードフォームを探す。

    Args:
        html: 確認ページのHTML。

    Returns:
        (action URL, hidden パラメータdict)。フォームが無ければ None。
    """
    soup = BeautifulSoup(html, "html.parser")
    form = soup.find("form", id="download-form") or soup.find("form")
    if form is None or not form.get("action"):
        return None

    params: Dict[str, str] = {}
    for field in form.find_all("input"):
        name = field.get("name")
        if name:
            params[name] = field.get("value", "")
    return form["action"], params


class DriveClient:
    """
    Google Drive v3 REST API のクライアント。

    list/info/get はクロールが利用するストレージ操作に対応する。
    """

    def __init__(
        self,
        api_key: str,
        timeout: int = 60,
        retries: int = 5,
        backoff_factor: float = 1.0,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or build_session(retries, backoff_factor)

    def _get(self, url: str, params: Optional[dict] = None) -> requests.Response:
        try:
            r = self.session.get(url, params=params, timeout=self.timeout)
            r.raise_for_status()
            return r
        except requests.RequestException as e:
            raise StorageError(f"HTTP fetch failed: {url} ({e})") from e

    def list(self, folder_id: str) -> List[DriveItem]:
        """
        フォルダ直下のエントリを一覧で取得する。

        Args:
            folder_id: フォルダID。

        Returns:
            DriveItem のリスト(APIの返却順)。

        Raises:
            StorageError: 通信に失敗した場合。
        """
        items: List[DriveItem] = []
        page_token: Optional[str] = None
        while True:
            params = {
                "q": f"'{folder_id}' in parents and trashed = false",
                "fields": f"nextPageToken, files({FILE_FIELDS})",
                "pageSize": PAGE_SIZE,
                "supportsAllDrives": "true",
                "includeItemsFromAllDrives": "true",
                "key": self.api_key,
            }
            if page_token:
                params["pageToken"] = page_token

            payload = self._get(f"{DRIVE_API}/files", params=params).json()
            items.extend(DriveItem.from_api(f) for f in payload.get("files", []))

            page_token = payload.get("nextPageToken")
            if not page_token:
                return items

    def info(self, file_id: str) -> DriveItem:
        """
        1ファイル(またはフォルダ)の情報を取得する。ショートカットの解決に使う。

        Raises:
            StorageError: 通信に失敗した場合。
        """
        params = {"fields": FILE_FIELDS, "supportsAllDrives": "true", "key": self.api_key}
        return DriveItem.from_api(self._get(f"{DRIVE_API}/files/{file_id}", params=params).json())

    def get(self, file_id: str) -> bytes:
        """
        ファイル本体を取得する。

        Raises:
            StorageError: 通信に失敗した場合。
        """
        params = {"alt": "media", "supportsAllDrives": "true", "key": self.api_key}
        return self._get(f"{DRIVE_API}/files/{file_id}", params=params).content

    def download(self, url: str) -> bytes:
        """
        ダウンロードリンクからファイル本体を取得する。

        URLからファイルIDが分かる場合は API 経由で取得する。
        直接取得した本文がHTML(ダウンロード確認ページ)だった場合は、
        確認フォームを送信するか、API 経由の取得に切り替える。

        Args:
            url: webContentLink 等のダウンロードURL。

        Returns:
            ファイルのバイト列。

        Raises:
            StorageError: 通信に失敗した場合。
        """
        file_id = file_id_from_url(url)
        if file_id:
            return self.get(file_id)

        body = self._get(url).content
        if not looks_like_html(body):
            return body

        form = find_confirm_form(body.decode("utf-8", errors="replace"))
        if form is not None:
            action, params = form
            logger.info("Bypassing download warning page for %s", url)
            return self._get(action, params=params).content

        logger.warning("Download of %s returned an HTML page without a confirm form", url)
        return body
