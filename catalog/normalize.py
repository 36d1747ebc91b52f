"""
文字列正規化ユーティリティ。

曲名・アーティスト名の揺れを吸収し、検索用ワード生成や
コンテナ名からの既定曲名推定、更新日時の比較で利用する。
"""

from __future__ import annotations

import re
import unicodedata
from typing import Iterable, Optional, Tuple


_HYPHEN_CHARS = [
    "‐", "‒", "–", "—", "―", "−",
]

_QUOTE_MAP = {
    "“": '"',
    "”": '"',
    "„": '"',
    "‟": '"',
    "’": "'",
    "‘": "'",
    "‚": "'",
    "‛": "'",
}

_ARCHIVE_SUFFIX_RE = re.compile(r"\.(zip|rar|7z)$")
_WORD_SPLIT_RE = re.compile(r"[^\w]+")
_INITIAL_RE = re.compile(r"[A-Za-z]")

# "2019-03-31T12:34:56" までの長さ
TIMESTAMP_PRECISION = 19


def normalize_text(s: Optional[str]) -> str:
    """
    曲名・アーティスト名などの文字列を正規化して返す。

    正規化内容:
    - Unicode正規化 (NFKC)
    - 改行/タブをスペースへ置換
    - 引用符の統一
    - ハイフン類の統一
    - trim
    - 連続空白を単一化
    - 小文字化

    Args:
        s: 入力文字列。

    Returns:
        正規化済み文字列。入力が None の場合は空文字を返す。
    """
    if s is None:
        return ""

    s = unicodedata.normalize("NFKC", str(s))

    # 改行・タブ除去
    s = s.replace("\n", " ").replace("\r", " ").replace("\t", " ")

    # 引用符統一
    for k, v in _QUOTE_MAP.items():
        s = s.replace(k, v)

    # ハイフン統一
    for c in _HYPHEN_CHARS:
        s = s.replace(c, "-")

    s = s.strip()
    s = re.sub(r"\s+", " ", s)
    return s.lower()


def truncate_timestamp(value: Optional[str]) -> str:
    """
    ISO 8601 文字列を秒精度に切り詰める。

    秒未満とタイムゾーン表記は捨てる。スキップ判定の等値比較に使うため、
    None は空文字として扱う。

    Args:
        value: 更新日時文字列。

    Returns:
        先頭19文字の文字列。
    """
    return (value or "")[:TIMESTAMP_PRECISION]


def latest_timestamp(values: Iterable[Optional[str]]) -> str:
    """
    複数の更新日時のうち最も新しいものを秒精度で返す。

    Args:
        values: 更新日時文字列の列。None は無視する。

    Returns:
        最大値(秒精度)。値が1つもなければ空文字。
    """
    latest = ""
    for value in values:
        truncated = truncate_timestamp(value)
        if truncated > latest:
            latest = truncated
    return latest


def parse_default_name(text: str) -> Tuple[str, str]:
    """
    フォルダ名・アーカイブ名から既定のアーティスト名と曲名を推定する。

    "Artist - Name" 形式であれば分割し、区切りがなければアーティストは "N/A" とする。
    アーカイブ拡張子 (.zip/.rar/.7z) は曲名から取り除く。

    Args:
        text: コンテナ名。

    Returns:
        (artist, name) のタプル。
    """
    artist, *song_parts = text.split(" - ")
    if not song_parts:
        return "N/A", _ARCHIVE_SUFFIX_RE.sub("", text)

    name = _ARCHIVE_SUFFIX_RE.sub("", " - ".join(song_parts))
    return artist.strip(), name.strip()


def build_initials(name: Optional[str]) -> Optional[str]:
    """
    曲名の頭文字トークンを返す。

    英字で始まる単語が3語以上ある場合のみ生成する
    (例: "Through the Fire and Flames" -> "ttfaf")。

    Args:
        name: 曲名。

    Returns:
        頭文字を連結した文字列。条件を満たさない場合は None。
    """
    words = [word for word in (name or "").split(" ") if word and _INITIAL_RE.match(word[0])]
    if len(words) < 3:
        return None
    return "".join(word[0] for word in words).lower()


def build_search_words(fields: Iterable[Optional[str]]) -> str:
    """
    検索用ワード文字列を生成する。

    各フィールドを小文字化して単語に分割し、空要素を除いたうえで
    重複排除・ソートしてスペース区切りで連結する。

    Args:
        fields: 曲名・アーティスト名などの値。None や空文字は無視する。

    Returns:
        検索用ワード文字列。
    """
    tokens = set()
    for value in fields:
        if value is None or value == "":
            continue
        for token in _WORD_SPLIT_RE.split(normalize_text(str(value))):
            if token:
                tokens.add(token)
    return " ".join(sorted(tokens))
