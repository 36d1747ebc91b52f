"""
アプリケーション固有の例外定義モジュール。

クロール、アーカイブ展開、カタログへの取り込みなどの処理で発生する例外を
分類して扱うために、基底例外および派生例外を定義する。
"""


class CatalogError(Exception):
    """譜面カタログ作成システム全体の基底例外。"""


class StorageError(CatalogError):
    """クラウドストレージの一覧取得・ダウンロードに起因する例外。"""


class ExtractionError(CatalogError):
    """フォルダ・アーカイブからメタデータを取り出せない場合の例外。"""


class IngestionError(CatalogError):
    """曲情報のカタログ登録(バッチupsert)に失敗した場合の例外。"""


class ConfigError(CatalogError):
    """設定ファイルの内容が不正な場合の例外。"""
