"""
Order Service — ドメインエラー

コマンドハンドラが送出し、``main`` が構造化された HTTP エラー
``{"error": {"category": ..., "message": ...}}`` に変換する。
"""


class OrderError(Exception):
    category = "internal"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class OrderValidationError(OrderError):
    """リクエストデータの欠落・不正。何も変更されていない。"""
    category = "validation"
    status_code = 400


class ReferenceNotFound(OrderError):
    """参照先のユーザーまたは商品が存在しない"""
    category = "referential"
    status_code = 404


class InsufficientStock(OrderError):
    category = "insufficient_stock"
    status_code = 400


class OrderNotFound(OrderError):
    category = "not_found"
    status_code = 404


class ConcurrencyConflict(OrderError):
    """CAS 更新の最中に注文が変わり続けた"""
    category = "conflict"
    status_code = 409


class CatalogUnavailable(OrderError):
    """User / Product Service に到達できなかった"""
    category = "infrastructure"
    status_code = 503
