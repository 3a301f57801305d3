"""
Fulfillment Service — 例外定義

業務エラー (InsufficientStock / IllegalTransition / Forbidden) は
呼び出し元にそのまま返し、自動リトライしない。
DeliveryFailure はインフラ側の失敗で、チャネルごとに握りつぶすか
バックオフで再送する。
"""


class FulfillmentError(Exception):
    """このサービスの例外の基底クラス"""

    status_code = 500


class InsufficientStock(FulfillmentError):
    """在庫不足（引き当て時点の原子的チェックで失敗）"""

    status_code = 422

    def __init__(self, product_id: str, requested: int, available: int | None = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        detail = f"Insufficient stock for product {product_id}: requested={requested}"
        if available is not None:
            detail += f", available={available}"
        super().__init__(detail)


class IllegalTransition(FulfillmentError):
    """許可されていない状態遷移（終端状態からの遷移など）"""

    status_code = 422

    def __init__(self, transaction_id: str, current: str, target: str):
        self.transaction_id = transaction_id
        self.current = current
        self.target = target
        super().__init__(
            f"Transaction {transaction_id} cannot go from {current} to {target}"
        )


class Forbidden(FulfillmentError):
    status_code = 403


class ProductNotFound(FulfillmentError):
    status_code = 404

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class TransactionNotFound(FulfillmentError):
    status_code = 404

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class WebhookEndpointNotFound(FulfillmentError):
    status_code = 404

    def __init__(self, endpoint_id: str):
        self.endpoint_id = endpoint_id
        super().__init__(f"Webhook endpoint {endpoint_id} not found")


class DeliveryFailure(FulfillmentError):
    """SMS / Webhook の送信失敗"""

    def __init__(
        self,
        message: str,
        response_code: int | None = None,
        response_body: str | None = None,
    ):
        self.response_code = response_code
        self.response_body = response_body
        super().__init__(message)
