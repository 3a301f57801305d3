"""
Fulfillment Service — イベント定義

取引の状態遷移で発生した事実。Webhook の data と Redis への発行に使う。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from pydantic import BaseModel, ConfigDict


class TransactionSnapshot(BaseModel):
    """遷移確定後の取引の写し（Envelope Builder の入力）"""
    model_config = ConfigDict(frozen=True)

    id: str
    buyer_id: str
    seller_id: str
    product_id: str
    quantity: int
    price_per_unit: int
    total_amount: int
    status: str
    payment_method: str | None = None
    payment_reference: str | None = None
    cancellation_reason: str | None = None
    created_at: str | None = None
    completed_at: str | None = None
    cancelled_at: str | None = None


class TransactionCreated(BaseModel):
    """取引が作成された（在庫は引き当て済み）"""
    transaction_id: str
    buyer_id: str
    seller_id: str
    product_id: str
    product_name: str
    unit: str
    quantity: int
    price_per_unit: int
    total_amount: int
    created_at: str | None


class TransactionCompleted(BaseModel):
    """取引が完了した（在庫確定）"""
    transaction_id: str
    buyer_id: str
    seller_id: str
    product_id: str
    product_name: str
    unit: str
    quantity: int
    total_amount: int
    remaining_quantity: int
    completed_at: str | None


class TransactionCancelled(BaseModel):
    """取引がキャンセルされた（在庫解放）"""
    transaction_id: str
    buyer_id: str
    seller_id: str
    product_id: str
    product_name: str
    unit: str
    quantity: int
    total_amount: int
    reason: str | None
    cancelled_at: str | None
