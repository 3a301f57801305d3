"""
Fulfillment Service — 取引集約 (Transaction Aggregate)

1 件の「買い手・売り手・商品」の合意を表す。
状態遷移のルールと不変条件はこのクラスに集める。

状態遷移:
    PENDING → COMPLETED  (売り手または管理者が完了、在庫確定)
    PENDING → CANCELLED  (買い手・売り手・管理者がキャンセル、在庫解放)

COMPLETED / CANCELLED は終端状態で、以降どの遷移も許可しない。
"""

from datetime import datetime

from .clock import isoformat
from .errors import Forbidden, IllegalTransition
from .users import UserSnapshot, is_admin

PENDING = "pending"
COMPLETED = "completed"
CANCELLED = "cancelled"

TERMINAL_STATES = frozenset({COMPLETED, CANCELLED})


class TransactionAggregate:
    def __init__(
        self,
        id: str,
        buyer_id: str,
        seller_id: str,
        product_id: str,
        quantity: int,
        price_per_unit: int,
        status: str = PENDING,
        created_at: str | None = None,
        completed_at: str | None = None,
        cancelled_at: str | None = None,
        cancellation_reason: str | None = None,
        payment_method: str | None = None,
        payment_reference: str | None = None,
    ) -> None:
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        if price_per_unit < 0:
            raise ValueError("price_per_unit must not be negative")
        self.id = id
        self.buyer_id = buyer_id
        self.seller_id = seller_id
        self.product_id = product_id
        self.quantity = quantity
        self.price_per_unit = price_per_unit
        self.status = status
        self.created_at = created_at
        self.completed_at = completed_at
        self.cancelled_at = cancelled_at
        self.cancellation_reason = cancellation_reason
        self.payment_method = payment_method
        self.payment_reference = payment_reference

    @property
    def total_amount(self) -> int:
        # 保存値ではなく常に quantity × price_per_unit から導出する
        return self.quantity * self.price_per_unit

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    # ── 遷移の可否 ─────────────────────────────────

    def can_be_completed(self) -> bool:
        return self.status == PENDING

    def can_be_cancelled(self) -> bool:
        return self.status == PENDING

    def ensure_can_transition(self, target: str) -> None:
        allowed = {
            COMPLETED: self.can_be_completed,
            CANCELLED: self.can_be_cancelled,
        }.get(target)
        if allowed is None or not allowed():
            raise IllegalTransition(self.id, self.status, target)

    def ensure_may_complete(self, actor: UserSnapshot) -> None:
        """完了できるのは売り手か管理者だけ"""
        if not (is_admin(actor) or actor.id == self.seller_id):
            raise Forbidden(f"User {actor.id} may not complete transaction {self.id}")

    def ensure_may_cancel(self, actor: UserSnapshot) -> None:
        """キャンセルは買い手・売り手・管理者"""
        if not (is_admin(actor) or actor.id in (self.buyer_id, self.seller_id)):
            raise Forbidden(f"User {actor.id} may not cancel transaction {self.id}")

    def is_visible_to(self, user: UserSnapshot) -> bool:
        return is_admin(user) or user.id in (self.buyer_id, self.seller_id)

    # ── 状態変更 ───────────────────────────────────

    def apply_completed(self, now: datetime) -> None:
        self.ensure_can_transition(COMPLETED)
        self.status = COMPLETED
        self.completed_at = isoformat(now)

    def apply_cancelled(self, now: datetime, reason: str | None) -> None:
        self.ensure_can_transition(CANCELLED)
        self.status = CANCELLED
        self.cancelled_at = isoformat(now)
        self.cancellation_reason = reason

    @classmethod
    def from_row(cls, row) -> "TransactionAggregate":
        return cls(
            id=row.id,
            buyer_id=row.buyer_id,
            seller_id=row.seller_id,
            product_id=row.product_id,
            quantity=row.quantity,
            price_per_unit=row.price_per_unit,
            status=row.status,
            created_at=row.created_at,
            completed_at=row.completed_at,
            cancelled_at=row.cancelled_at,
            cancellation_reason=row.cancellation_reason,
            payment_method=row.payment_method,
            payment_reference=row.payment_reference,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "price_per_unit": self.price_per_unit,
            "total_amount": self.total_amount,
            "status": self.status,
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "cancellation_reason": self.cancellation_reason,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "cancelled_at": self.cancelled_at,
        }
