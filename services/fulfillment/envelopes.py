"""
Fulfillment Service — 副作用エンベロープ生成 (Envelope Builder)

状態遷移 1 回分について「誰に何を届けるか」を組み立てる純粋関数。
I/O・乱数・時計の読み取りは一切しない。同じ入力なら常に同じ
エンベロープ集合を返す。

    created / completed / cancelled
        買い手: 通知 1 + SMS 1
        売り手: 通知 1 + SMS 1
    completed のみ
        total_amount >= 閾値     → 管理者ごとに通知 1
        残数 <= 初期数量の 10%   → 売り手に在庫アラート 1

SMS は電話番号があり受信を拒否していないユーザーにだけ作る。
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from .catalog import ProductSnapshot
from .config import EnvelopePolicy
from .events import (
    TransactionCancelled,
    TransactionCompleted,
    TransactionCreated,
    TransactionSnapshot,
)
from .users import UserSnapshot

CREATED = "created"
COMPLETED = "completed"
CANCELLED = "cancelled"

WEBHOOK_EVENTS = {
    CREATED: "transaction.created",
    COMPLETED: "transaction.completed",
    CANCELLED: "transaction.cancelled",
}

KIND_LARGE_TRANSACTION = "large_transaction"
KIND_STOCK_ALERT = "stock_alert"


class NotificationEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    recipient_user_id: str
    kind: str
    title: str
    body: str
    context_data: dict


class SmsEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    recipient_user_id: str
    phone: str
    text: str


class EnvelopeSet(BaseModel):
    transition: str
    transaction_id: str
    notifications: list[NotificationEnvelope]
    sms: list[SmsEnvelope]
    webhook_event: str
    webhook_data: dict
    webhook_owner_ids: list[str]


class TransitionContext(BaseModel):
    """遷移確定後のスナップショット一式"""

    transaction: TransactionSnapshot
    product: ProductSnapshot
    buyer: UserSnapshot
    seller: UserSnapshot
    admins: list[UserSnapshot] = []


def format_amount(amount: int, policy: EnvelopePolicy) -> str:
    """最小通貨単位の整数を表示用文字列にする"""
    exponent = policy.currency_exponent
    if exponent > 0:
        value = Decimal(amount).scaleb(-exponent)
        return f"{value:.{exponent}f} {policy.currency}"
    return f"{amount} {policy.currency}"


def _messages(ctx: TransitionContext, transition: str, amount: str) -> dict:
    tx = ctx.transaction
    item = f"{tx.quantity} {ctx.product.unit} of {ctx.product.name}"
    reason = f" Reason: {tx.cancellation_reason}" if tx.cancellation_reason else ""
    return {
        CREATED: {
            "buyer": ("New order placed", f"Your order of {item} for {amount} has been placed."),
            "seller": ("New order received", f"You received an order of {item} for {amount}."),
        },
        COMPLETED: {
            "buyer": ("Purchase confirmed", f"Your purchase of {item} for {amount} has been completed."),
            "seller": ("Sale confirmed", f"Your sale of {item} for {amount} has been completed."),
        },
        CANCELLED: {
            "buyer": ("Order cancelled", f"Your order of {item} has been cancelled.{reason}"),
            "seller": ("Sale cancelled", f"The sale of {item} has been cancelled.{reason}"),
        },
    }[transition]


def _webhook_data(ctx: TransitionContext, transition: str) -> dict:
    tx = ctx.transaction
    common = {
        "transaction_id": tx.id,
        "buyer_id": tx.buyer_id,
        "seller_id": tx.seller_id,
        "product_id": tx.product_id,
        "product_name": ctx.product.name,
        "unit": ctx.product.unit,
        "quantity": tx.quantity,
        "total_amount": tx.total_amount,
    }
    if transition == CREATED:
        event = TransactionCreated(
            **common, price_per_unit=tx.price_per_unit, created_at=tx.created_at
        )
    elif transition == COMPLETED:
        event = TransactionCompleted(
            **common,
            remaining_quantity=ctx.product.available_quantity,
            completed_at=tx.completed_at,
        )
    else:
        event = TransactionCancelled(
            **common, reason=tx.cancellation_reason, cancelled_at=tx.cancelled_at
        )
    return event.model_dump(mode="json")


def is_low_stock(product: ProductSnapshot, percent: int) -> bool:
    if product.initial_quantity <= 0:
        return False
    return product.available_quantity * 100 <= product.initial_quantity * percent


def build_envelopes(
    ctx: TransitionContext,
    transition: str,
    policy: EnvelopePolicy,
) -> EnvelopeSet:
    if transition not in WEBHOOK_EVENTS:
        raise ValueError(f"Unknown transition: {transition}")

    tx = ctx.transaction
    amount = format_amount(tx.total_amount, policy)
    messages = _messages(ctx, transition, amount)
    kind = f"transaction_{transition}"
    context_data = {
        "transaction_id": tx.id,
        "product_id": tx.product_id,
        "amount": tx.total_amount,
    }

    notifications: list[NotificationEnvelope] = []
    sms: list[SmsEnvelope] = []
    for role, user in (("buyer", ctx.buyer), ("seller", ctx.seller)):
        title, body = messages[role]
        notifications.append(
            NotificationEnvelope(
                recipient_user_id=user.id,
                kind=kind,
                title=title,
                body=body,
                context_data=context_data,
            )
        )
        if user.phone and user.sms_opt_in:
            sms.append(SmsEnvelope(recipient_user_id=user.id, phone=user.phone, text=body))

    if transition == COMPLETED:
        if tx.total_amount >= policy.large_transaction_threshold:
            for admin in ctx.admins:
                notifications.append(
                    NotificationEnvelope(
                        recipient_user_id=admin.id,
                        kind=KIND_LARGE_TRANSACTION,
                        title="Large transaction completed",
                        body=(
                            f"A transaction of {amount} has been completed "
                            f"({tx.quantity} {ctx.product.unit} of {ctx.product.name})."
                        ),
                        context_data={
                            "transaction_id": tx.id,
                            "amount": tx.total_amount,
                            "buyer": ctx.buyer.name,
                            "seller": ctx.seller.name,
                        },
                    )
                )
        if is_low_stock(ctx.product, policy.low_stock_percent):
            notifications.append(
                NotificationEnvelope(
                    recipient_user_id=ctx.seller.id,
                    kind=KIND_STOCK_ALERT,
                    title="Low stock",
                    body=(
                        f"Stock of {ctx.product.name} is low "
                        f"({ctx.product.available_quantity} {ctx.product.unit} remaining)."
                    ),
                    context_data={
                        "product_id": ctx.product.id,
                        "quantity": ctx.product.available_quantity,
                    },
                )
            )

    owner_ids: list[str] = []
    for user in (ctx.buyer, ctx.seller, *ctx.admins):
        if user.id not in owner_ids:
            owner_ids.append(user.id)

    return EnvelopeSet(
        transition=transition,
        transaction_id=tx.id,
        notifications=notifications,
        sms=sms,
        webhook_event=WEBHOOK_EVENTS[transition],
        webhook_data=_webhook_data(ctx, transition),
        webhook_owner_ids=owner_ids,
    )
