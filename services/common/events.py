"""
Common: イベント定義

Order Service が発行し、各コンシューマが購読するイベント。
イベントは過去形で命名し、不変(immutable)として扱う。

メッセージ本文は JSON で、イベントの全フィールドに加えて
event_type 判別子を含む。金額は JSON の数値。event_id は再配送されても変わらないため、
コンシューマ側の重複排除キーとして使える。
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated
from uuid import uuid4

import pydantic
from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

from .errors import ParseError

ORDER_CREATED = "OrderCreated"

# 金額。内部では Decimal で持ち、JSON では数値として出す。
# 1件の金額は NUMERIC(12,2) に収まるので float でも桁は落ちない。
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class OrderCreatedEvent(BaseModel):
    """注文が作成された (作成時点のスナップショット)"""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str = ORDER_CREATED
    order_id: str
    customer_id: str
    product_id: str
    quantity: int
    total_amount: Money
    status: str
    created_at: datetime


def encode_event(event: OrderCreatedEvent) -> bytes:
    return event.model_dump_json().encode("utf-8")


def decode_event(body: bytes) -> OrderCreatedEvent:
    """
    メッセージ本文をイベントに復元する。

    JSON として壊れている場合、必須フィールドが欠けている場合、
    未知の event_type の場合はすべて ParseError になる。
    """
    try:
        event = OrderCreatedEvent.model_validate_json(body)
    except pydantic.ValidationError as exc:
        raise ParseError(f"malformed event body: {exc.error_count()} error(s)") from exc
    if event.event_type != ORDER_CREATED:
        raise ParseError(f"unsupported event_type: {event.event_type!r}")
    return event
