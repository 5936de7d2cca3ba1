"""
Order Service — 注文集約 (Order Aggregate)

Event Sourcing では集約の状態を直接保存しない。
イベントをリプレイして現在の状態を復元する。

apply_xxx メソッド: 各イベントを適用して状態を変更する
"""

from services.shared.identity import OrderIdentifier

INTAKE = "INTAKE"
CONFIRMED = "CONFIRMED"
CANCELLED = "CANCELLED"


class InvalidTransition(Exception):
    """許可されていない状態遷移"""

    def __init__(self, order_id: str, current: str, requested: str) -> None:
        super().__init__(f"order {order_id}: cannot move from {current} to {requested}")
        self.order_id = order_id
        self.current = current
        self.requested = requested


class OrderAggregate:
    """
    注文集約 — イベントから現在の状態を再構築する。

    状態遷移:
        INTAKE    → CONFIRMED  (スタッフが電話で確認 → Purchase)
        INTAKE    → CANCELLED  (補償 → Refund)
        CONFIRMED → CANCELLED  (配達前キャンセル → Refund)
    """

    def __init__(self) -> None:
        self.id: OrderIdentifier | None = None
        self.order_type: str = "buy"
        self.customer_name: str = ""
        self.phone: str = ""
        self.address: str = ""
        self.city: str = ""
        self.delivery_zone: str = ""
        self.product_name: str = ""
        self.color: str = ""
        self.quantity: int = 0
        self.total_price: float = 0
        self.client_ip: str = ""
        self.user_agent: str = ""
        self.fbp: str = ""
        self.fbc: str = ""
        self.status: str = "UNKNOWN"
        self.cancel_reason: str = ""
        self.version: int = 0

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_created(self, data: dict) -> None:
        self.id = OrderIdentifier(data["order_id"])
        self.order_type = data["order_type"]
        self.customer_name = data["customer_name"]
        self.phone = data["phone"]
        self.address = data.get("address", "")
        self.city = data.get("city", "")
        self.delivery_zone = data.get("delivery_zone", "")
        self.product_name = data["product_name"]
        self.color = data.get("color", "")
        self.quantity = data["quantity"]
        self.total_price = data["total_price"]
        self.client_ip = data.get("client_ip", "")
        self.user_agent = data.get("user_agent", "")
        self.fbp = data.get("fbp", "")
        self.fbc = data.get("fbc", "")
        self.status = INTAKE

    def apply_order_confirmed(self, _data: dict) -> None:
        self.status = CONFIRMED

    def apply_order_cancelled(self, data: dict) -> None:
        self.status = CANCELLED
        self.cancel_reason = data.get("reason", "")

    # ── 遷移チェック ─────────────────────────────────

    def can_transition_to(self, target: str) -> bool:
        """
        target へ遷移できるかを返す。

        現在と同じ状態への遷移は False(何もしない = 冪等)。
        遷移として不正な場合は InvalidTransition を送出する。
        """
        if self.status == target:
            return False
        allowed = {
            INTAKE: {CONFIRMED, CANCELLED},
            CONFIRMED: {CANCELLED},
        }.get(self.status, set())
        if target not in allowed:
            raise InvalidTransition(str(self.id), self.status, target)
        return True

    def to_snapshot(self) -> dict:
        """Conversions Service へ渡す注文スナップショット"""
        return {
            "order_id": self.id,
            "order_type": self.order_type,
            "customer_name": self.customer_name,
            "phone": self.phone,
            "city": self.city,
            "product_name": self.product_name,
            "color": self.color,
            "quantity": self.quantity,
            "total_price": self.total_price,
            "client_ip": self.client_ip,
            "user_agent": self.user_agent,
            "fbp": self.fbp,
            "fbc": self.fbc,
            "status": self.status,
        }

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        """イベントタイプに応じた apply メソッドを呼び出す。"""
        handler = {
            "OrderCreated": self.apply_order_created,
            "OrderConfirmed": self.apply_order_confirmed,
            "OrderCancelled": self.apply_order_cancelled,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        """イベント列から集約を再構築する。"""
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg
