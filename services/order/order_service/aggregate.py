"""
Order Service — 注文集約 (台帳のリプレイ)

orders テーブルが正だが、台帳をリプレイすれば同じ状態を再構築できる。
リプレイ結果と行を突き合わせれば、在庫減算が一度だけ行われたかを監査できる。

状態遷移:
    PENDING → PAID       (決済確定 + 在庫減算)
    PENDING → FAILED     (セッション作成失敗・拒否・期限切れ)
    PENDING → CANCELLED  (管理者による取消)
    FAILED / CANCELLED → PAID  (遅延決済)
"""


class OrderAggregate:
    def __init__(self) -> None:
        self.id: str | None = None
        self.order_number: str = ""
        self.total_amount: int = 0
        self.status: str = "UNKNOWN"
        self.stock_applied: bool = False
        self.stock_decrements: int = 0
        self.deleted: bool = False
        self.version: int = 0

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_created(self, data: dict) -> None:
        self.id = data["order_id"]
        self.order_number = data["order_number"]
        self.total_amount = data["total_amount"]
        self.status = "PENDING"

    def apply_order_paid(self, _data: dict) -> None:
        self.status = "PAID"

    def apply_order_failed(self, _data: dict) -> None:
        self.status = "FAILED"

    def apply_order_cancelled(self, _data: dict) -> None:
        self.status = "CANCELLED"

    def apply_stock_decremented(self, _data: dict) -> None:
        self.stock_applied = True
        self.stock_decrements += 1

    def apply_order_deleted(self, _data: dict) -> None:
        self.deleted = True

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        """イベントタイプに応じた apply メソッドを呼び出す。"""
        handler = {
            "OrderCreated": self.apply_order_created,
            "OrderPaid": self.apply_order_paid,
            "OrderFailed": self.apply_order_failed,
            "OrderCancelled": self.apply_order_cancelled,
            "StockDecremented": self.apply_stock_decremented,
            "OrderDeleted": self.apply_order_deleted,
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

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "total_amount": self.total_amount,
            "status": self.status,
            "stock_applied": self.stock_applied,
            "stock_decrements": self.stock_decrements,
            "deleted": self.deleted,
            "version": self.version,
        }
