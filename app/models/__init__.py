# Models module
from app.models.order import Order, OrderItem, OrderStatus
from app.models.return_request import ReturnRequest, ReturnItem, ReturnStatusHistory

__all__ = [
    "Order",
    "OrderItem",
    "OrderStatus",
    "ReturnRequest",
    "ReturnItem",
    "ReturnStatusHistory",
]
