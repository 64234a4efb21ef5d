"""
In-process domain events for the returns flow.

Events are published after the transaction that caused them has committed.
Subscribers (notifications, dashboards, ledger sync) must not be able to
fail the request that produced the event.
"""
import dataclasses
import inspect
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Type, Union

from app.database import CustomJSONEncoder
from app.db_types import utcnow

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ReturnStatusChanged:
    return_id: str
    order_id: str
    from_status: Optional[str]
    to_status: str
    actor_id: str
    actor_role: str
    refunded_amount: Optional[Decimal] = None
    occurred_at: datetime = dataclasses.field(default_factory=utcnow)


Subscriber = Callable[[object], Union[None, Awaitable[None]]]


class EventDispatcher:
    def __init__(self):
        self._subscribers: Dict[Type, List[Subscriber]] = {}

    def subscribe(self, event_type: Type, handler: Subscriber) -> None:
        self._subscribers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: Type, handler: Subscriber) -> None:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def clear(self) -> None:
        self._subscribers.clear()

    async def dispatch(self, event) -> int:
        """Deliver ``event`` to every subscriber of its type; returns how many succeeded."""
        logger.info(
            f"Dispatching {type(event).__name__}: "
            f"{json.dumps(dataclasses.asdict(event), cls=CustomJSONEncoder)}"
        )
        delivered = 0
        for handler in list(self._subscribers.get(type(event), [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                logger.exception(
                    f"Subscriber {getattr(handler, '__name__', handler)!r} failed "
                    f"handling {type(event).__name__}"
                )
        return delivered


dispatcher = EventDispatcher()
