"""
Persistence access for return requests.

Loads are row-locked (``SELECT ... FOR UPDATE`` on PostgreSQL) and every
write goes through the ``version`` column, so two writers on the same
return cannot both succeed.
"""
import logging
import secrets
import string
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import ConflictingUpdate, NotFound
from app.db_types import utcnow
from app.models.order import Order
from app.models.return_request import ReturnItem, ReturnRequest


logger = logging.getLogger(__name__)

RETURN_ID_PREFIX = "RET"
_ID_ALPHABET = string.ascii_uppercase + string.digits


def generate_return_id(now: Optional[datetime] = None) -> str:
    """Generate a return number: RET + YYMMDD + 6 random alphanumerics."""
    now = now or utcnow()
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"{RETURN_ID_PREFIX}{now.strftime('%y%m%d')}{suffix}"


class ReturnRepository:
    """Load, list and persist ReturnRequest aggregates."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, return_id: str, for_update: bool = False) -> ReturnRequest:
        """
        Load a return by its return number (or UUID).

        With ``for_update`` the row is locked until the transaction ends and
        any copy already in the session identity map is refreshed.
        """
        stmt = select(ReturnRequest)
        try:
            stmt = stmt.where(ReturnRequest.id == uuid.UUID(str(return_id)))
        except ValueError:
            stmt = stmt.where(ReturnRequest.return_id == return_id)

        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)

        result = await self.db.execute(stmt)
        return_request = result.scalar_one_or_none()
        if return_request is None:
            raise NotFound(f"Return {return_id} not found")
        return return_request

    async def get_order(self, order_id: uuid.UUID) -> Order:
        result = await self.db.execute(select(Order).where(Order.id == order_id))
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    async def claimed_order_item_ids(self, order_id: uuid.UUID) -> set:
        """Order lines already part of a return that has not been rejected."""
        result = await self.db.execute(
            select(ReturnItem.order_item_id)
            .join(ReturnRequest, ReturnItem.return_request_id == ReturnRequest.id)
            .where(
                ReturnRequest.order_id == order_id,
                ReturnRequest.status != "rejected",
                ReturnItem.order_item_id.is_not(None),
            )
        )
        return set(result.scalars().all())

    async def list(
        self,
        status: Optional[str] = None,
        assigned_agent_id: Optional[str] = None,
        order_id: Optional[uuid.UUID] = None,
        customer_id: Optional[uuid.UUID] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[ReturnRequest], int]:
        """Filtered page of returns, newest first, with the total match count."""
        query = select(ReturnRequest)
        count_query = select(func.count(ReturnRequest.id))

        conditions = []
        if status:
            conditions.append(ReturnRequest.status == status)
        if assigned_agent_id:
            conditions.append(ReturnRequest.assigned_agent_id == assigned_agent_id)
        if order_id:
            conditions.append(ReturnRequest.order_id == order_id)
        if customer_id:
            conditions.append(ReturnRequest.customer_id == customer_id)

        if conditions:
            query = query.where(*conditions)
            count_query = count_query.where(*conditions)

        total = (await self.db.execute(count_query)).scalar() or 0

        query = query.order_by(ReturnRequest.created_at.desc()).offset(skip).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def stats(self) -> Dict[str, int]:
        """Count of returns per status."""
        result = await self.db.execute(
            select(ReturnRequest.status, func.count(ReturnRequest.id))
            .group_by(ReturnRequest.status)
        )
        return {status: count for status, count in result.all()}

    def add(self, return_request: ReturnRequest) -> None:
        self.db.add(return_request)

    async def commit(self) -> None:
        """
        Commit the unit of work.

        A stale version (another writer committed first) becomes
        ConflictingUpdate and the session is rolled back.
        """
        try:
            await self.db.commit()
        except StaleDataError as e:
            await self.db.rollback()
            logger.warning(f"Concurrent update detected on return: {e}")
            raise ConflictingUpdate(
                "Return was modified by another request. Reload and retry."
            ) from e
        except IntegrityError as e:
            await self.db.rollback()
            # A concurrent writer already appended this history sequence
            if "return_status_history" in str(e.orig):
                raise ConflictingUpdate(
                    "Return was modified by another request. Reload and retry."
                ) from e
            raise
