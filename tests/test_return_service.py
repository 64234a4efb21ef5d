from decimal import Decimal

import pytest

from app.core.exceptions import (
    AmountExceedsRefundable,
    ConflictingUpdate,
    Forbidden,
    IllegalTransition,
    InvalidAmount,
    InvalidReturnRequest,
    MissingTaxInfo,
    NotEligible,
)
from app.core.permissions import Actor, ActorRole
from app.database import Base, async_session_factory
from app.services.events import ReturnStatusChanged, dispatcher
from app.services.pickup_otp_service import PickupOtpService
from app.services.return_repository import ReturnRepository
from app.services.return_service import ReturnService
from app.services.return_state_machine import ReturnStateMachine, ReturnStatus
from app.services.tax_allocator import MISSING_TAX_INFO
from tests.conftest import agent_payload, create_order, return_lines


async def received_return(db, order, customer, staff, agent, lines=None):
    """Walk a return through pickup to received."""
    service = ReturnService(db)
    return_request = await service.create_return(customer, order.id, lines or return_lines(order))
    rid = return_request.return_id
    await service.transition(rid, ReturnStatus.APPROVED, staff)
    outcome = await service.transition(
        rid, ReturnStatus.PICKUP_ASSIGNED, staff, assigned_pickup_agent=agent_payload(agent)
    )
    await PickupOtpService(db).verify(rid, outcome.issued_code.code, agent)
    await service.transition(rid, ReturnStatus.PICKED_UP, agent)
    outcome = await service.transition(rid, ReturnStatus.RECEIVED, staff)
    return outcome.return_request


# ==================== Create ====================

async def test_create_return_copies_order_lines(db, customer):
    order = await create_order(db)
    return_request = await ReturnService(db).create_return(customer, order.id, return_lines(order))

    assert return_request.return_id.startswith("RET")
    assert len(return_request.return_id) == 15
    assert return_request.status == ReturnStatus.REQUESTED
    assert return_request.version == 1
    item = return_request.items[0]
    assert item.price == Decimal("118.00")
    assert item.tax_percentage == Decimal("18.00")
    assert item.return_status == "pending"
    assert [h.status for h in return_request.status_history] == [ReturnStatus.REQUESTED]


async def test_create_return_outside_window(db, customer):
    order = await create_order(db, delivered_days_ago=8)
    with pytest.raises(NotEligible):
        await ReturnService(db).create_return(customer, order.id, return_lines(order))


async def test_create_return_for_undelivered_order(db, customer):
    order = await create_order(db, status="SHIPPED", delivered_days_ago=None)
    with pytest.raises(NotEligible):
        await ReturnService(db).create_return(customer, order.id, return_lines(order))


async def test_create_return_for_someone_elses_order(db, agent):
    order = await create_order(db)
    stranger = Actor("1b9d6bcd-bbfd-4b2d-9b5d-ab8dfbbd4bed", ActorRole.CUSTOMER)
    with pytest.raises(Forbidden):
        await ReturnService(db).create_return(stranger, order.id, return_lines(order))
    with pytest.raises(Forbidden):
        await ReturnService(db).create_return(agent, order.id, return_lines(order))


async def test_create_return_quantity_bounds(db, customer):
    order = await create_order(db, lines=(("Mug", "100", 2, "12", True),))
    with pytest.raises(InvalidReturnRequest):
        await ReturnService(db).create_return(customer, order.id, return_lines(order, quantity=3))


async def test_order_item_can_only_be_in_one_open_return(db, customer, staff):
    order = await create_order(db)
    service = ReturnService(db)
    first = await service.create_return(customer, order.id, return_lines(order))

    with pytest.raises(InvalidReturnRequest):
        await service.create_return(customer, order.id, return_lines(order))

    await service.transition(first.return_id, ReturnStatus.REJECTED, staff, note="Outside policy")
    second = await service.create_return(customer, order.id, return_lines(order))
    assert second.return_id != first.return_id


# ==================== Refunds ====================

async def test_full_refund_uses_calculated_total(db, customer, staff, agent):
    order = await create_order(
        db,
        lines=(("Kettle", "200", 1, "18", True), ("Mixer", "800", 1, "18", True)),
        discount="100",
    )
    kettle = [line for line in return_lines(order) if order.items[0].id == line["order_item_id"]]
    return_request = await received_return(db, order, customer, staff, agent, lines=kettle)

    outcome = await ReturnService(db).transition(return_request.return_id, ReturnStatus.REFUNDED, staff)

    refunded = outcome.return_request
    assert refunded.status == ReturnStatus.REFUNDED
    assert refunded.refunded_amount == Decimal("180")
    assert refunded.items[0].return_status == "refunded"
    assert refunded.items[0].refund_amount == Decimal("180.00")


async def test_full_refund_rejects_override(db, customer, staff, agent):
    order = await create_order(db)
    return_request = await received_return(db, order, customer, staff, agent)

    with pytest.raises(InvalidAmount):
        await ReturnService(db).transition(
            return_request.return_id, ReturnStatus.REFUNDED, staff, refunded_amount=Decimal("50")
        )


async def test_partial_refund_bounds(db, customer, staff, agent):
    order = await create_order(db)
    return_request = await received_return(db, order, customer, staff, agent)
    service = ReturnService(db)

    with pytest.raises(AmountExceedsRefundable):
        await service.transition(
            return_request.return_id, ReturnStatus.PARTIALLY_REFUNDED, staff, refunded_amount=Decimal("119")
        )

    outcome = await service.transition(
        return_request.return_id, ReturnStatus.PARTIALLY_REFUNDED, staff, refunded_amount=Decimal("118")
    )
    assert outcome.return_request.refunded_amount == Decimal("118")

    # Partially refunded is final
    with pytest.raises(IllegalTransition):
        await service.transition(return_request.return_id, ReturnStatus.REFUNDED, staff)


async def test_manual_refund_per_line(db, customer, staff, agent):
    order = await create_order(db, lines=(("Kettle", "200", 1, "18", True), ("Mug", "100", 1, "12", True)))
    return_request = await received_return(db, order, customer, staff, agent)
    kettle = return_request.items[0]

    outcome = await ReturnService(db).process_refund(
        return_request.return_id,
        staff,
        items=[{"item_id": str(kettle.id), "refund_amount": "150"}],
        refund_method="upi",
        note="Box damaged",
    )

    refunded = outcome.return_request
    assert refunded.status == ReturnStatus.PARTIALLY_REFUNDED
    assert refunded.refunded_amount == Decimal("150")
    assert refunded.refund_method == "upi"
    assert refunded.items[0].refund_amount == Decimal("150.00")
    assert refunded.items[1].return_status == "pending"


async def test_manual_refund_line_cap(db, customer, staff, agent):
    order = await create_order(db, lines=(("Kettle", "200", 1, "18", True), ("Mug", "100", 1, "12", True)))
    return_request = await received_return(db, order, customer, staff, agent)
    mug = return_request.items[1]

    with pytest.raises(AmountExceedsRefundable):
        await ReturnService(db).process_refund(
            return_request.return_id,
            staff,
            items=[{"item_id": str(mug.id), "refund_amount": "101"}],
            refund_method="bank",
        )


async def test_manual_refund_requires_whole_rupee_total(db, customer, staff, agent):
    order = await create_order(db)
    return_request = await received_return(db, order, customer, staff, agent)

    with pytest.raises(InvalidAmount):
        await ReturnService(db).process_refund(
            return_request.return_id,
            staff,
            items=[{"item_id": str(return_request.items[0].id), "refund_amount": "50.50"}],
            refund_method="upi",
        )


async def test_missing_tax_blocks_refund_unless_acknowledged(db, customer, staff, agent):
    order = await create_order(db, lines=(("Handmade Basket", "300", 1, None, True),))
    return_request = await received_return(db, order, customer, staff, agent)
    service = ReturnService(db)

    with pytest.raises(MissingTaxInfo):
        await service.refund_summary(return_request.return_id, staff)

    summary = await service.refund_summary(return_request.return_id, staff, allow_missing_tax=True)
    assert MISSING_TAX_INFO in summary.warnings
    assert summary.total_refund == Decimal("300")


# ==================== Events ====================

async def test_status_change_is_published_after_commit(db, customer, staff):
    received = []
    dispatcher.subscribe(ReturnStatusChanged, received.append)

    order = await create_order(db)
    service = ReturnService(db)
    return_request = await service.create_return(customer, order.id, return_lines(order))
    await service.transition(return_request.return_id, ReturnStatus.APPROVED, staff)

    assert [(e.from_status, e.to_status) for e in received] == [
        (None, ReturnStatus.REQUESTED),
        (ReturnStatus.REQUESTED, ReturnStatus.APPROVED),
    ]
    assert received[-1].actor_role == "staff_admin"


async def test_failing_subscriber_does_not_fail_transition(db, customer, staff):
    async def broken(event):
        raise RuntimeError("reporting is down")

    dispatcher.subscribe(ReturnStatusChanged, broken)

    order = await create_order(db)
    service = ReturnService(db)
    return_request = await service.create_return(customer, order.id, return_lines(order))
    outcome = await service.transition(return_request.return_id, ReturnStatus.APPROVED, staff)

    assert outcome.return_request.status == ReturnStatus.APPROVED


async def test_unsubscribed_handler_stops_receiving(db, customer, staff):
    received = []
    dispatcher.subscribe(ReturnStatusChanged, received.append)

    order = await create_order(db)
    service = ReturnService(db)
    return_request = await service.create_return(customer, order.id, return_lines(order))
    dispatcher.unsubscribe(ReturnStatusChanged, received.append)
    await service.transition(return_request.return_id, ReturnStatus.APPROVED, staff)

    assert len(received) == 1
    assert received[0].to_status == ReturnStatus.REQUESTED


# ==================== Concurrency ====================

async def test_concurrent_transitions_with_same_version(db, customer, staff, manager):
    order = await create_order(db)
    return_request = await ReturnService(db).create_return(customer, order.id, return_lines(order))
    rid = return_request.return_id

    async with async_session_factory() as first, async_session_factory() as second:
        approved = await ReturnService(first).transition(rid, ReturnStatus.APPROVED, staff, expected_version=1)
        assert approved.return_request.version == 2

        with pytest.raises(ConflictingUpdate):
            await ReturnService(second).transition(rid, ReturnStatus.REJECTED, manager, expected_version=1)

    reloaded = await ReturnRepository(db).get(rid, for_update=True)
    assert reloaded.status == ReturnStatus.APPROVED
    assert len(reloaded.status_history) == 2


async def test_stale_write_is_a_conflict(db, customer, staff, manager):
    order = await create_order(db)
    return_request = await ReturnService(db).create_return(customer, order.id, return_lines(order))
    rid = return_request.return_id
    machine = ReturnStateMachine()

    async with async_session_factory() as first, async_session_factory() as second:
        repo_a, repo_b = ReturnRepository(first), ReturnRepository(second)
        loaded_a = await repo_a.get(rid)
        loaded_b = await repo_b.get(rid)

        machine.transition(loaded_a, ReturnStatus.APPROVED, staff)
        machine.transition(loaded_b, ReturnStatus.REJECTED, manager)

        await repo_a.commit()
        with pytest.raises(ConflictingUpdate):
            await repo_b.commit()

    reloaded = await ReturnRepository(db).get(rid, for_update=True)
    assert reloaded.status == ReturnStatus.APPROVED
    assert [h.status for h in reloaded.status_history] == [ReturnStatus.REQUESTED, ReturnStatus.APPROVED]


# ==================== Mapping ====================

def test_relationships_use_supported_loader_strategies():
    for mapper in Base.registry.mappers:
        for rel in mapper.relationships:
            assert rel.lazy != "noload", f"{mapper.class_.__name__}.{rel.key}"
