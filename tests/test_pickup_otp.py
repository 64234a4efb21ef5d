from datetime import timedelta

import pytest

from app.config import settings
from app.core.exceptions import (
    CodeExpired,
    CooldownActive,
    Forbidden,
    InvalidCode,
    NotEligible,
    PreconditionFailed,
)
from app.core.security import verify_pickup_code
from app.db_types import utcnow
from app.services.pickup_otp_service import PickupOtpService
from app.services.return_service import ReturnService
from app.services.return_state_machine import ReturnStatus
from tests.conftest import agent_payload, create_order, return_lines


async def assigned_return(db, customer, staff, agent):
    """A return in pickup_assigned with a freshly issued code."""
    order = await create_order(db)
    service = ReturnService(db)
    return_request = await service.create_return(customer, order.id, return_lines(order))
    await service.transition(return_request.return_id, ReturnStatus.APPROVED, staff)
    outcome = await service.transition(
        return_request.return_id,
        ReturnStatus.PICKUP_ASSIGNED,
        staff,
        assigned_pickup_agent=agent_payload(agent),
    )
    return outcome.return_request, outcome.issued_code


async def test_assignment_issues_code(db, customer, staff, agent):
    return_request, issued = await assigned_return(db, customer, staff, agent)

    assert issued is not None
    assert len(issued.code) == settings.OTP_LENGTH
    assert issued.code.isdigit()
    assert issued.attempts_remaining == settings.OTP_MAX_ATTEMPTS
    assert issued.phone == "9876543210"
    # Only the hash is stored
    assert return_request.pickup_otp_hash != issued.code
    assert verify_pickup_code(return_request.return_id, issued.code, return_request.pickup_otp_hash)


async def test_generate_requires_pickup_assigned(db, customer, staff):
    order = await create_order(db)
    return_request = await ReturnService(db).create_return(customer, order.id, return_lines(order))

    with pytest.raises(NotEligible):
        await PickupOtpService(db).generate(return_request.return_id, staff)


async def test_generate_is_limited_to_staff_and_assigned_agent(db, customer, staff, agent, other_agent):
    return_request, _ = await assigned_return(db, customer, staff, agent)
    otp = PickupOtpService(db)

    with pytest.raises(Forbidden):
        await otp.generate(return_request.return_id, other_agent)
    with pytest.raises(Forbidden):
        await otp.generate(return_request.return_id, customer)

    issued = await otp.generate(return_request.return_id, agent)
    assert issued.return_id == return_request.return_id


async def test_verify_succeeds_exactly_once(db, customer, staff, agent):
    return_request, issued = await assigned_return(db, customer, staff, agent)
    otp = PickupOtpService(db)

    verified = await otp.verify(return_request.return_id, issued.code, agent)
    assert verified.pickup_otp_verified_at is not None
    assert verified.pickup_otp_hash is None

    with pytest.raises(CodeExpired):
        await otp.verify(return_request.return_id, issued.code, agent)


async def test_wrong_code_decrements_attempts(db, customer, staff, agent):
    return_request, issued = await assigned_return(db, customer, staff, agent)
    otp = PickupOtpService(db)
    wrong = "0000" if issued.code != "0000" else "1111"

    with pytest.raises(InvalidCode):
        await otp.verify(return_request.return_id, wrong, agent)

    await db.refresh(return_request)
    assert return_request.pickup_otp_attempts_remaining == settings.OTP_MAX_ATTEMPTS - 1


async def test_attempts_exhausted_invalidates_code(db, customer, staff, agent):
    return_request, issued = await assigned_return(db, customer, staff, agent)
    otp = PickupOtpService(db)
    wrong = "0000" if issued.code != "0000" else "1111"

    for _ in range(settings.OTP_MAX_ATTEMPTS - 1):
        with pytest.raises(InvalidCode):
            await otp.verify(return_request.return_id, wrong, agent)

    # The last failed attempt invalidates the code
    with pytest.raises(CodeExpired):
        await otp.verify(return_request.return_id, wrong, agent)

    await db.refresh(return_request)
    assert return_request.pickup_otp_hash is None
    assert return_request.pickup_otp_attempts_remaining == 0

    # Even the right code is refused now
    with pytest.raises(CodeExpired):
        await otp.verify(return_request.return_id, issued.code, agent)

    await db.refresh(return_request)
    assert return_request.pickup_otp_hash is None


async def test_expired_code_is_refused(db, customer, staff, agent):
    return_request, issued = await assigned_return(db, customer, staff, agent)
    later = utcnow() + timedelta(minutes=settings.OTP_EXPIRY_MINUTES, seconds=1)

    with pytest.raises(CodeExpired):
        await PickupOtpService(db).verify(return_request.return_id, issued.code, agent, now=later)


async def test_resend_respects_cooldown(db, customer, staff, agent):
    return_request, first = await assigned_return(db, customer, staff, agent)
    otp = PickupOtpService(db)

    with pytest.raises(CooldownActive) as exc_info:
        await otp.resend(return_request.return_id, agent)
    assert 0 < exc_info.value.retry_after_seconds <= settings.OTP_RESEND_COOLDOWN_SECONDS

    later = utcnow() + timedelta(seconds=settings.OTP_RESEND_COOLDOWN_SECONDS + 1)
    second = await otp.resend(return_request.return_id, agent, now=later)
    assert second.resend_available_at == later + timedelta(seconds=settings.OTP_RESEND_COOLDOWN_SECONDS)

    # The cooldown window starts again from the resend
    with pytest.raises(CooldownActive):
        await otp.resend(return_request.return_id, agent, now=later + timedelta(seconds=1))


async def test_resend_replaces_previous_code(db, customer, staff, agent):
    return_request, first = await assigned_return(db, customer, staff, agent)
    otp = PickupOtpService(db)

    later = utcnow() + timedelta(seconds=settings.OTP_RESEND_COOLDOWN_SECONDS + 1)
    second = await otp.resend(return_request.return_id, agent, now=later)

    if first.code != second.code:
        assert not verify_pickup_code(return_request.return_id, first.code, return_request.pickup_otp_hash)
    assert verify_pickup_code(return_request.return_id, second.code, return_request.pickup_otp_hash)

    await otp.verify(return_request.return_id, second.code, agent, now=later)
    assert return_request.pickup_otp_verified_at is not None


async def test_picked_up_needs_verify_since_latest_issue(db, customer, staff, agent):
    return_request, issued = await assigned_return(db, customer, staff, agent)
    service = ReturnService(db)
    otp = PickupOtpService(db)

    await otp.verify(return_request.return_id, issued.code, agent)
    # A new code revokes the earlier verification
    later = utcnow() + timedelta(seconds=settings.OTP_RESEND_COOLDOWN_SECONDS + 1)
    await otp.resend(return_request.return_id, agent, now=later)

    with pytest.raises(PreconditionFailed):
        await service.transition(return_request.return_id, ReturnStatus.PICKED_UP, agent)
