"""
Pickup OTP Service

The customer reads a short code to the delivery agent at the door; the agent
enters it to prove the pickup happened in the customer's presence.

- Only a keyed hash of the code is stored
- Limited attempts, fixed expiry, resend cooldown
- The plaintext goes out by SMS after the transaction commits
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import (
    CodeExpired,
    CooldownActive,
    Forbidden,
    InvalidCode,
    NotEligible,
)
from app.core.permissions import Actor, PermissionChecker
from app.core.security import hash_pickup_code, verify_pickup_code
from app.db_types import ensure_aware, utcnow
from app.models.return_request import ReturnRequest
from app.services.return_repository import ReturnRepository
from app.services.return_state_machine import (
    ReturnStatus,
    clear_pickup_code,
    has_active_pickup_code,
    is_expired,
    resend_seconds_remaining,
)

logger = logging.getLogger(__name__)


def mask_phone(phone: Optional[str]) -> str:
    if not phone:
        return "<no phone>"
    return phone[-4:].rjust(10, '*')


@dataclass(frozen=True)
class IssuedPickupCode:
    """A freshly issued code. ``code`` is plaintext and must only be sent by SMS."""
    return_id: str
    code: str
    phone: Optional[str]
    expires_at: datetime
    resend_available_at: datetime
    attempts_remaining: int


class PickupOtpService:
    """
    Service for pickup OTP operations on a return.
    """

    def __init__(self, db: AsyncSession, repository: Optional[ReturnRepository] = None):
        self.db = db
        self.repository = repository or ReturnRepository(db)

    def _generate_code(self) -> str:
        """Generate a random numeric code."""
        return "".join(str(secrets.randbelow(10)) for _ in range(settings.OTP_LENGTH))

    def _check_actor(self, return_request: ReturnRequest, actor: Actor) -> None:
        if actor.is_staff:
            return
        if PermissionChecker(actor).is_assigned_agent(return_request):
            return
        raise Forbidden(
            f"{actor} may not handle the pickup code for return {return_request.return_id}"
        )

    def _check_eligible(self, return_request: ReturnRequest) -> None:
        if return_request.status != ReturnStatus.PICKUP_ASSIGNED:
            raise NotEligible(
                f"Pickup code is only available for returns in '{ReturnStatus.PICKUP_ASSIGNED}' "
                f"status, return {return_request.return_id} is '{return_request.status}'"
            )

    def issue(self, return_request: ReturnRequest, now: Optional[datetime] = None) -> IssuedPickupCode:
        """
        Replace any code on the return with a new one (in memory, caller commits).

        Also used by the state machine flow when a pickup agent is assigned.
        """
        now = now or utcnow()
        code = self._generate_code()

        return_request.pickup_otp_hash = hash_pickup_code(return_request.return_id, code)
        return_request.pickup_otp_issued_at = now
        return_request.pickup_otp_expires_at = now + timedelta(minutes=settings.OTP_EXPIRY_MINUTES)
        return_request.pickup_otp_attempts_remaining = settings.OTP_MAX_ATTEMPTS
        return_request.pickup_otp_resend_available_at = now + timedelta(
            seconds=settings.OTP_RESEND_COOLDOWN_SECONDS
        )
        return_request.pickup_otp_verified_at = None

        phone = return_request.order.customer_phone if return_request.order else None
        logger.info(
            f"Pickup OTP issued for return {return_request.return_id} "
            f"(phone {mask_phone(phone)})"
        )

        return IssuedPickupCode(
            return_id=return_request.return_id,
            code=code,
            phone=phone,
            expires_at=return_request.pickup_otp_expires_at,
            resend_available_at=return_request.pickup_otp_resend_available_at,
            attempts_remaining=return_request.pickup_otp_attempts_remaining,
        )

    async def generate(
        self,
        return_id: str,
        actor: Actor,
        now: Optional[datetime] = None,
    ) -> IssuedPickupCode:
        """
        Issue a new pickup code for a return in pickup_assigned status.

        Returns:
            The issued code (plaintext included, for SMS dispatch only)
        """
        return_request = await self.repository.get(return_id, for_update=True)
        self._check_actor(return_request, actor)
        self._check_eligible(return_request)

        issued = self.issue(return_request, now)
        await self.repository.commit()
        return issued

    async def resend(
        self,
        return_id: str,
        actor: Actor,
        now: Optional[datetime] = None,
    ) -> IssuedPickupCode:
        """
        Issue a replacement code once the resend cooldown has passed.

        Raises:
            CooldownActive: with the seconds left until a resend is allowed
        """
        now = now or utcnow()
        return_request = await self.repository.get(return_id, for_update=True)
        self._check_actor(return_request, actor)
        self._check_eligible(return_request)

        remaining = resend_seconds_remaining(return_request, now)
        if remaining > 0:
            raise CooldownActive(
                f"Please wait {remaining} seconds before requesting a new pickup code",
                retry_after_seconds=remaining,
            )

        issued = self.issue(return_request, now)
        await self.repository.commit()
        return issued

    async def verify(
        self,
        return_id: str,
        code: str,
        actor: Actor,
        now: Optional[datetime] = None,
    ) -> ReturnRequest:
        """
        Check a code entered by the pickup agent.

        A failed attempt is committed before the error is raised so the
        attempt counter cannot be reset by retrying the request.
        """
        now = now or utcnow()
        return_request = await self.repository.get(return_id, for_update=True)
        self._check_actor(return_request, actor)
        self._check_eligible(return_request)

        if not has_active_pickup_code(return_request):
            raise CodeExpired("No active pickup code. Please request a new one.")

        if is_expired(return_request, now):
            expired_at = ensure_aware(return_request.pickup_otp_expires_at)
            reason = "expired" if expired_at and now >= expired_at else "out of attempts"
            clear_pickup_code(return_request)
            await self.repository.commit()
            logger.warning(f"Pickup OTP {reason} for return {return_request.return_id}")
            raise CodeExpired("Pickup code has expired. Please request a new one.")

        if not verify_pickup_code(return_request.return_id, code, return_request.pickup_otp_hash):
            return_request.pickup_otp_attempts_remaining -= 1
            remaining = return_request.pickup_otp_attempts_remaining
            if remaining <= 0:
                clear_pickup_code(return_request)
                await self.repository.commit()
                logger.warning(f"Pickup OTP out of attempts for return {return_request.return_id}")
                raise CodeExpired("Too many invalid attempts. Please request a new pickup code.")
            await self.repository.commit()
            logger.warning(
                f"Invalid pickup OTP for return {return_request.return_id}, {remaining} attempts left"
            )
            raise InvalidCode(
                f"Invalid pickup code. {remaining} attempts remaining.",
                {"attempts_remaining": remaining},
            )

        return_request.pickup_otp_verified_at = now
        return_request.pickup_otp_hash = None
        await self.repository.commit()

        logger.info(f"Pickup OTP verified for return {return_request.return_id} by {actor}")
        return return_request


async def send_pickup_otp_sms(phone: Optional[str], otp: str) -> bool:
    """
    Send a pickup OTP via SMS using MSG91.

    Runs as a background task once the request transaction has committed.

    Returns:
        True if sent successfully, False otherwise
    """
    auth_key = settings.MSG91_AUTH_KEY
    template_id = settings.MSG91_TEMPLATE_ID_PICKUP_OTP

    if not phone:
        logger.error("No customer phone on order, pickup OTP SMS not sent")
        return False

    if not auth_key or not template_id:
        logger.warning("MSG91 not configured, pickup OTP SMS not sent")
        # In development, log the OTP
        logger.info(f"DEV MODE - Pickup OTP for {phone}: {otp}")
        return True

    # Format phone for MSG91 (add 91 if not present)
    formatted_phone = phone
    if not phone.startswith("91") and not phone.startswith("+91"):
        formatted_phone = f"91{phone}"
    formatted_phone = formatted_phone.replace("+", "")

    headers = {
        "authkey": auth_key,
        "Content-Type": "application/json"
    }
    payload = {
        "template_id": template_id,
        "sender": settings.MSG91_SENDER_ID,
        "short_url": "0",
        "recipients": [
            {
                "mobiles": formatted_phone,
                "otp": otp
            }
        ]
    }

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                settings.MSG91_API_URL,
                json=payload,
                headers=headers,
                timeout=settings.SMS_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            result = response.json()
    except httpx.HTTPError as e:
        logger.error(f"Failed to send pickup OTP SMS to {mask_phone(phone)}: {e}")
        return False

    if result.get("type") == "success":
        logger.info(f"Pickup OTP SMS sent to {mask_phone(phone)}")
        return True

    logger.error(f"MSG91 error: {result}")
    return False
