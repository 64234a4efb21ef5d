# Services module
from app.services.tax_allocator import TaxAllocator
from app.services.refund_calculator import RefundCalculator
from app.services.return_state_machine import ReturnStateMachine, ReturnStatus
from app.services.return_repository import ReturnRepository
from app.services.pickup_otp_service import PickupOtpService
from app.services.return_service import ReturnService

__all__ = [
    "TaxAllocator",
    "RefundCalculator",
    "ReturnStateMachine",
    "ReturnStatus",
    "ReturnRepository",
    "PickupOtpService",
    "ReturnService",
]
