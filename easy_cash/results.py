"""
Operation Results

Every transfer-engine operation returns an OperationResult: either a
success carrying the ledger transaction id (or the created request id), or
a rejection carrying a machine-readable reason code. Business rejections are
values, not exceptions.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Any
from enum import Enum


class ErrorCategory(Enum):
    """Error taxonomy buckets"""
    VALIDATION = "validation"
    NOT_FOUND = "not-found"
    STATE_CONFLICT = "state-conflict"
    INSUFFICIENT_FUNDS = "insufficient-funds"
    CREDENTIAL_MISMATCH = "credential-mismatch"
    CONCURRENCY_CONFLICT = "concurrency-conflict"
    UNAUTHORIZED = "unauthorized"


class RejectionReason(Enum):
    """Machine-readable rejection codes and their category"""
    INVALID_AMOUNT = ("invalid-amount", ErrorCategory.VALIDATION)
    INVALID_PIN = ("invalid-pin", ErrorCategory.VALIDATION)
    AMOUNT_MISMATCH = ("amount-mismatch", ErrorCategory.VALIDATION)

    ACTOR_NOT_FOUND = ("actor-not-found", ErrorCategory.NOT_FOUND)
    INVALID_RECIPIENT = ("invalid-recipient", ErrorCategory.NOT_FOUND)
    REQUEST_NOT_FOUND = ("request-not-found", ErrorCategory.NOT_FOUND)

    RECIPIENT_NOT_USER = ("recipient-not-user", ErrorCategory.STATE_CONFLICT)
    RECIPIENT_INACTIVE = ("recipient-inactive", ErrorCategory.STATE_CONFLICT)
    SELF_TRANSFER = ("self-transfer", ErrorCategory.STATE_CONFLICT)
    INVALID_USER = ("invalid-user", ErrorCategory.STATE_CONFLICT)
    INVALID_AGENT = ("invalid-agent", ErrorCategory.STATE_CONFLICT)
    ACTOR_INACTIVE = ("actor-inactive", ErrorCategory.STATE_CONFLICT)
    STATE_CONFLICT = ("state-conflict", ErrorCategory.STATE_CONFLICT)

    INSUFFICIENT_BALANCE = ("insufficient-balance", ErrorCategory.INSUFFICIENT_FUNDS)

    PIN_MISMATCH = ("pin-mismatch", ErrorCategory.CREDENTIAL_MISMATCH)

    CONCURRENCY_CONFLICT = ("concurrency-conflict", ErrorCategory.CONCURRENCY_CONFLICT)

    UNAUTHORIZED = ("unauthorized", ErrorCategory.UNAUTHORIZED)
    FORBIDDEN_ROLE = ("forbidden-role", ErrorCategory.UNAUTHORIZED)

    def __init__(self, code: str, category: ErrorCategory):
        self.code = code
        self.category = category


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one engine operation"""
    success: bool
    trx_id: Optional[str] = None
    request_id: Optional[str] = None
    reason: Optional[RejectionReason] = None
    message: Optional[str] = None

    @property
    def category(self) -> Optional[ErrorCategory]:
        return self.reason.category if self.reason else None

    @classmethod
    def completed(cls, trx_id: Optional[str] = None, request_id: Optional[str] = None) -> 'OperationResult':
        return cls(success=True, trx_id=trx_id, request_id=request_id)

    @classmethod
    def rejected(cls, reason: RejectionReason, message: Optional[str] = None) -> 'OperationResult':
        return cls(success=False, reason=reason, message=message)

    def to_dict(self) -> Dict[str, Any]:
        """Transport-agnostic payload"""
        if self.success:
            payload = {"success": True}
            if self.trx_id:
                payload["trx_id"] = self.trx_id
            if self.request_id:
                payload["request_id"] = self.request_id
            return payload

        payload = {
            "success": False,
            "reason": self.reason.code,
            "category": self.reason.category.value
        }
        if self.message:
            payload["message"] = self.message
        return payload
