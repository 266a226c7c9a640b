"""
Float Request Module

Agent-to-admin requests for a float top-up (money request) or a withdrawal.
A request starts pending and is resolved exactly once. Resolution is a
status-guarded conditional update, so it can be made part of the same
storage transaction as the balance mutation it authorises.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType


class RequestKind(Enum):
    MONEY = "money"
    WITHDRAW = "withdraw"


class RequestStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class FloatRequest(StorageRecord):
    """Pending or resolved agent float request"""
    kind: RequestKind
    requested_by: str
    amount: int
    status: RequestStatus = RequestStatus.PENDING
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None
    trx_id: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FloatRequest':
        data = dict(data)
        data['kind'] = RequestKind(data['kind'])
        data['status'] = RequestStatus(data['status'])
        return super().from_dict(data)


class FloatRequestQueue:
    """Persistence and state transitions for float requests"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "float_requests"

    def create(self, kind: RequestKind, requested_by: str, amount: int) -> FloatRequest:
        """Create a pending request"""
        now = datetime.now(timezone.utc)
        request = FloatRequest(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            kind=kind,
            requested_by=requested_by,
            amount=amount
        )

        with self.storage.atomic():
            self.storage.save(self.table_name, request.id, request.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.FLOAT_REQUEST_CREATED,
                entity_type="float_request",
                entity_id=request.id,
                metadata={"kind": kind.value, "amount": amount},
                user_id=requested_by
            )

        return request

    def get(self, request_id: str) -> Optional[FloatRequest]:
        data = self.storage.load(self.table_name, request_id)
        if data:
            return FloatRequest.from_dict(data)
        return None

    def list_requests(
        self,
        kind: Optional[RequestKind] = None,
        status: Optional[RequestStatus] = None,
        requested_by: Optional[str] = None
    ) -> List[FloatRequest]:
        """List requests matching the given filters, oldest first"""
        filters = {}
        if kind:
            filters['kind'] = kind.value
        if status:
            filters['status'] = status.value
        if requested_by:
            filters['requested_by'] = requested_by

        requests = [FloatRequest.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        requests.sort(key=lambda r: r.created_at)
        return requests

    def resolve(
        self,
        request_id: str,
        status: RequestStatus,
        resolved_by: str,
        requested_by: Optional[str] = None,
        trx_id: Optional[str] = None
    ) -> FloatRequest:
        """
        Move a pending request to a terminal status

        Args:
            request_id: Request to resolve
            status: APPROVED or REJECTED
            resolved_by: Admin performing the resolution
            requested_by: If given, the request must belong to this agent
            trx_id: Ledger entry that settled an approval

        Raises:
            ConditionFailed: If the request is missing, no longer pending,
                or owned by someone else
        """
        if status == RequestStatus.PENDING:
            raise ValueError("A request can only be resolved to a terminal status")

        expected = {'status': RequestStatus.PENDING.value}
        if requested_by is not None:
            expected['requested_by'] = requested_by

        now = datetime.now(timezone.utc).isoformat()
        with self.storage.atomic():
            data = self.storage.conditional_update(
                self.table_name, request_id,
                expected=expected,
                updates={
                    'status': status.value,
                    'resolved_by': resolved_by,
                    'resolved_at': now,
                    'updated_at': now,
                    'trx_id': trx_id
                }
            )

            event_type = (AuditEventType.FLOAT_REQUEST_APPROVED if status == RequestStatus.APPROVED
                          else AuditEventType.FLOAT_REQUEST_REJECTED)
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="float_request",
                entity_id=request_id,
                metadata={"kind": data['kind'], "amount": data['amount'], "trx_id": trx_id},
                user_id=resolved_by
            )

        return FloatRequest.from_dict(data)
