"""
Transaction Ledger Module

Append-only log of completed transfers. Each entry is written exactly once,
inside the storage transaction that performs its balance mutations, and is
never updated or deleted afterwards.

Transaction ids are derived from the entry timestamp through a salted
SHA-256 hash. The salt is fresh for every id, so two entries created in the
same instant still get distinct, non-sequential identifiers.
"""

from datetime import datetime, timezone, timedelta
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import hashlib
import secrets
import threading

from .storage import StorageInterface, StorageRecord


TRX_ID_LENGTH = 24


class TransactionType(Enum):
    """Kinds of balance-affecting operations"""
    SEND_MONEY = "send-money"
    CASH_IN = "cash-in"
    CASH_OUT = "cash-out"
    FLOAT_APPROVAL = "float-approval"
    WITHDRAWAL_APPROVAL = "withdrawal-approval"


@dataclass
class LedgerEntry(StorageRecord):
    """
    Immutable record of a completed operation.
    ``id`` is the transaction id and ``created_at`` the entry date.
    """
    transaction_type: TransactionType
    amount: int  # Principal, fee excluded
    charge: int
    from_account: str
    to_account: str
    request_id: Optional[str] = None  # Float request settled by this entry

    @property
    def trx_id(self) -> str:
        return self.id

    @property
    def date(self) -> datetime:
        return self.created_at

    def involves(self, email: str) -> bool:
        return email in (self.from_account, self.to_account)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        data = dict(data)
        data['transaction_type'] = TransactionType(data['transaction_type'])
        return super().from_dict(data)


class MonotonicClock:
    """UTC clock whose readings strictly increase within the process"""

    def __init__(self):
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            now = datetime.now(timezone.utc)
            if self._last is not None and now <= self._last:
                now = self._last + timedelta(microseconds=1)
            self._last = now
            return now


def generate_trx_id(timestamp: datetime) -> str:
    """
    Derive an unpredictable transaction id from a timestamp

    Args:
        timestamp: Entry creation time

    Returns:
        Upper-case hex id of TRX_ID_LENGTH characters
    """
    salt = secrets.token_bytes(16)
    digest = hashlib.sha256(salt + timestamp.isoformat().encode('utf-8')).hexdigest()
    return digest[:TRX_ID_LENGTH].upper()


class TransactionLedger:
    """Append-only store of LedgerEntry records"""

    def __init__(self, storage: StorageInterface, clock: Optional[MonotonicClock] = None):
        self.storage = storage
        self.clock = clock or MonotonicClock()
        self.table_name = "transactions"

    def append(
        self,
        transaction_type: TransactionType,
        amount: int,
        from_account: str,
        to_account: str,
        charge: int = 0,
        request_id: Optional[str] = None
    ) -> LedgerEntry:
        """
        Append a completed operation to the ledger

        Joins the caller's storage transaction when there is one.

        Args:
            transaction_type: Kind of operation
            amount: Principal moved
            from_account: Paying side identity
            to_account: Receiving side identity
            charge: Fee charged on top of the principal
            request_id: Float request settled by this entry, if any

        Returns:
            The persisted LedgerEntry
        """
        with self.storage.atomic():
            now = self.clock.now()
            trx_id = generate_trx_id(now)
            while self.storage.exists(self.table_name, trx_id):
                trx_id = generate_trx_id(now)

            entry = LedgerEntry(
                id=trx_id,
                created_at=now,
                updated_at=now,
                transaction_type=transaction_type,
                amount=amount,
                charge=charge,
                from_account=from_account,
                to_account=to_account,
                request_id=request_id
            )
            self.storage.save(self.table_name, entry.id, entry.to_dict())

        return entry

    def get(self, trx_id: str) -> Optional[LedgerEntry]:
        """Get a ledger entry by transaction id"""
        data = self.storage.load(self.table_name, trx_id)
        if data:
            return LedgerEntry.from_dict(data)
        return None

    def history_for(self, email: str, limit: int = 100) -> List[LedgerEntry]:
        """
        Entries where ``email`` is payer or payee, newest first

        Args:
            email: Participant identity
            limit: Maximum number of entries returned

        Returns:
            At most ``limit`` entries in descending date order
        """
        records = {data['id']: data for data in self.storage.find(self.table_name, {'from_account': email})}
        for data in self.storage.find(self.table_name, {'to_account': email}):
            records[data['id']] = data

        entries = sorted(
            (LedgerEntry.from_dict(data) for data in records.values()),
            key=lambda e: e.created_at,
            reverse=True
        )
        return entries[:limit]

    def audit(
        self,
        participant: Optional[str] = None,
        transaction_type: Optional[TransactionType] = None
    ) -> List[LedgerEntry]:
        """
        Unbounded administrative view of the ledger, oldest first

        Args:
            participant: Only entries involving this identity
            transaction_type: Only entries of this kind
        """
        entries = [LedgerEntry.from_dict(data) for data in self.storage.load_all(self.table_name)]

        if participant:
            entries = [e for e in entries if e.involves(participant)]

        if transaction_type:
            entries = [e for e in entries if e.transaction_type == transaction_type]

        entries.sort(key=lambda e: e.created_at)
        return entries

    def count(self) -> int:
        return self.storage.count(self.table_name)
