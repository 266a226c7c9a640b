"""
Account Management Module

Holds user, agent and admin account records: identity keys, role, status,
balance, agent income and the admin system float. Balances are integers in
the smallest currency unit and only ever change through the store's
conditional update, so every debit re-checks the balance floor at write time.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum

from .config import EasyCashConfig, get_config
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .logging_config import get_logger, log_action


class AccountRole(Enum):
    """Account roles"""
    ADMIN = "admin"
    AGENT = "agent"
    USER = "user"


class AccountStatus(Enum):
    """Account lifecycle states; meaning depends on the role"""
    PENDING = "pending"      # Agent awaiting approval
    ACTIVE = "active"
    BLOCKED = "blocked"
    REJECTED = "rejected"    # Agent application refused
    APPROVED = "approved"    # Agent approved by the admin


# Statuses in which an account of each role may transact
OPERATIONAL_STATUSES: Dict[AccountRole, Tuple[str, ...]] = {
    AccountRole.ADMIN: (AccountStatus.ACTIVE.value,),
    AccountRole.AGENT: (AccountStatus.ACTIVE.value, AccountStatus.APPROVED.value),
    AccountRole.USER: (AccountStatus.ACTIVE.value,),
}


class DuplicateAccountError(ValueError):
    """An identity key is already registered"""

    def __init__(self, field: str, value: str):
        self.field = field
        self.value = value
        super().__init__(f"An account with {field} '{value}' already exists")


@dataclass
class Account(StorageRecord):
    """
    Mobile-money account keyed by email
    """
    email: str
    mobile: str
    nid: str
    name: str
    role: AccountRole
    status: AccountStatus
    balance: int = 0
    income: int = 0          # Agents only
    system_balance: int = 0  # Admin only
    opening_balance: int = 0  # Starter float credited at creation

    def __post_init__(self):
        if self.balance < 0:
            raise ValueError("Account balance cannot be negative")

    @property
    def is_admin(self) -> bool:
        return self.role == AccountRole.ADMIN

    @property
    def is_agent(self) -> bool:
        return self.role == AccountRole.AGENT

    @property
    def is_user(self) -> bool:
        return self.role == AccountRole.USER

    @property
    def is_operational(self) -> bool:
        """Check if the account may take part in transfers"""
        return self.status.value in OPERATIONAL_STATUSES[self.role]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        data['role'] = AccountRole(data['role'])
        data['status'] = AccountStatus(data['status'])
        return super().from_dict(data)


class AccountStore:
    """
    Keyed access to accounts plus the conditional balance primitive the
    transfer engine builds on
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        config: Optional[EasyCashConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.table_name = "accounts"
        self.logger = get_logger("easycash.accounts")

    def bootstrap_admin(self, email: str, mobile: str, nid: str, name: str = "Admin") -> Account:
        """
        Create the single admin account

        Raises:
            ValueError: If an admin already exists
            DuplicateAccountError: If an identity key is taken
        """
        with self.storage.atomic():
            if self.storage.find(self.table_name, {'role': AccountRole.ADMIN.value}):
                raise ValueError("An admin account already exists")
            return self._insert(email, mobile, nid, name, AccountRole.ADMIN, AccountStatus.ACTIVE, 0)

    def open_account(
        self,
        email: str,
        mobile: str,
        nid: str,
        name: str,
        role: AccountRole
    ) -> Account:
        """
        Open a user or agent account with its starter balance

        The starter balance is float injected by the system, so the admin
        system_balance grows by the same amount in the same transaction.

        Args:
            email: Primary identity
            mobile: Unique mobile number
            nid: Unique national id
            name: Display name
            role: AccountRole.USER or AccountRole.AGENT

        Returns:
            Created Account

        Raises:
            ValueError: For an admin role or when no admin exists yet
            DuplicateAccountError: If email, mobile or nid is taken
        """
        if role == AccountRole.USER:
            status, starter = AccountStatus.ACTIVE, self.config.user_starter_balance
        elif role == AccountRole.AGENT:
            status, starter = AccountStatus.PENDING, self.config.agent_starter_balance
        else:
            raise ValueError("Use bootstrap_admin to create the admin account")

        with self.storage.atomic():
            admin = self.get_admin()
            if admin is None:
                raise ValueError("The admin account must exist before opening accounts")

            account = self._insert(email, mobile, nid, name, role, status, starter)
            if starter:
                self.storage.conditional_update(
                    self.table_name, admin.id,
                    expected={'role': AccountRole.ADMIN.value},
                    increments={'system_balance': starter}
                )

        return account

    def _insert(
        self,
        email: str,
        mobile: str,
        nid: str,
        name: str,
        role: AccountRole,
        status: AccountStatus,
        balance: int
    ) -> Account:
        if self.storage.exists(self.table_name, email):
            raise DuplicateAccountError("email", email)
        if self.storage.find(self.table_name, {'mobile': mobile}):
            raise DuplicateAccountError("mobile", mobile)
        if self.storage.find(self.table_name, {'nid': nid}):
            raise DuplicateAccountError("nid", nid)

        now = datetime.now(timezone.utc)
        account = Account(
            id=email,
            created_at=now,
            updated_at=now,
            email=email,
            mobile=mobile,
            nid=nid,
            name=name,
            role=role,
            status=status,
            balance=balance,
            opening_balance=balance
        )
        self.storage.save(self.table_name, account.id, account.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_OPENED,
            entity_type="account",
            entity_id=account.id,
            metadata={
                "role": role.value,
                "status": status.value,
                "starter_balance": balance
            }
        )
        log_action(
            self.logger, "info", f"Account opened: {role.value}",
            user_id=email, action="open_account", resource=f"account:{email}",
            extra={"role": role.value, "status": status.value, "starter_balance": balance}
        )
        return account

    def get_account(self, email: str) -> Optional[Account]:
        """Get account by email"""
        data = self.storage.load(self.table_name, email)
        if data:
            return Account.from_dict(data)
        return None

    def get_by_mobile(self, mobile: str) -> Optional[Account]:
        """Get account by mobile number"""
        found = self.storage.find(self.table_name, {'mobile': mobile})
        if found:
            return Account.from_dict(found[0])
        return None

    def get_by_nid(self, nid: str) -> Optional[Account]:
        """Get account by national id"""
        found = self.storage.find(self.table_name, {'nid': nid})
        if found:
            return Account.from_dict(found[0])
        return None

    def get_admin(self) -> Optional[Account]:
        """Get the system admin account"""
        found = self.storage.find(self.table_name, {'role': AccountRole.ADMIN.value})
        if found:
            return Account.from_dict(found[0])
        return None

    def list_accounts(
        self,
        role: Optional[AccountRole] = None,
        status: Optional[AccountStatus] = None
    ) -> List[Account]:
        """List accounts, optionally filtered by role and status"""
        filters = {}
        if role:
            filters['role'] = role.value
        if status:
            filters['status'] = status.value
        return [Account.from_dict(data) for data in self.storage.find(self.table_name, filters)]

    def set_status(self, email: str, status: AccountStatus, changed_by: Optional[str] = None) -> Account:
        """
        Change an account's status (agent approval, blocking, unblocking)

        Raises:
            ValueError: If the account does not exist or is the admin
        """
        with self.storage.atomic():
            account = self.get_account(email)
            if not account:
                raise ValueError(f"Account {email} not found")
            if account.is_admin:
                raise ValueError("The admin account status cannot be changed")

            old_status = account.status
            data = self.storage.conditional_update(
                self.table_name, email,
                expected={'status': old_status.value},
                updates={
                    'status': status.value,
                    'updated_at': datetime.now(timezone.utc).isoformat()
                }
            )

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_STATUS_CHANGED,
                entity_type="account",
                entity_id=email,
                metadata={"old_status": old_status.value, "new_status": status.value},
                user_id=changed_by
            )

        log_action(
            self.logger, "info", f"Account status changed: {old_status.value} -> {status.value}",
            user_id=changed_by, action="set_status", resource=f"account:{email}"
        )
        return Account.from_dict(data)

    def apply_delta(
        self,
        email: str,
        increments: Dict[str, int],
        at_least: Optional[Dict[str, int]] = None,
        expected: Optional[Dict[str, Any]] = None
    ) -> Account:
        """
        Conditionally increment balance fields of one account

        Args:
            email: Account to modify
            increments: Deltas for balance, income or system_balance
            at_least: Floors the current values must meet before applying
            expected: Field values (role, status) the account must still hold

        Raises:
            ConditionFailed: If the account changed since it was checked
        """
        increments = {k: v for k, v in increments.items() if v}
        data = self.storage.conditional_update(
            self.table_name, email,
            expected=expected,
            at_least=at_least,
            increments=increments,
            updates={'updated_at': datetime.now(timezone.utc).isoformat()}
        )
        return Account.from_dict(data)
