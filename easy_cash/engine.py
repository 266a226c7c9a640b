"""
Transfer Engine Module

Orchestrates the five balance-moving operations (send money, cash in, cash
out, float approval, withdrawal approval) plus the agent float requests that
feed the last two.

Every operation follows the same shape:

1. Read the accounts involved and evaluate admissibility, rejecting early
   with a precise reason code.
2. Open one storage transaction and apply each balance change through the
   store's conditional update, restating the admissibility checks as guards
   (balance floors, role and status) so they are evaluated again at write
   time. The ledger append and the audit event join the same transaction.
3. Convert any guard failure, business rejection or lock conflict into a
   typed OperationResult. Nothing is persisted unless every step succeeded.

The engine never retries; a ``concurrency-conflict`` result tells the
caller it may.
"""

from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, Any

from .config import EasyCashConfig, get_config
from .storage import StorageInterface, ConditionFailed, StorageConflictError, StorageUnavailableError
from .accounts import Account, AccountStore, AccountRole, AccountStatus, OPERATIONAL_STATUSES
from .audit import AuditTrail, AuditEventType
from .collaborators import Actor, PinVerifier
from .fees import FeePolicy
from .float_requests import FloatRequest, FloatRequestQueue, RequestKind, RequestStatus
from .ledger import LedgerEntry, TransactionLedger, TransactionType
from .logging_config import get_logger, log_action
from .results import OperationResult, RejectionReason


class Rejected(Exception):
    """Raised inside an operation to abort it with a business rejection"""

    def __init__(self, reason: RejectionReason, message: Optional[str] = None):
        self.reason = reason
        self.message = message or reason.code
        super().__init__(self.message)


def _is_valid_amount(amount: Any) -> bool:
    return isinstance(amount, int) and not isinstance(amount, bool) and amount > 0


class TransferEngine:
    """
    Admissibility, settlement and ledger recording for mobile-money transfers
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountStore,
        ledger: TransactionLedger,
        requests: FloatRequestQueue,
        audit_trail: AuditTrail,
        pin_verifier: PinVerifier,
        fee_policy: Optional[FeePolicy] = None,
        config: Optional[EasyCashConfig] = None
    ):
        self.storage = storage
        self.accounts = accounts
        self.ledger = ledger
        self.requests = requests
        self.audit_trail = audit_trail
        self.pin_verifier = pin_verifier
        self.config = config or get_config()
        self.fees = fee_policy or FeePolicy(self.config)
        self.logger = get_logger("easycash.engine")

    # ------------------------------------------------------------------
    # Transfers

    def send_money(self, actor: Actor, recipient_mobile: str, amount: int) -> OperationResult:
        """
        User-to-user transfer; the sender pays the fee on top of the amount

        Args:
            actor: Sending user
            recipient_mobile: Mobile number of the receiving user
            amount: Principal credited to the recipient

        Returns:
            OperationResult with the ledger trx_id, or a rejection
        """
        def operation() -> OperationResult:
            self._validate_amount(amount)
            sender = self._require_actor(actor, AccountRole.USER)

            recipient = self.accounts.get_by_mobile(recipient_mobile)
            if recipient is None:
                raise Rejected(RejectionReason.INVALID_RECIPIENT, f"No account with mobile {recipient_mobile}")
            if not recipient.is_user:
                raise Rejected(RejectionReason.RECIPIENT_NOT_USER, "Money can only be sent to user accounts")
            if recipient.status != AccountStatus.ACTIVE:
                raise Rejected(RejectionReason.RECIPIENT_INACTIVE, f"Recipient account is {recipient.status.value}")
            if recipient.email == sender.email:
                raise Rejected(RejectionReason.SELF_TRANSFER, "Cannot send money to yourself")

            quote = self.fees.quote(TransactionType.SEND_MONEY, amount)
            self._require_funds(sender, quote.total_debit)
            admin = self._admin()

            with self._settlement():
                self._debit(sender, quote.total_debit)
                self.accounts.apply_delta(
                    recipient.email, {'balance': amount},
                    expected={'role': AccountRole.USER.value, 'status': AccountStatus.ACTIVE.value}
                )
                self._credit_admin(admin, balance=quote.admin_share, system_balance=quote.system_delta)
                entry = self._record(actor, TransactionType.SEND_MONEY, amount, sender.email,
                                     recipient.email, charge=quote.fee)

            return OperationResult.completed(trx_id=entry.trx_id)

        return self._execute("send_money", actor, operation, amount=amount, target=recipient_mobile)

    def cash_in(self, actor: Actor, user_mobile: str, amount: int, pin: str) -> OperationResult:
        """
        Agent deposits cash into a user's account; no fee is charged

        Args:
            actor: Servicing agent
            user_mobile: Mobile number of the receiving user
            amount: Amount moved from the agent to the user
            pin: Agent PIN, checked by the credential collaborator
        """
        def operation() -> OperationResult:
            self._validate_amount(amount)
            agent = self._require_actor(actor, AccountRole.AGENT)

            user = self.accounts.get_by_mobile(user_mobile)
            if user is None or not user.is_user or user.status != AccountStatus.ACTIVE:
                raise Rejected(RejectionReason.INVALID_USER, f"No active user with mobile {user_mobile}")

            quote = self.fees.quote(TransactionType.CASH_IN, amount)
            self._require_funds(agent, quote.total_debit)
            self._require_pin(agent, pin)
            admin = self._admin()

            with self._settlement():
                self._debit(agent, quote.total_debit)
                self.accounts.apply_delta(
                    user.email, {'balance': amount},
                    expected={'role': AccountRole.USER.value, 'status': AccountStatus.ACTIVE.value}
                )
                self._credit_admin(admin, system_balance=quote.system_delta)
                entry = self._record(actor, TransactionType.CASH_IN, amount, agent.email, user.email)

            return OperationResult.completed(trx_id=entry.trx_id)

        return self._execute("cash_in", actor, operation, amount=amount, target=user_mobile)

    def cash_out(self, actor: Actor, agent_mobile: str, amount: int, pin: str) -> OperationResult:
        """
        User withdraws cash through an agent, paying the cash-out fee

        The agent receives the principal plus its share of the fee (also
        added to its income); the admin balance receives the remainder.

        Args:
            actor: Withdrawing user
            agent_mobile: Mobile number of the servicing agent
            amount: Principal, fee excluded
            pin: User PIN, checked by the credential collaborator
        """
        def operation() -> OperationResult:
            self._validate_amount(amount)
            user = self._require_actor(actor, AccountRole.USER)

            agent = self.accounts.get_by_mobile(agent_mobile)
            if agent is None or not agent.is_agent or not agent.is_operational:
                raise Rejected(RejectionReason.INVALID_AGENT, f"No active agent with mobile {agent_mobile}")

            quote = self.fees.quote(TransactionType.CASH_OUT, amount)
            self._require_funds(user, quote.total_debit)
            self._require_pin(user, pin)
            admin = self._admin()

            with self._settlement():
                self._debit(user, quote.total_debit)
                self.accounts.apply_delta(
                    agent.email,
                    {'balance': amount + quote.agent_share, 'income': quote.agent_share},
                    expected={
                        'role': AccountRole.AGENT.value,
                        'status': OPERATIONAL_STATUSES[AccountRole.AGENT]
                    }
                )
                self._credit_admin(admin, balance=quote.admin_share, system_balance=quote.system_delta)
                entry = self._record(actor, TransactionType.CASH_OUT, amount, user.email,
                                     agent.email, charge=quote.fee)

            return OperationResult.completed(trx_id=entry.trx_id)

        return self._execute("cash_out", actor, operation, amount=amount, target=agent_mobile)

    # ------------------------------------------------------------------
    # Float requests

    def request_money(self, actor: Actor) -> OperationResult:
        """Agent asks the admin for a fixed float top-up"""
        def operation() -> OperationResult:
            agent = self._require_actor(actor, AccountRole.AGENT)
            amount = self.fees.quote(TransactionType.FLOAT_APPROVAL, 0).principal
            request = self.requests.create(RequestKind.MONEY, agent.email, amount)
            return OperationResult.completed(request_id=request.id)

        return self._execute("request_money", actor, operation)

    def approve_money_request(self, actor: Actor, request_id: str, agent_email: str) -> OperationResult:
        """
        Admin approves a pending money request, injecting float into the agent

        The request must still be pending when the credit is written; a second
        approval is rejected with ``state-conflict`` and credits nothing.
        """
        def operation() -> OperationResult:
            admin = self._require_actor(actor, AccountRole.ADMIN)
            request = self._pending_request(request_id, RequestKind.MONEY, agent_email)
            agent = self._operational_agent(agent_email)
            quote = self.fees.quote(TransactionType.FLOAT_APPROVAL, request.amount)

            with self._settlement():
                self.accounts.apply_delta(
                    agent.email, {'balance': quote.principal},
                    expected={
                        'role': AccountRole.AGENT.value,
                        'status': OPERATIONAL_STATUSES[AccountRole.AGENT]
                    }
                )
                self._credit_admin(admin, system_balance=quote.system_delta)
                entry = self._record(actor, TransactionType.FLOAT_APPROVAL, quote.principal,
                                     admin.email, agent.email, request_id=request.id)
                self.requests.resolve(request.id, RequestStatus.APPROVED, admin.email,
                                      requested_by=agent_email, trx_id=entry.trx_id)

            return OperationResult.completed(trx_id=entry.trx_id, request_id=request.id)

        return self._execute("approve_money_request", actor, operation, target=request_id)

    def withdraw_request(self, actor: Actor, amount: int) -> OperationResult:
        """Agent asks to withdraw part of its balance from the system"""
        def operation() -> OperationResult:
            self._validate_amount(amount)
            agent = self._require_actor(actor, AccountRole.AGENT)
            self._require_funds(agent, amount)
            request = self.requests.create(RequestKind.WITHDRAW, agent.email, amount)
            return OperationResult.completed(request_id=request.id)

        return self._execute("withdraw_request", actor, operation, amount=amount)

    def approve_withdraw_request(
        self,
        actor: Actor,
        request_id: str,
        agent_email: str,
        amount: int
    ) -> OperationResult:
        """
        Admin approves a pending withdraw request, debiting the agent

        The agent's balance is checked again at approval time since it may
        have changed after the request was made.
        """
        def operation() -> OperationResult:
            self._validate_amount(amount)
            admin = self._require_actor(actor, AccountRole.ADMIN)
            request = self._pending_request(request_id, RequestKind.WITHDRAW, agent_email)
            if request.amount != amount:
                raise Rejected(RejectionReason.AMOUNT_MISMATCH,
                               f"Request {request_id} is for {request.amount}, not {amount}")

            agent = self.accounts.get_account(agent_email)
            if agent is None or not agent.is_agent:
                raise Rejected(RejectionReason.INVALID_AGENT, f"No agent account {agent_email}")
            quote = self.fees.quote(TransactionType.WITHDRAWAL_APPROVAL, amount)
            self._require_funds(agent, amount)

            with self._settlement():
                self.accounts.apply_delta(
                    agent.email, {'balance': -amount},
                    at_least={'balance': amount},
                    expected={'role': AccountRole.AGENT.value}
                )
                self._credit_admin(admin, system_balance=quote.system_delta)
                entry = self._record(actor, TransactionType.WITHDRAWAL_APPROVAL, amount,
                                     agent.email, admin.email, request_id=request.id)
                self.requests.resolve(request.id, RequestStatus.APPROVED, admin.email,
                                      requested_by=agent_email, trx_id=entry.trx_id)

            return OperationResult.completed(trx_id=entry.trx_id, request_id=request.id)

        return self._execute("approve_withdraw_request", actor, operation, amount=amount, target=request_id)

    def reject_request(self, actor: Actor, request_id: str) -> OperationResult:
        """Admin turns down a pending float or withdraw request"""
        def operation() -> OperationResult:
            admin = self._require_actor(actor, AccountRole.ADMIN)
            request = self.requests.get(request_id)
            if request is None:
                raise Rejected(RejectionReason.REQUEST_NOT_FOUND, f"Request {request_id} not found")
            if not request.is_pending:
                raise Rejected(RejectionReason.STATE_CONFLICT, f"Request {request_id} is already {request.status.value}")

            with self._settlement():
                self.requests.resolve(request.id, RequestStatus.REJECTED, admin.email)

            return OperationResult.completed(request_id=request.id)

        return self._execute("reject_request", actor, operation, target=request_id)

    # ------------------------------------------------------------------
    # Read side

    def balance_of(self, actor: Actor) -> Account:
        """Current account record of the actor"""
        account = self.accounts.get_account(self._reader(actor).email)
        if account is None:
            raise LookupError(f"Account {actor.email} not found")
        return account

    def history(self, actor: Actor, limit: Optional[int] = None) -> List[LedgerEntry]:
        """Actor's own ledger entries, newest first, capped at the configured limit"""
        cap = self.config.history_limit
        limit = cap if limit is None else max(0, min(limit, cap))
        return self.ledger.history_for(self._reader(actor).email, limit=limit)

    def audit_transactions(
        self,
        actor: Actor,
        participant: Optional[str] = None,
        transaction_type: Optional[TransactionType] = None
    ) -> List[LedgerEntry]:
        """Unbounded ledger view for the admin, optionally filtered"""
        self._reader(actor, AccountRole.ADMIN)
        return self.ledger.audit(participant=participant, transaction_type=transaction_type)

    def pending_requests(self, actor: Actor, kind: Optional[RequestKind] = None) -> List[FloatRequest]:
        """Pending float and withdraw requests awaiting the admin"""
        self._reader(actor, AccountRole.ADMIN)
        return self.requests.list_requests(kind=kind, status=RequestStatus.PENDING)

    # ------------------------------------------------------------------
    # Internals

    def _execute(
        self,
        action: str,
        actor: Actor,
        operation: Callable[[], OperationResult],
        **context: Any
    ) -> OperationResult:
        try:
            result = operation()
        except Rejected as rejection:
            result = OperationResult.rejected(rejection.reason, rejection.message)
        except StorageConflictError as e:
            result = OperationResult.rejected(RejectionReason.CONCURRENCY_CONFLICT, str(e))
        except StorageUnavailableError:
            self.logger.exception("Storage unavailable during %s", action)
            raise

        extra: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        if result.success:
            log_action(self.logger, "info", f"Operation completed: {action}",
                       user_id=actor.email, action=action, trx_id=result.trx_id,
                       request_id=result.request_id, extra=extra)
        else:
            log_action(self.logger, "warning", f"Operation rejected: {action}: {result.message}",
                       user_id=actor.email, action=action, reason=result.reason.code, extra=extra)
        return result

    @contextmanager
    def _settlement(self):
        """One atomic unit; guard failures become rejections"""
        try:
            with self.storage.atomic():
                yield
        except ConditionFailed as failure:
            if failure.field == 'balance':
                raise Rejected(RejectionReason.INSUFFICIENT_BALANCE, str(failure)) from failure
            raise Rejected(RejectionReason.STATE_CONFLICT, str(failure)) from failure

    def _validate_amount(self, amount: Any) -> None:
        if not _is_valid_amount(amount):
            raise Rejected(RejectionReason.INVALID_AMOUNT, f"Amount must be a positive integer, got {amount!r}")

    def _require_actor(self, actor: Actor, role: AccountRole) -> Account:
        if not actor.authorized:
            raise Rejected(RejectionReason.UNAUTHORIZED, "Session is no longer authorized")
        if actor.role != role:
            raise Rejected(RejectionReason.FORBIDDEN_ROLE, f"Operation requires the {role.value} role")

        account = self.accounts.get_account(actor.email)
        if account is None:
            raise Rejected(RejectionReason.ACTOR_NOT_FOUND, f"Account {actor.email} not found")
        if account.role != role:
            raise Rejected(RejectionReason.FORBIDDEN_ROLE, f"Account {actor.email} is not an {role.value}")
        if not account.is_operational:
            raise Rejected(RejectionReason.ACTOR_INACTIVE, f"Account {actor.email} is {account.status.value}")
        return account

    def _reader(self, actor: Actor, role: Optional[AccountRole] = None) -> Actor:
        if not actor.authorized:
            raise PermissionError("Session is no longer authorized")
        if role is not None and actor.role != role:
            raise PermissionError(f"Requires the {role.value} role")
        return actor

    def _require_funds(self, account: Account, required: int) -> None:
        if account.balance < required:
            raise Rejected(RejectionReason.INSUFFICIENT_BALANCE,
                           f"Balance {account.balance} is below the required {required}")

    def _require_pin(self, account: Account, pin: Any) -> None:
        if not isinstance(pin, str) or not pin:
            raise Rejected(RejectionReason.INVALID_PIN, "A PIN must be supplied as a non-empty string")
        if not self.pin_verifier.verify_pin(account.email, pin):
            raise Rejected(RejectionReason.PIN_MISMATCH, "PIN verification failed")

    def _pending_request(self, request_id: str, kind: RequestKind, agent_email: str) -> FloatRequest:
        request = self.requests.get(request_id)
        if request is None:
            raise Rejected(RejectionReason.REQUEST_NOT_FOUND, f"Request {request_id} not found")
        if request.kind != kind:
            raise Rejected(RejectionReason.STATE_CONFLICT, f"Request {request_id} is a {request.kind.value} request")
        if request.requested_by != agent_email:
            raise Rejected(RejectionReason.STATE_CONFLICT, f"Request {request_id} was not made by {agent_email}")
        if not request.is_pending:
            raise Rejected(RejectionReason.STATE_CONFLICT, f"Request {request_id} is already {request.status.value}")
        return request

    def _operational_agent(self, email: str) -> Account:
        agent = self.accounts.get_account(email)
        if agent is None or not agent.is_agent or not agent.is_operational:
            raise Rejected(RejectionReason.INVALID_AGENT, f"No active agent account {email}")
        return agent

    def _admin(self) -> Account:
        admin = self.accounts.get_admin()
        if admin is None:
            raise ValueError("The admin account has not been bootstrapped")
        return admin

    def _debit(self, account: Account, total: int) -> None:
        self.accounts.apply_delta(
            account.email, {'balance': -total},
            at_least={'balance': total},
            expected={'role': account.role.value, 'status': OPERATIONAL_STATUSES[account.role]}
        )

    def _credit_admin(self, admin: Account, balance: int = 0, system_balance: int = 0) -> None:
        self.accounts.apply_delta(
            admin.email, {'balance': balance, 'system_balance': system_balance},
            expected={'role': AccountRole.ADMIN.value}
        )

    def _record(
        self,
        actor: Actor,
        transaction_type: TransactionType,
        amount: int,
        from_account: str,
        to_account: str,
        charge: int = 0,
        request_id: Optional[str] = None
    ) -> LedgerEntry:
        entry = self.ledger.append(transaction_type, amount, from_account, to_account,
                                   charge=charge, request_id=request_id)
        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSFER_COMPLETED,
            entity_type="transaction",
            entity_id=entry.trx_id,
            metadata={
                "transaction_type": transaction_type.value,
                "amount": amount,
                "charge": charge,
                "from_account": from_account,
                "to_account": to_account
            },
            user_id=actor.email
        )
        return entry
