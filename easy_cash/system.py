"""
System Wiring

Builds a storage backend from a database URL and assembles the ledger
components around it.
"""

from dataclasses import dataclass
from typing import Optional

from .config import EasyCashConfig, get_config
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage, PostgreSQLStorage
from .audit import AuditTrail
from .accounts import AccountStore
from .collaborators import PinVerifier, StaticPinVerifier
from .engine import TransferEngine
from .fees import FeePolicy
from .float_requests import FloatRequestQueue
from .ledger import TransactionLedger
from .logging_config import setup_logging
from .reporting import LedgerReport


def create_storage(database_url: str, timeout: float = 5.0) -> StorageInterface:
    """
    Create a storage backend from a URL

    Supported forms: ``memory://``, ``sqlite:///relative.db``,
    ``sqlite:////absolute/path.db``, ``sqlite://:memory:`` and
    ``postgresql://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:", timeout=timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")


@dataclass
class EasyCashSystem:
    """All ledger components sharing one store"""
    config: EasyCashConfig
    storage: StorageInterface
    audit_trail: AuditTrail
    accounts: AccountStore
    ledger: TransactionLedger
    requests: FloatRequestQueue
    engine: TransferEngine
    report: LedgerReport

    @classmethod
    def create(
        cls,
        config: Optional[EasyCashConfig] = None,
        pin_verifier: Optional[PinVerifier] = None,
        storage: Optional[StorageInterface] = None,
        configure_logging: bool = False
    ) -> 'EasyCashSystem':
        """
        Assemble a system

        Args:
            config: Configuration (global configuration if omitted)
            pin_verifier: Credential collaborator (empty StaticPinVerifier if omitted)
            storage: Pre-built backend overriding ``config.database_url``
            configure_logging: Install the structured log handler
        """
        config = config or get_config()
        if configure_logging:
            setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

        storage = storage or create_storage(config.database_url, timeout=config.database_timeout)
        audit_trail = AuditTrail(storage, enabled=config.enable_audit_logging)
        accounts = AccountStore(storage, audit_trail, config)
        ledger = TransactionLedger(storage)
        requests = FloatRequestQueue(storage, audit_trail)
        engine = TransferEngine(
            storage, accounts, ledger, requests, audit_trail,
            pin_verifier or StaticPinVerifier(),
            fee_policy=FeePolicy(config),
            config=config
        )

        return cls(
            config=config,
            storage=storage,
            audit_trail=audit_trail,
            accounts=accounts,
            ledger=ledger,
            requests=requests,
            engine=engine,
            report=LedgerReport(accounts, ledger)
        )

    def close(self) -> None:
        self.storage.close()
