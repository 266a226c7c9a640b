"""
Collaborator Interfaces

The ledger trusts an external identity/session service for who is calling
and an external credential service for PIN checks. Neither raw tokens nor
raw PINs ever reach the core.
"""

from abc import ABC, abstractmethod
import hmac
from dataclasses import dataclass
from typing import Dict, Optional

from .accounts import AccountRole


@dataclass(frozen=True)
class Actor:
    """
    Verified caller identity supplied by the session collaborator.
    ``authorized`` is false when the session has been invalidated
    (logout, block) since the identity was issued.
    """
    email: str
    role: AccountRole
    authorized: bool = True


class PinVerifier(ABC):
    """Credential collaborator used by PIN-gated operations"""

    @abstractmethod
    def verify_pin(self, account_id: str, supplied_pin: str) -> bool:
        """Return True if ``supplied_pin`` is the PIN of ``account_id``"""
        pass


class StaticPinVerifier(PinVerifier):
    """In-memory verifier for tests and local wiring"""

    def __init__(self, pins: Optional[Dict[str, str]] = None):
        self._pins: Dict[str, str] = dict(pins or {})

    def set_pin(self, account_id: str, pin: str) -> None:
        self._pins[account_id] = pin

    def verify_pin(self, account_id: str, supplied_pin: str) -> bool:
        if not isinstance(supplied_pin, str):
            return False
        expected = self._pins.get(account_id)
        return expected is not None and hmac.compare_digest(expected.encode(), supplied_pin.encode())
