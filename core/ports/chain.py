from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol


@dataclass
class DepositVerification:
    """Outcome of checking a deposit transaction on chain.

    Exactly one of ``confirmed`` / ``pending`` is true on a usable answer;
    both false means the transaction is invalid and ``error`` says why.
    """

    confirmed: bool = False
    pending: bool = False
    amount: Optional[Decimal] = None
    confirmations: int = 0
    required_confirmations: int = 0
    block_number: Optional[int] = None
    timestamp: Optional[int] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class DepositVerifierPort(Protocol):
    async def verify(
        self, tx_hash: str, address: str, expected_amount: Optional[Decimal] = None
    ) -> DepositVerification: ...


class TransferPort(Protocol):
    async def transfer(self, *, to_address: str, amount: Decimal, reference: str) -> str:
        """Send ``amount`` on chain; return the transaction hash or raise TransferFailed."""
        ...


class TransferFailed(Exception):
    """Raised when an outbound transfer was not sent; no funds left the platform wallet."""
    pass
