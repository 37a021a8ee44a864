"""
Balance Ledger - per-address balances, append-only transaction log and user records

Every operation either fully applies (memory + snapshot written) or fully
fails. Mutations and their snapshot writes run one at a time under a single
ledger-wide lock, so a rolled-back change is never observed by another
operation. Callers that read a balance and then act on it across several
operations still hold the bet or withdrawal lock for the address.

Withdrawals are two-phase: funds are reserved (frozen) before the transfer is
sent, then committed on success or released on failure, so a transfer never
races the balance decrement.
"""
import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import config
from core.ports.chain import DepositVerifierPort, TransferFailed, TransferPort
from core.ports.persistence import SnapshotStore

logger = logging.getLogger(__name__)

SNAPSHOT_NAME = "ledger"
ZERO = Decimal("0")

TRANSACTION_KINDS = ("deposit", "withdraw", "spend", "reward")

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
# Letters, digits, underscore and CJK ideographs
DISPLAY_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_一-龥]+$")
DISPLAY_NAME_MIN_LENGTH = 3
DISPLAY_NAME_MAX_LENGTH = 20


class LedgerError(ValueError):
    """Base exception for ledger operations"""
    pass


class InvalidAddress(LedgerError):
    pass


class InvalidAmount(LedgerError):
    pass


class InsufficientBalance(LedgerError):
    def __init__(self, address: str, available: Decimal, requested: Decimal):
        super().__init__(f"Insufficient balance. Available: {available}, Required: {requested}")
        self.address = address
        self.available = available
        self.requested = requested


class DuplicateDeposit(LedgerError):
    pass


class DepositVerificationFailed(LedgerError):
    pass


class UserNotFound(LedgerError):
    pass


class DisplayNameError(LedgerError):
    pass


class ReservationNotFound(LedgerError):
    pass


def normalize_address(address: Optional[str]) -> str:
    if not address or not isinstance(address, str) or not ADDRESS_PATTERN.match(address.strip()):
        raise InvalidAddress(f"Invalid wallet address: {address!r}")
    return address.strip().lower()


def to_amount(value: Any) -> Decimal:
    """Parse a positive, finite decimal amount."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    if not amount.is_finite() or amount <= ZERO:
        raise InvalidAmount(f"Amount must be greater than zero: {value!r}")
    return amount


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class Transaction:
    id: str
    address: str
    kind: str
    amount: Decimal
    timestamp: float
    status: str = "completed"
    reason: str = ""
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "address": self.address,
            "kind": self.kind,
            "amount": str(self.amount),
            "timestamp": self.timestamp,
            "status": self.status,
            "reason": self.reason,
            "meta": dict(self.meta),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        return cls(
            id=data["id"],
            address=data["address"],
            kind=data["kind"],
            amount=Decimal(data["amount"]),
            timestamp=float(data["timestamp"]),
            status=data.get("status", "completed"),
            reason=data.get("reason", ""),
            meta=dict(data.get("meta") or {}),
        )


@dataclass
class User:
    uid: str
    address: str
    created_at: str
    display_name: Optional[str] = None
    display_name_set_at: Optional[str] = None
    first_deposit_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uid": self.uid,
            "address": self.address,
            "created_at": self.created_at,
            "display_name": self.display_name,
            "display_name_set_at": self.display_name_set_at,
            "first_deposit_at": self.first_deposit_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            uid=data["uid"],
            address=data["address"],
            created_at=data["created_at"],
            display_name=data.get("display_name"),
            display_name_set_at=data.get("display_name_set_at"),
            first_deposit_at=data.get("first_deposit_at"),
        )


@dataclass
class Reservation:
    id: str
    address: str
    amount: Decimal
    created_at: float
    review_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "address": self.address,
            "amount": str(self.amount),
            "created_at": self.created_at,
            "review_id": self.review_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Reservation":
        return cls(
            id=data["id"],
            address=data["address"],
            amount=Decimal(data["amount"]),
            created_at=float(data["created_at"]),
            review_id=data.get("review_id"),
        )


@dataclass
class BalanceView:
    address: str
    balance: Decimal
    frozen: Decimal
    available: Decimal


@dataclass
class DepositResult:
    success: bool
    pending: bool = False
    confirmations: int = 0
    required_confirmations: int = 0
    message: str = ""
    transaction: Optional[Transaction] = None
    new_balance: Optional[Decimal] = None
    user: Optional[User] = None
    is_first_deposit: bool = False


DepositListener = Callable[[str, Decimal], Awaitable[None]]


class BalanceLedger:
    def __init__(
        self,
        store: SnapshotStore,
        *,
        clock: Callable[[], float] = time.time,
        min_deposit: Decimal = Decimal(config.MIN_DEPOSIT),
    ):
        self._store = store
        self._clock = clock
        self._min_deposit = min_deposit
        self.balances: Dict[str, Decimal] = {}
        self.transactions: List[Transaction] = []
        self.users: Dict[str, User] = {}
        self.reservations: Dict[str, Reservation] = {}
        self._deposit_refs: Set[str] = set()
        self._deposit_listeners: List[DepositListener] = []
        self._write_lock = asyncio.Lock()

    # --- persistence ---

    async def load(self) -> None:
        data = await self._store.load(SNAPSHOT_NAME)
        if data is None:
            logger.warning("No ledger snapshot found, starting with an empty ledger")
            await self.save()
            return
        self.balances = {addr: Decimal(value) for addr, value in (data.get("balances") or {}).items()}
        self.transactions = [Transaction.from_dict(tx) for tx in data.get("transactions") or []]
        self.users = {addr: User.from_dict(u) for addr, u in (data.get("users") or {}).items()}
        self.reservations = {
            rid: Reservation.from_dict(r) for rid, r in (data.get("reservations") or {}).items()
        }
        self._deposit_refs = {
            tx.meta["tx_hash"].lower()
            for tx in self.transactions
            if tx.kind == "deposit" and tx.meta.get("tx_hash")
        }
        logger.info(
            f"Ledger loaded: {len(self.users)} users, {len(self.balances)} accounts, "
            f"{len(self.transactions)} transactions, {len(self.reservations)} open reservations"
        )

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "balances": {addr: str(value) for addr, value in self.balances.items()},
            "transactions": [tx.to_dict() for tx in self.transactions],
            "users": {addr: u.to_dict() for addr, u in self.users.items()},
            "reservations": {rid: r.to_dict() for rid, r in self.reservations.items()},
            "last_update": _iso(self._clock()),
        }

    async def save(self) -> None:
        await self._store.save_snapshot(SNAPSHOT_NAME, self.to_snapshot())

    async def _commit(self, undo: Callable[[], None]) -> None:
        try:
            await self.save()
        except Exception:
            logger.exception("Ledger save failed, rolling back in-memory change")
            undo()
            raise

    def add_deposit_listener(self, listener: DepositListener) -> None:
        self._deposit_listeners.append(listener)

    # --- queries ---

    def get_balance(self, address: str) -> Decimal:
        return self.balances.get(normalize_address(address), ZERO)

    def get_frozen(self, address: str) -> Decimal:
        address = normalize_address(address)
        return sum((r.amount for r in self.reservations.values() if r.address == address), ZERO)

    def get_available(self, address: str) -> Decimal:
        return self.get_balance(address) - self.get_frozen(address)

    def query(self, address: str) -> BalanceView:
        address = normalize_address(address)
        balance = self.get_balance(address)
        frozen = self.get_frozen(address)
        return BalanceView(address=address, balance=balance, frozen=frozen, available=balance - frozen)

    def has_deposit_ref(self, tx_ref: str) -> bool:
        return tx_ref.strip().lower() in self._deposit_refs

    def transactions_for(self, address: str, limit: int = 50) -> List[Transaction]:
        address = normalize_address(address)
        matching = [tx for tx in reversed(self.transactions) if tx.address == address]
        matching.sort(key=lambda tx: tx.timestamp, reverse=True)
        return matching[: max(0, limit)]

    def transactions_within(self, address: str, seconds: float, kind: Optional[str] = None) -> List[Transaction]:
        """Every transaction for the address in the trailing window, newest first. Not capped."""
        address = normalize_address(address)
        cutoff = self._clock() - seconds
        matching = [
            tx for tx in reversed(self.transactions)
            if tx.address == address and tx.timestamp > cutoff and (kind is None or tx.kind == kind)
        ]
        matching.sort(key=lambda tx: tx.timestamp, reverse=True)
        return matching

    def all_transactions(self, kind: Optional[str] = None, limit: int = 100,
                         reason: Optional[str] = None) -> List[Transaction]:
        matching = [
            tx for tx in reversed(self.transactions)
            if (kind is None or tx.kind == kind) and (reason is None or tx.reason == reason)
        ]
        matching.sort(key=lambda tx: tx.timestamp, reverse=True)
        return matching[: max(0, limit)]

    def open_reservations(self, older_than_seconds: float = 0) -> List[Reservation]:
        cutoff = self._clock() - older_than_seconds
        return sorted(
            (r for r in self.reservations.values() if r.created_at <= cutoff),
            key=lambda r: r.created_at,
        )

    # --- users ---

    def _ensure_user(self, address: str, *, first_deposit: bool = False) -> bool:
        """Create the user record if missing. Returns True when created."""
        now = _iso(self._clock())
        user = self.users.get(address)
        if user is not None:
            if first_deposit and not user.first_deposit_at:
                user.first_deposit_at = now
            return False
        self.users[address] = User(
            uid=uuid.uuid4().hex,
            address=address,
            created_at=now,
            first_deposit_at=now if first_deposit else None,
        )
        logger.info(f"User created: uid={self.users[address].uid}, address={address}")
        return True

    def get_user(self, address: str) -> Optional[User]:
        return self.users.get(normalize_address(address))

    def get_user_by_uid(self, uid: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.uid == uid), None)

    def get_user_by_display_name(self, display_name: str) -> Optional[User]:
        wanted = display_name.strip().lower()
        return next(
            (u for u in self.users.values() if u.display_name and u.display_name.lower() == wanted),
            None,
        )

    def is_display_name_taken(self, display_name: str) -> bool:
        return self.get_user_by_display_name(display_name) is not None

    @staticmethod
    def validate_display_name(display_name: Optional[str]) -> str:
        if not display_name or not isinstance(display_name, str):
            raise DisplayNameError("Display name cannot be empty")
        trimmed = display_name.strip()
        if not DISPLAY_NAME_MIN_LENGTH <= len(trimmed) <= DISPLAY_NAME_MAX_LENGTH:
            raise DisplayNameError(
                f"Display name must be {DISPLAY_NAME_MIN_LENGTH}-{DISPLAY_NAME_MAX_LENGTH} characters"
            )
        if not DISPLAY_NAME_PATTERN.match(trimmed):
            raise DisplayNameError("Display name may only contain letters, digits, underscores and CJK characters")
        return trimmed

    async def set_display_name(self, address: str, display_name: str) -> User:
        address = normalize_address(address)
        async with self._write_lock:
            user = self.users.get(address)
            if user is None:
                raise UserNotFound("User not found, make a first deposit before choosing a name")
            if user.display_name:
                raise DisplayNameError("Display name is already set and cannot be changed")
            name = self.validate_display_name(display_name)
            if self.is_display_name_taken(name):
                raise DisplayNameError("Display name is already taken")

            user.display_name = name
            user.display_name_set_at = _iso(self._clock())

            def undo():
                user.display_name = None
                user.display_name_set_at = None

            await self._commit(undo)
        logger.info(f"Display name set: uid={user.uid}, display_name={name}")
        return user

    # --- money movement ---

    def _append(self, address: str, kind: str, amount: Decimal, *, status: str = "completed",
                reason: str = "", meta: Optional[Dict[str, Any]] = None) -> Transaction:
        tx = Transaction(
            id=uuid.uuid4().hex,
            address=address,
            kind=kind,
            amount=amount,
            timestamp=self._clock(),
            status=status,
            reason=reason,
            meta=dict(meta or {}),
        )
        self.transactions.append(tx)
        return tx

    async def credit(self, address: str, amount: Any, reason: str,
                     meta: Optional[Dict[str, Any]] = None, *, kind: str = "reward") -> Transaction:
        address = normalize_address(address)
        amount = to_amount(amount)
        if kind not in ("reward", "deposit"):
            raise LedgerError(f"Cannot credit with transaction kind {kind!r}")

        async with self._write_lock:
            created = self._ensure_user(address)
            previous = self.balances.get(address, ZERO)
            self.balances[address] = previous + amount
            tx = self._append(address, kind, amount, reason=reason, meta=meta)

            def undo():
                self.balances[address] = previous
                self.transactions.remove(tx)
                if created:
                    self.users.pop(address, None)

            await self._commit(undo)
            balance = self.balances[address]
        logger.info(
            f"Ledger credit: address={address}, amount={amount}, reason={reason}, balance={balance}"
        )
        return tx

    async def debit(self, address: str, amount: Any, reason: str,
                    meta: Optional[Dict[str, Any]] = None, *, kind: str = "spend") -> Transaction:
        address = normalize_address(address)
        amount = to_amount(amount)
        if kind != "spend":
            raise LedgerError(f"Cannot debit with transaction kind {kind!r}, withdrawals go through reserve()")

        async with self._write_lock:
            available = self.get_available(address)
            if available < amount:
                raise InsufficientBalance(address, available, amount)

            previous = self.balances.get(address, ZERO)
            self.balances[address] = previous - amount
            tx = self._append(address, kind, amount, reason=reason, meta=meta)

            def undo():
                self.balances[address] = previous
                self.transactions.remove(tx)

            await self._commit(undo)
            balance = self.balances[address]
        logger.info(
            f"Ledger debit: address={address}, amount={amount}, reason={reason}, balance={balance}"
        )
        return tx

    async def deposit_external(
        self,
        address: str,
        amount: Any,
        tx_ref: str,
        verifier: Optional[DepositVerifierPort],
        *,
        skip_verification: bool = False,
    ) -> DepositResult:
        """Credit an on-chain deposit exactly once per transaction hash.

        A deposit that has not reached the required confirmations returns a
        pending result; the caller retries later with the same hash.
        """
        address = normalize_address(address)
        amount = to_amount(amount)
        if not tx_ref or not tx_ref.strip():
            raise LedgerError("Missing deposit transaction reference")
        ref = tx_ref.strip().lower()

        logger.info(f"Deposit request: address={address}, amount={amount}, tx_hash={ref}")

        if amount < self._min_deposit:
            raise InvalidAmount(f"Deposit amount must be at least {self._min_deposit}")
        if ref in self._deposit_refs:
            raise DuplicateDeposit("This transaction has already been credited")

        actual = amount
        meta: Dict[str, Any] = {"tx_hash": ref, "verified": not skip_verification}
        if not skip_verification:
            if verifier is None:
                raise DepositVerificationFailed("Deposit verification is not configured")
            verification = await verifier.verify(ref, address, amount)
            if verification.pending:
                logger.info(
                    f"Deposit pending: tx_hash={ref}, "
                    f"confirmations={verification.confirmations}/{verification.required_confirmations}"
                )
                return DepositResult(
                    success=False,
                    pending=True,
                    confirmations=verification.confirmations,
                    required_confirmations=verification.required_confirmations,
                    message=(
                        f"Deposit is confirming ({verification.confirmations}/"
                        f"{verification.required_confirmations} confirmations)"
                    ),
                )
            if not verification.confirmed or verification.amount is None:
                logger.error(f"Deposit verification failed: tx_hash={ref}, error={verification.error}")
                raise DepositVerificationFailed(f"Deposit verification failed: {verification.error}")
            # Trust the chain over the client-reported amount
            actual = to_amount(verification.amount)
            meta.update(
                block_number=verification.block_number,
                confirmations=verification.confirmations,
                chain_timestamp=verification.timestamp,
            )
        else:
            logger.warning(f"Deposit verification skipped (admin): tx_hash={ref}")

        async with self._write_lock:
            # The hash may have been applied while we were waiting on the chain
            if ref in self._deposit_refs:
                raise DuplicateDeposit("This transaction has already been credited")

            existing = self.users.get(address)
            is_first_deposit = existing is None or not existing.first_deposit_at
            created = self._ensure_user(address, first_deposit=True)
            user = self.users[address]
            previous_first_deposit = None if created else user.first_deposit_at
            previous = self.balances.get(address, ZERO)
            self.balances[address] = previous + actual
            tx = self._append(address, "deposit", actual, reason="chain_deposit", meta=meta)
            self._deposit_refs.add(ref)

            def undo():
                self.balances[address] = previous
                self.transactions.remove(tx)
                self._deposit_refs.discard(ref)
                if created:
                    self.users.pop(address, None)
                else:
                    user.first_deposit_at = previous_first_deposit

            await self._commit(undo)
            new_balance = self.balances[address]
        logger.info(f"Deposit credited: address={address}, amount={actual}, balance={new_balance}")

        for listener in self._deposit_listeners:
            try:
                await listener(address, actual)
            except Exception:
                # The deposit itself is durable; a stale risk statistic is recoverable
                logger.exception(f"Deposit listener failed for {address}")

        return DepositResult(
            success=True,
            transaction=tx,
            new_balance=new_balance,
            user=self.users[address],
            is_first_deposit=is_first_deposit,
            message="Deposit credited",
        )

    async def reserve(self, address: str, amount: Any, *, review_id: Optional[str] = None) -> Reservation:
        address = normalize_address(address)
        amount = to_amount(amount)
        async with self._write_lock:
            available = self.get_available(address)
            if available < amount:
                raise InsufficientBalance(address, available, amount)

            reservation = Reservation(
                id=uuid.uuid4().hex, address=address, amount=amount, created_at=self._clock(), review_id=review_id
            )
            self.reservations[reservation.id] = reservation
            tx = self._append(
                address, "withdraw", amount, status="reserved", reason="withdraw_reserve",
                meta={"reservation_id": reservation.id, "review_id": review_id},
            )

            def undo():
                self.reservations.pop(reservation.id, None)
                self.transactions.remove(tx)

            await self._commit(undo)
        logger.info(f"Funds reserved: address={address}, amount={amount}, reservation={reservation.id}")
        return reservation

    def get_reservation(self, reservation_id: str) -> Reservation:
        reservation = self.reservations.get(reservation_id)
        if reservation is None:
            raise ReservationNotFound(f"Reservation {reservation_id} not found")
        return reservation

    async def link_reservation(self, reservation_id: str, review_id: str) -> Reservation:
        async with self._write_lock:
            reservation = self.get_reservation(reservation_id)
            previous = reservation.review_id
            reservation.review_id = review_id

            def undo():
                reservation.review_id = previous

            await self._commit(undo)
        return reservation

    async def commit_reservation(self, reservation_id: str, *, tx_hash: Optional[str]) -> Transaction:
        async with self._write_lock:
            reservation = self.get_reservation(reservation_id)
            address = reservation.address
            previous = self.balances.get(address, ZERO)
            if previous < reservation.amount:
                # frozen <= balance holds for every path through the ledger
                raise InsufficientBalance(address, previous, reservation.amount)

            self.balances[address] = previous - reservation.amount
            del self.reservations[reservation_id]
            tx = self._append(
                address, "withdraw", reservation.amount, reason="withdraw",
                meta={"reservation_id": reservation_id, "review_id": reservation.review_id, "tx_hash": tx_hash},
            )

            def undo():
                self.balances[address] = previous
                self.reservations[reservation_id] = reservation
                self.transactions.remove(tx)

            await self._commit(undo)
            balance = self.balances[address]
        logger.info(
            f"Withdrawal completed: address={address}, amount={reservation.amount}, "
            f"tx_hash={tx_hash}, balance={balance}"
        )
        return tx

    async def release_reservation(self, reservation_id: str, *, reason: str, failed: bool = False) -> Transaction:
        async with self._write_lock:
            reservation = self.get_reservation(reservation_id)
            del self.reservations[reservation_id]
            tx = self._append(
                reservation.address, "withdraw", reservation.amount,
                status="failed" if failed else "released", reason=reason,
                meta={"reservation_id": reservation_id, "review_id": reservation.review_id},
            )

            def undo():
                self.reservations[reservation_id] = reservation
                self.transactions.remove(tx)

            await self._commit(undo)
        logger.info(
            f"Reservation released: address={reservation.address}, amount={reservation.amount}, "
            f"reason={reason}, failed={failed}"
        )
        return tx

    async def execute_reservation(self, reservation_id: str, transfer: TransferPort) -> Transaction:
        """Send the reserved funds and settle the reservation either way.

        Raises TransferFailed after releasing the reservation when the transfer
        did not go out.
        """
        reservation = self.get_reservation(reservation_id)
        try:
            tx_hash = await transfer.transfer(
                to_address=reservation.address, amount=reservation.amount, reference=reservation_id
            )
        except TransferFailed as exc:
            logger.error(f"Transfer failed for reservation {reservation_id}: {exc}")
            await self.release_reservation(reservation_id, reason=f"transfer_failed: {exc}", failed=True)
            raise
        return await self.commit_reservation(reservation_id, tx_hash=tx_hash)

    async def withdraw_external(self, address: str, amount: Any, transfer: TransferPort) -> Transaction:
        reservation = await self.reserve(address, amount)
        return await self.execute_reservation(reservation.id, transfer)
