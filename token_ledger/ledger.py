"""
Token Ledger Engine

Core state machine for a fungible token: balances, delegated-transfer
allowances, total supply and a single mint authority. Every operation
checks all of its preconditions before writing anything, so a failed call
leaves the ledger untouched and emits no notifications.

The ledger never raises for business failures; it returns a LedgerResult.
Caller identity is always an explicit argument supplied by the hosting
runtime.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Hashable, Iterable, List, Optional, Tuple

from .events import Notification, TransferNotification, ApprovalNotification


Account = Hashable


class LedgerError(Enum):
    """Recoverable failure kinds returned by ledger operations"""
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INSUFFICIENT_ALLOWANCE = "insufficient_allowance"
    UNAUTHORIZED = "unauthorized"


@dataclass
class LedgerResult:
    """Outcome of a mutating ledger call"""
    error: Optional[LedgerError] = None
    notifications: List[Notification] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, *notifications: Notification) -> 'LedgerResult':
        return cls(error=None, notifications=list(notifications))

    @classmethod
    def failure(cls, error: LedgerError) -> 'LedgerResult':
        return cls(error=error, notifications=[])


@dataclass
class LedgerState:
    """
    The durable state of one ledger.

    Absent balance and allowance keys read as zero.
    """
    total_supply: int
    mint_authority: Account
    balances: Dict[Account, int] = field(default_factory=dict)
    allowances: Dict[Tuple[Account, Account], int] = field(default_factory=dict)


def _check_amount(amount: int) -> int:
    """Amounts are non-negative integers"""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"Amount must be an integer, got {type(amount).__name__}")
    if amount < 0:
        raise ValueError(f"Amount cannot be negative: {amount}")
    return amount


class Ledger:
    """
    Fungible-token ledger

    Invariants held across any call order:
    - total_supply equals the sum of all balances
    - balances and allowances never go negative
    - only the current mint authority can mint or hand over authority
    """

    def __init__(self, state: LedgerState, emit_supply_notifications: bool = False):
        self._state = state
        self.emit_supply_notifications = emit_supply_notifications

    @classmethod
    def create(
        cls,
        initial_supply: int,
        initiator: Account,
        emit_supply_notifications: bool = False
    ) -> Tuple['Ledger', LedgerResult]:
        """
        Create a ledger whose entire initial supply belongs to the initiator

        Args:
            initial_supply: Units in existence after construction
            initiator: Identity requesting creation; becomes the first
                balance holder and the mint authority
            emit_supply_notifications: Also notify on mint and burn

        Returns:
            The new Ledger and a result carrying the mint-style Transfer
            notification for the initial supply
        """
        _check_amount(initial_supply)
        state = LedgerState(
            total_supply=initial_supply,
            mint_authority=initiator,
            balances={initiator: initial_supply}
        )
        ledger = cls(state, emit_supply_notifications=emit_supply_notifications)
        return ledger, LedgerResult.success(
            TransferNotification(sender=None, recipient=initiator, amount=initial_supply)
        )

    @classmethod
    def from_state(cls, state: LedgerState, emit_supply_notifications: bool = False) -> 'Ledger':
        """Rehydrate a ledger from previously persisted state"""
        _check_amount(state.total_supply)
        for amount in list(state.balances.values()) + list(state.allowances.values()):
            _check_amount(amount)
        if sum(state.balances.values()) != state.total_supply:
            raise ValueError(
                f"Stored balances sum to {sum(state.balances.values())}, "
                f"total supply is {state.total_supply}"
            )
        return cls(state, emit_supply_notifications=emit_supply_notifications)

    # Queries

    def total_supply(self) -> int:
        return self._state.total_supply

    def balance_of(self, account: Account) -> int:
        return self._state.balances.get(account, 0)

    def current_authority(self) -> Account:
        return self._state.mint_authority

    def allowance(self, owner: Account, spender: Account) -> int:
        return self._state.allowances.get((owner, spender), 0)

    def snapshot(self) -> LedgerState:
        """Copy of the current state, safe to hand to a persistence layer"""
        return LedgerState(
            total_supply=self._state.total_supply,
            mint_authority=self._state.mint_authority,
            balances=dict(self._state.balances),
            allowances=dict(self._state.allowances)
        )

    def capture(
        self,
        accounts: Iterable[Account],
        allowance_keys: Iterable[Tuple[Account, Account]]
    ) -> LedgerState:
        """
        Partial copy holding supply, authority and only the named keys

        Keys absent from the ledger are absent from the copy, so restore()
        can tell a zero entry from one that was never written.
        """
        balances, allowances = self._state.balances, self._state.allowances
        return LedgerState(
            total_supply=self._state.total_supply,
            mint_authority=self._state.mint_authority,
            balances={a: balances[a] for a in accounts if a in balances},
            allowances={k: allowances[k] for k in allowance_keys if k in allowances}
        )

    def restore(
        self,
        saved: LedgerState,
        accounts: Iterable[Account],
        allowance_keys: Iterable[Tuple[Account, Account]]
    ) -> None:
        """Put back the keys captured by capture(); other keys are left alone"""
        self._state.total_supply = saved.total_supply
        self._state.mint_authority = saved.mint_authority
        for account in accounts:
            if account in saved.balances:
                self._state.balances[account] = saved.balances[account]
            else:
                self._state.balances.pop(account, None)
        for key in allowance_keys:
            if key in saved.allowances:
                self._state.allowances[key] = saved.allowances[key]
            else:
                self._state.allowances.pop(key, None)

    # Mutations

    def transfer(self, caller: Account, recipient: Account, amount: int) -> LedgerResult:
        """Move funds from the caller to the recipient"""
        return self._transfer_from_to(caller, recipient, amount)

    def _transfer_from_to(self, sender: Account, recipient: Account, amount: int) -> LedgerResult:
        """
        Shared balance-move primitive

        Performs no authorization of its own: transfer pins sender to the
        caller and transfer_from checks the allowance before calling it.
        """
        _check_amount(amount)
        sender_balance = self.balance_of(sender)
        if sender_balance < amount:
            return LedgerResult.failure(LedgerError.INSUFFICIENT_BALANCE)

        # Debit first so a self-transfer reads the debited balance
        self._state.balances[sender] = sender_balance - amount
        self._state.balances[recipient] = self.balance_of(recipient) + amount

        return LedgerResult.success(
            TransferNotification(sender=sender, recipient=recipient, amount=amount)
        )

    def approve(self, caller: Account, spender: Account, amount: int) -> LedgerResult:
        """Set (not add to) the amount spender may move out of caller's balance"""
        _check_amount(amount)
        self._state.allowances[(caller, spender)] = amount
        return LedgerResult.success(
            ApprovalNotification(owner=caller, spender=spender, amount=amount)
        )

    def transfer_from(
        self,
        caller: Account,
        sender: Account,
        recipient: Account,
        amount: int
    ) -> LedgerResult:
        """
        Delegated transfer: caller spends from sender's balance

        The allowance is checked before any balance is touched and is only
        consumed once the balance move has succeeded.
        """
        _check_amount(amount)
        allowance = self.allowance(sender, caller)
        if allowance < amount:
            return LedgerResult.failure(LedgerError.INSUFFICIENT_ALLOWANCE)

        result = self._transfer_from_to(sender, recipient, amount)
        if not result.ok:
            return result

        self._state.allowances[(sender, caller)] = allowance - amount
        return result

    def mint(self, caller: Account, amount: int) -> LedgerResult:
        """Create new supply, credited to the authority's own account"""
        _check_amount(amount)
        if caller != self._state.mint_authority:
            return LedgerResult.failure(LedgerError.UNAUTHORIZED)

        self._state.balances[caller] = self.balance_of(caller) + amount
        self._state.total_supply += amount

        if self.emit_supply_notifications:
            return LedgerResult.success(
                TransferNotification(sender=None, recipient=caller, amount=amount)
            )
        return LedgerResult.success()

    def burn(self, caller: Account, amount: int) -> LedgerResult:
        """Destroy units from the caller's own balance"""
        _check_amount(amount)
        caller_balance = self.balance_of(caller)
        if caller_balance < amount:
            return LedgerResult.failure(LedgerError.INSUFFICIENT_BALANCE)

        self._state.balances[caller] = caller_balance - amount
        self._state.total_supply -= amount

        if self.emit_supply_notifications:
            return LedgerResult.success(
                TransferNotification(sender=caller, recipient=None, amount=amount)
            )
        return LedgerResult.success()

    def transfer_authority(self, caller: Account, new_authority: Account) -> LedgerResult:
        """Hand mint authority to another account, effective immediately"""
        if caller != self._state.mint_authority:
            return LedgerResult.failure(LedgerError.UNAUTHORIZED)

        self._state.mint_authority = new_authority
        return LedgerResult.success()
