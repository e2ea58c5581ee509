"""
Ledger Runtime Module

The trusted environment that hosts a Ledger: it supplies the calling
identity for each operation, serializes all calls into one total order,
persists the state each call touches, keeps a searchable log of emitted
notifications, audits every call and delivers notifications to observers
once the call has committed.
"""

import json
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .audit import AuditTrail, AuditEventType
from .config import TokenLedgerConfig, get_config
from .events import EventDispatcher, Notification, NotificationType, notification_from_dict
from .ledger import Ledger, LedgerResult, LedgerState
from .logging_config import get_logger, log_action
from .storage import StorageInterface, create_storage


class LedgerRuntimeError(Exception):
    """Base class for runtime lifecycle errors"""
    pass


class LedgerAlreadyDeployedError(LedgerRuntimeError):
    """Storage already holds a deployed ledger"""
    pass


class LedgerNotDeployedError(LedgerRuntimeError):
    """Storage holds no ledger to load"""
    pass


NOTIFICATION_TOPICS = ("sender", "recipient", "owner", "spender")


def _allowance_key(owner: str, spender: str) -> str:
    return json.dumps([owner, spender])


class LedgerRuntime:
    """
    Hosts one Ledger on top of a storage backend

    Account identities are strings at this layer. All state-changing calls
    run under a single lock, so each one completes (checks, writes,
    persistence, audit) before the next begins.
    """

    META_TABLE = "ledger_meta"
    BALANCES_TABLE = "balances"
    ALLOWANCES_TABLE = "allowances"
    NOTIFICATIONS_TABLE = "notifications"
    STATE_ID = "state"

    def __init__(
        self,
        ledger: Ledger,
        storage: StorageInterface,
        dispatcher: Optional[EventDispatcher] = None,
        audit_trail: Optional[AuditTrail] = None
    ):
        self._ledger = ledger
        self.storage = storage
        self.dispatcher = dispatcher or EventDispatcher()
        self.audit_trail = audit_trail
        self.logger = get_logger("token_ledger.runtime")
        self._lock = threading.RLock()

    @classmethod
    def deploy(
        cls,
        storage: StorageInterface,
        initiator: str,
        initial_supply: int,
        dispatcher: Optional[EventDispatcher] = None,
        emit_supply_notifications: bool = False,
        enable_audit: bool = True
    ) -> 'LedgerRuntime':
        """
        Create a new ledger in empty storage

        Args:
            storage: Backend that will hold the ledger state
            initiator: Identity requesting creation
            initial_supply: Units credited to the initiator
            dispatcher: Notification dispatcher (a fresh one by default)
            emit_supply_notifications: Notify on mint and burn as well
            enable_audit: Keep a hash-chained audit trail of every call

        Raises:
            LedgerAlreadyDeployedError: If storage already holds a ledger
        """
        if storage.exists(cls.META_TABLE, cls.STATE_ID):
            raise LedgerAlreadyDeployedError("Storage already holds a deployed ledger")

        ledger, result = Ledger.create(
            initial_supply, initiator, emit_supply_notifications=emit_supply_notifications
        )
        runtime = cls(
            ledger, storage, dispatcher=dispatcher,
            audit_trail=AuditTrail(storage) if enable_audit else None
        )

        with storage.atomic():
            runtime._persist(accounts=[initiator], allowance_keys=[], meta=True)
            runtime._record_notifications(result.notifications)
            runtime._audit(
                AuditEventType.LEDGER_DEPLOYED, "ledger", "supply", initiator,
                {"initial_supply": initial_supply}
            )

        runtime._publish(result.notifications)
        log_action(
            runtime.logger, "info", "Ledger deployed",
            caller=initiator, action="deploy", resource="ledger",
            extra={"initial_supply": initial_supply}
        )
        return runtime

    @classmethod
    def load(
        cls,
        storage: StorageInterface,
        dispatcher: Optional[EventDispatcher] = None,
        emit_supply_notifications: bool = False,
        enable_audit: bool = True
    ) -> 'LedgerRuntime':
        """
        Rehydrate a previously deployed ledger

        Raises:
            LedgerNotDeployedError: If storage holds no ledger
            ValueError: If the stored balances do not add up to the supply
        """
        meta = storage.load(cls.META_TABLE, cls.STATE_ID)
        if meta is None:
            raise LedgerNotDeployedError("Storage holds no deployed ledger")

        state = LedgerState(
            total_supply=int(meta['total_supply']),
            mint_authority=meta['mint_authority'],
            balances={
                record['account']: int(record['balance'])
                for record in storage.load_all(cls.BALANCES_TABLE)
            },
            allowances={
                (record['owner'], record['spender']): int(record['amount'])
                for record in storage.load_all(cls.ALLOWANCES_TABLE)
            }
        )
        ledger = Ledger.from_state(state, emit_supply_notifications=emit_supply_notifications)
        runtime = cls(
            ledger, storage, dispatcher=dispatcher,
            audit_trail=AuditTrail(storage) if enable_audit else None
        )

        runtime._audit(
            AuditEventType.LEDGER_LOADED, "ledger", "supply", None,
            {"total_supply": state.total_supply, "accounts": len(state.balances)}
        )
        log_action(
            runtime.logger, "info", "Ledger loaded from storage",
            action="load", resource="ledger",
            extra={"total_supply": state.total_supply, "accounts": len(state.balances)}
        )
        return runtime

    @classmethod
    def from_config(
        cls,
        config: Optional[TokenLedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        dispatcher: Optional[EventDispatcher] = None
    ) -> 'LedgerRuntime':
        """Load the configured ledger, deploying it first if storage is empty"""
        config = config or get_config()
        storage = storage or create_storage(config.database_url)
        options = dict(
            dispatcher=dispatcher,
            emit_supply_notifications=config.emit_supply_notifications,
            enable_audit=config.enable_audit_logging
        )
        if storage.exists(cls.META_TABLE, cls.STATE_ID):
            return cls.load(storage, **options)
        return cls.deploy(storage, config.initiator, config.initial_supply, **options)

    # Queries

    def total_supply(self) -> int:
        with self._lock:
            return self._ledger.total_supply()

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._ledger.balance_of(account)

    def current_authority(self) -> str:
        with self._lock:
            return self._ledger.current_authority()

    def allowance(self, owner: str, spender: str) -> int:
        with self._lock:
            return self._ledger.allowance(owner, spender)

    def find_notifications(
        self,
        event_type: Optional[NotificationType] = None,
        **topics: Any
    ) -> List[Notification]:
        """
        Search emitted notifications by their indexed fields

        Args:
            event_type: Restrict to Transfer or Approval notifications
            **topics: Exact-match filters on sender, recipient, owner or spender;
                None matches the absent side of a mint- or burn-style transfer

        Returns:
            Matching notifications in emission order
        """
        unknown = set(topics) - set(NOTIFICATION_TOPICS)
        if unknown:
            raise ValueError(f"Unknown notification topics: {sorted(unknown)}")

        filters: Dict[str, Any] = dict(topics)
        if event_type is not None:
            filters['event_type'] = event_type.value

        # Held so a search never sees rows of a call that has not committed
        with self._lock:
            records = self.storage.find(self.NOTIFICATIONS_TABLE, filters)
        records.sort(key=lambda r: r['sequence'])
        return [notification_from_dict(record) for record in records]

    def verify_audit_trail(self) -> Dict[str, Any]:
        """Check the audit hash chain; valid when auditing is disabled"""
        if self.audit_trail is None:
            return {'valid': True, 'total_events': 0, 'hash_errors': [], 'chain_breaks': []}
        with self._lock:
            return self.audit_trail.verify_integrity()

    # Mutations

    def transfer(self, caller: str, recipient: str, amount: int) -> LedgerResult:
        return self._execute(
            action="transfer",
            caller=caller,
            operation=lambda: self._ledger.transfer(caller, recipient, amount),
            accounts=[caller, recipient],
            audit_type=AuditEventType.TRANSFER,
            entity=("account", caller),
            metadata={"recipient": recipient, "amount": amount}
        )

    def approve(self, caller: str, spender: str, amount: int) -> LedgerResult:
        return self._execute(
            action="approve",
            caller=caller,
            operation=lambda: self._ledger.approve(caller, spender, amount),
            allowance_keys=[(caller, spender)],
            audit_type=AuditEventType.APPROVAL,
            entity=("allowance", _allowance_key(caller, spender)),
            metadata={"spender": spender, "amount": amount}
        )

    def transfer_from(self, caller: str, sender: str, recipient: str, amount: int) -> LedgerResult:
        return self._execute(
            action="transfer_from",
            caller=caller,
            operation=lambda: self._ledger.transfer_from(caller, sender, recipient, amount),
            accounts=[sender, recipient],
            allowance_keys=[(sender, caller)],
            audit_type=AuditEventType.DELEGATED_TRANSFER,
            entity=("account", sender),
            metadata={"sender": sender, "recipient": recipient, "amount": amount}
        )

    def mint(self, caller: str, amount: int) -> LedgerResult:
        return self._execute(
            action="mint",
            caller=caller,
            operation=lambda: self._ledger.mint(caller, amount),
            accounts=[caller],
            meta=True,
            audit_type=AuditEventType.MINT,
            entity=("ledger", "supply"),
            metadata={"amount": amount}
        )

    def burn(self, caller: str, amount: int) -> LedgerResult:
        return self._execute(
            action="burn",
            caller=caller,
            operation=lambda: self._ledger.burn(caller, amount),
            accounts=[caller],
            meta=True,
            audit_type=AuditEventType.BURN,
            entity=("ledger", "supply"),
            metadata={"amount": amount}
        )

    def transfer_authority(self, caller: str, new_authority: str) -> LedgerResult:
        return self._execute(
            action="transfer_authority",
            caller=caller,
            operation=lambda: self._ledger.transfer_authority(caller, new_authority),
            meta=True,
            audit_type=AuditEventType.AUTHORITY_TRANSFERRED,
            entity=("ledger", "authority"),
            metadata={"new_authority": new_authority}
        )

    def _execute(
        self,
        action: str,
        caller: str,
        operation: Callable[[], LedgerResult],
        audit_type: AuditEventType,
        entity: Tuple[str, str],
        metadata: Dict[str, Any],
        accounts: Iterable[str] = (),
        allowance_keys: Iterable[Tuple[str, str]] = (),
        meta: bool = False
    ) -> LedgerResult:
        """
        Run one ledger call as an atomic unit

        State written by the core is persisted together with the notification
        log and the audit event. If persistence fails the keys the call
        touches are restored to their values before the call and the error
        propagates.
        """
        accounts = list(accounts)
        allowance_keys = list(allowance_keys)
        with self._lock:
            before = self._ledger.capture(accounts, allowance_keys)
            try:
                with self.storage.atomic():
                    result = operation()
                    if result.ok:
                        self._persist(accounts, allowance_keys, meta)
                        self._record_notifications(result.notifications)
                        self._audit(audit_type, entity[0], entity[1], caller, metadata)
                    else:
                        self._audit(
                            AuditEventType.OPERATION_REJECTED, entity[0], entity[1], caller,
                            dict(metadata, action=action, error=result.error.value)
                        )
            except Exception:
                self._ledger.restore(before, accounts, allowance_keys)
                raise

            if result.ok:
                self._publish(result.notifications)
                log_action(
                    self.logger, "info", f"{action} committed",
                    caller=caller, action=action, resource=entity[0], extra=metadata
                )
            else:
                log_action(
                    self.logger, "warning", f"{action} rejected: {result.error.value}",
                    caller=caller, action=action, resource=entity[0],
                    extra=dict(metadata, error=result.error.value)
                )
            return result

    def _persist(
        self,
        accounts: Iterable[str],
        allowance_keys: Iterable[Tuple[str, str]],
        meta: bool = False
    ) -> None:
        """Write the touched balances, allowances and ledger fields"""
        for account in set(accounts):
            self.storage.save(self.BALANCES_TABLE, str(account), {
                'account': account,
                'balance': str(self._ledger.balance_of(account))
            })
        for owner, spender in set(allowance_keys):
            self.storage.save(self.ALLOWANCES_TABLE, _allowance_key(owner, spender), {
                'owner': owner,
                'spender': spender,
                'amount': str(self._ledger.allowance(owner, spender))
            })
        if meta:
            self.storage.save(self.META_TABLE, self.STATE_ID, {
                'total_supply': str(self._ledger.total_supply()),
                'mint_authority': self._ledger.current_authority()
            })

    def _record_notifications(self, notifications: List[Notification]) -> None:
        sequence = self.storage.count(self.NOTIFICATIONS_TABLE)
        for notification in notifications:
            sequence += 1
            record = notification.to_dict()
            record['sequence'] = sequence
            self.storage.save(self.NOTIFICATIONS_TABLE, f"{sequence:012d}", record)

    def _audit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        caller: Optional[str],
        metadata: Dict[str, Any]
    ) -> None:
        if self.audit_trail is not None:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata,
                caller=caller
            )

    def _publish(self, notifications: List[Notification]) -> None:
        for notification in notifications:
            self.dispatcher.publish(notification)
