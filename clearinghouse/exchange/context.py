"""
Per-operation execution context.

Bundles the staged store, the oracle feeds, the committed history log and an
outbox collecting everything the operation wants to emit. Nothing in the
outbox reaches the history log or the vaults until the state manager commits.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from .history import HistoryLog, HistoryRecord
from .oracle import PriceFeedRegistry
from .store import Store
from .types import OracleGuardRails, State
from .vault import VaultDirective, balance_deltas


class Outbox:
    """History records and vault directives queued by one operation."""

    def __init__(self, history: HistoryLog) -> None:
        self._history = history
        self.records: List[HistoryRecord] = []
        self.vault_directives: List[VaultDirective] = []

    def emit(self, record: HistoryRecord) -> HistoryRecord:
        """Queue a record, assigning the id it will have once flushed."""
        pending = sum(1 for r in self.records if type(r) is type(record))
        record.record_id = self._history.next_record_id(type(record)) + pending
        self.records.append(record)
        return record

    def deposit(self, vault: str, sender: str, amount: int) -> None:
        if amount > 0:
            self.vault_directives.append(VaultDirective("deposit", vault, sender, amount))

    def withdraw(self, vault: str, recipient: str, amount: int) -> None:
        if amount > 0:
            self.vault_directives.append(VaultDirective("withdraw", vault, recipient, amount))

    def transfer(self, vault: str, to_vault: str, amount: int) -> None:
        if amount > 0:
            self.vault_directives.append(VaultDirective("transfer", vault, to_vault, amount))


@dataclass
class ExecutionContext:
    store: Store
    feeds: PriceFeedRegistry
    outbox: Outbox
    now: int
    sender: str = ""
    # committed vault balances at the start of the operation
    vault_balances: Dict[str, int] = field(default_factory=dict)

    @property
    def state(self) -> State:
        return self.store.state

    @property
    def guard_rails(self) -> OracleGuardRails:
        return self.store.oracle_guard_rails

    def vault_balance(self, name: str) -> int:
        """Committed balance adjusted by the directives this operation has queued so far."""
        return self.vault_balances.get(name, 0) + balance_deltas(self.outbox.vault_directives).get(name, 0)
