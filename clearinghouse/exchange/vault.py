"""
Collateral and insurance vaults.

Vaults hold the real tokens behind user collateral and the insurance reserve.
The clearing house never mutates a vault during an operation: it queues
directives (deposit / withdraw / transfer) and the state manager applies them
only after the operation has committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List

from ..exceptions import InsufficientCollateral

logger = logging.getLogger(__name__)


class Vault:
    """Token balance held on behalf of the clearing house."""

    def __init__(self, name: str, balance: int = 0) -> None:
        if balance < 0:
            raise ValueError("Vault balance must be non-negative")
        self.name = name
        self.balance = balance
        # recipient -> total amount paid out
        self.payouts: Dict[str, int] = {}

    def deposit(self, sender: str, amount: int) -> None:
        if amount <= 0:
            raise ValueError("Deposit amount must be positive")
        self.balance += amount
        logger.debug("[%s] deposit %d from user=%s", self.name, amount, sender)

    def withdraw(self, recipient: str, amount: int) -> None:
        if amount <= 0:
            raise ValueError("Withdraw amount must be positive")
        if amount > self.balance:
            raise InsufficientCollateral(
                f"{self.name} balance {self.balance} below withdrawal {amount}"
            )
        self.balance -= amount
        self.payouts[recipient] = self.payouts.get(recipient, 0) + amount
        logger.debug("[%s] withdraw %d to user=%s", self.name, amount, recipient)

    def transfer_to(self, other: Vault, amount: int) -> None:
        if amount <= 0:
            raise ValueError("Transfer amount must be positive")
        if amount > self.balance:
            raise InsufficientCollateral(
                f"{self.name} balance {self.balance} below transfer {amount}"
            )
        self.balance -= amount
        other.balance += amount
        logger.debug("[%s] transfer %d to %s", self.name, amount, other.name)


# ---------------------------------------------------------------------------
# Directives
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VaultDirective:
    """One queued vault call. `counterparty` is a user for deposit/withdraw and a vault for transfer."""
    action: str          # "deposit" | "withdraw" | "transfer"
    vault: str
    counterparty: str
    amount: int


def balance_deltas(directives: List[VaultDirective]) -> Dict[str, int]:
    """Net balance change per vault name if every directive were applied."""
    deltas: Dict[str, int] = {}
    for d in directives:
        if d.action == "deposit":
            deltas[d.vault] = deltas.get(d.vault, 0) + d.amount
        elif d.action == "withdraw":
            deltas[d.vault] = deltas.get(d.vault, 0) - d.amount
        elif d.action == "transfer":
            deltas[d.vault] = deltas.get(d.vault, 0) - d.amount
            deltas[d.counterparty] = deltas.get(d.counterparty, 0) + d.amount
        else:
            raise ValueError(f"Unknown vault action: {d.action}")
    return deltas
