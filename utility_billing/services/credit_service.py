"""Credit balance manager: the single source of truth for a unit's standing credit.

Every change appends a signed history entry in the same unit of work as the
payment or reversal that caused it. Entries are never edited; a reversal
appends the compensating entry and links it to the original.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from utility_billing.errors import InconsistentStateError, InsufficientCreditError, ValidationError
from utility_billing.models.credit_balance import CreditBalance, CreditHistoryEntry, CreditReason
from utility_billing.services.bill_store import BillStore
from utility_billing.services.currency import Money

logger = logging.getLogger(__name__)

# Reason recorded when an entry of the given reason is reversed
REVERSAL_REASONS = {
    CreditReason.USED: CreditReason.RESTORED,
    CreditReason.APPLIED: CreditReason.ADJUSTED,
    CreditReason.ADJUSTED: CreditReason.ADJUSTED,
}


@dataclass(frozen=True)
class CreditHistoryItem:
    id: int
    timestamp: datetime
    amount: Money
    balance_after: Money
    reason: CreditReason
    transaction_ref: str | None
    note: str | None
    reverses_entry_id: int | None


def verify_credit(credit: CreditBalance) -> None:
    """Raise InconsistentStateError if the balance disagrees with its history."""
    history_total = credit.history_total()
    if credit.balance != history_total:
        raise InconsistentStateError(
            f"Credit balance {credit.client_id}/{credit.unit_id}: balance {credit.balance} "
            f"!= sum(history) {history_total}"
        )
    if credit.balance < 0:
        raise InconsistentStateError(
            f"Credit balance {credit.client_id}/{credit.unit_id} is negative: {credit.balance}"
        )


class CreditBalanceManager:
    """Atomic credit adjustments within the caller's unit of work."""

    def __init__(self, store: BillStore):
        self.store = store

    async def get_balance(self, client_id: str, unit_id: str) -> Money:
        credit = await self.store.get_credit_balance(client_id, unit_id)
        if credit is None:
            return Money(0)
        verify_credit(credit)
        return Money(credit.balance)

    async def _get_or_create(self, client_id: str, unit_id: str) -> CreditBalance:
        credit = await self.store.get_credit_balance(client_id, unit_id)
        if credit is None:
            credit = CreditBalance(client_id=client_id, unit_id=unit_id, balance=0, history=[])
            self.store.add_credit_balance(credit)
            # Sessions do not autoflush; later lookups must find the new row
            await self.store.flush()
        return credit

    async def adjust(
        self,
        client_id: str,
        unit_id: str,
        delta: Money,
        reason: CreditReason,
        transaction_ref: str | None,
        note: str | None = None,
        reverses_entry_id: int | None = None,
    ) -> Money:
        """Apply a signed change and record it in the history.

        Returns:
            New balance

        Raises:
            InsufficientCreditError: If a decrement exceeds the current balance
            InconsistentStateError: If the stored balance disagrees with its history
        """
        if not delta:
            return await self.get_balance(client_id, unit_id)

        credit = await self._get_or_create(client_id, unit_id)
        verify_credit(credit)

        new_balance = credit.balance + delta.centavos
        if new_balance < 0:
            raise InsufficientCreditError(unit_id, credit.balance, -delta.centavos)

        credit.history.append(
            CreditHistoryEntry(
                amount=delta.centavos,
                balance_after=new_balance,
                reason=CreditReason(reason).value,
                transaction_ref=transaction_ref,
                note=note,
                reverses_entry_id=reverses_entry_id,
            )
        )
        credit.balance = new_balance

        logger.debug(
            "Credit %s/%s %s %s -> %s (ref=%s)",
            client_id,
            unit_id,
            CreditReason(reason).value,
            delta,
            Money(new_balance),
            transaction_ref,
        )
        return Money(new_balance)

    async def manual_adjustment(
        self,
        client_id: str,
        unit_id: str,
        delta: Money,
        transaction_ref: str,
        note: str | None = None,
    ) -> Money:
        if not transaction_ref:
            raise ValidationError("transaction_ref is required for a credit adjustment")
        if not delta:
            raise ValidationError("Credit adjustment must not be zero")
        return await self.adjust(
            client_id, unit_id, delta, CreditReason.ADJUSTED, transaction_ref, note
        )

    async def reverse_transaction(self, client_id: str, unit_id: str, transaction_ref: str) -> Money:
        """Append compensating entries for every entry tagged with ``transaction_ref``.

        Increments are applied before decrements so a reversal never fails on
        an intermediate balance.
        """
        credit = await self.store.get_credit_balance(client_id, unit_id)
        if credit is None:
            return Money(0)

        compensated = {e.reverses_entry_id for e in credit.history if e.reverses_entry_id}
        originals = [
            e
            for e in credit.history
            if e.transaction_ref == transaction_ref
            and e.reverses_entry_id is None
            and e.id not in compensated
        ]
        originals.sort(key=lambda e: e.amount)  # negative amounts reverse into increments first

        balance = Money(credit.balance)
        for entry in originals:
            balance = await self.adjust(
                client_id,
                unit_id,
                Money(-entry.amount),
                REVERSAL_REASONS[CreditReason(entry.reason)],
                transaction_ref,
                note=f"Reversal of {CreditReason(entry.reason).value} entry {entry.id}",
                reverses_entry_id=entry.id,
            )
        return balance

    async def get_history(
        self, client_id: str, unit_id: str, limit: int = 50
    ) -> list[CreditHistoryItem]:
        """History entries, newest first."""
        credit = await self.store.get_credit_balance(client_id, unit_id)
        if credit is None:
            return []
        entries = sorted(credit.history, key=lambda e: e.id, reverse=True)[:limit]
        return [
            CreditHistoryItem(
                id=e.id,
                timestamp=e.timestamp,
                amount=Money(e.amount),
                balance_after=Money(e.balance_after),
                reason=CreditReason(e.reason),
                transaction_ref=e.transaction_ref,
                note=e.note,
                reverses_entry_id=e.reverses_entry_id,
            )
            for e in entries
        ]


__all__ = ["CreditBalanceManager", "CreditHistoryItem", "verify_credit", "REVERSAL_REASONS"]
