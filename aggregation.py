"""Pure aggregates over a snapshot of transactions.

None of these functions mutate or reorder their input, so one snapshot tuple
can be handed to several readers in the same tick.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from models import TransactionKind
from schemas import Amount, Transaction


@dataclass(frozen=True)
class Totals:
    income: Amount = 0
    expense: Amount = 0
    balance: Amount = 0

    def as_dict(self) -> dict[str, Amount]:
        return {"income": self.income, "expense": self.expense, "balance": self.balance}


@dataclass(frozen=True)
class CategoryTotal:
    amount: Amount
    kind: TransactionKind


def totals(transactions: Iterable[Transaction]) -> Totals:
    income: Amount = 0
    expense: Amount = 0
    for txn in transactions:
        if txn.kind == TransactionKind.income:
            income += txn.amount
        else:
            expense += txn.amount
    return Totals(income=income, expense=expense, balance=income - expense)


def by_category(transactions: Iterable[Transaction]) -> dict[str, CategoryTotal]:
    """Group amounts by exact category label.

    Income and expense amounts sharing a label are summed together and the
    entry keeps the kind of the last transaction seen. This mirrors the
    dashboard chart data and is kept as-is pending a product decision.
    """
    grouped: dict[str, CategoryTotal] = {}
    for txn in transactions:
        previous = grouped.get(txn.category)
        amount = txn.amount if previous is None else previous.amount + txn.amount
        grouped[txn.category] = CategoryTotal(amount=amount, kind=txn.kind)
    return grouped


def category_breakdown(
    transactions: Iterable[Transaction], kind: TransactionKind
) -> list[dict[str, object]]:
    sums: dict[str, Amount] = {}
    for txn in transactions:
        if txn.kind != kind:
            continue
        sums[txn.category] = sums.get(txn.category, 0) + txn.amount
    total = sum(sums.values())
    breakdown = []
    for name, amount in sorted(sums.items(), key=lambda item: item[1], reverse=True):
        percent = (amount / total * 100) if total else 0
        breakdown.append({"name": name, "amount": amount, "percent": percent})
    return breakdown


def chart_series(
    transactions: Iterable[Transaction], kind: TransactionKind
) -> tuple[list[str], list[Amount]]:
    breakdown = category_breakdown(transactions, kind)
    return [row["name"] for row in breakdown], [row["amount"] for row in breakdown]
