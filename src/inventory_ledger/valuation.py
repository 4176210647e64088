"""Valuation engine for the inventory ledger.

Every function in this module is a pure computation over a snapshot of the
transaction log supplied by the caller. Nothing here reads the workbook,
mutates its inputs, or raises for degenerate queries: empty ledgers, zero
stock, and inverted date ranges all resolve to zero/empty results.

Costing order is ``(date ascending, insertion order)``. Insertion order is the
position of a transaction inside the snapshot, which mirrors the row order of
the ``Transactions`` sheet.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from . import log
from .constants import TransactionType, ValuationMethod
from .data_manager import ProductRow, TransactionRow


ZERO = Decimal("0")

DateBound = Union[datetime, date, str]


@dataclass(frozen=True)
class StockLevel:
    """Current stock for one product."""

    product_id: str
    stock: Decimal


@dataclass(frozen=True)
class LotBalance:
    """Quantity of one entry lot still on hand after consumption."""

    transaction_id: str
    date_iso: str
    quantity: Decimal
    unit_cost: Decimal

    @property
    def value(self) -> Decimal:
        return self.quantity * self.unit_cost


@dataclass(frozen=True)
class CostBreakdown:
    """Result of a valuation query.

    Attributes:
        method: Costing convention used.
        entries: Entry transactions inside the query range, in ledger order.
        exits: Exit transactions inside the query range, in ledger order.
        remaining_stock: Units left after all exits were applied.
        total_cost: Cost of the remaining units.
        average_cost: ``total_cost / remaining_stock`` or zero when nothing
            remains.
        open_lots: Lots left in the queue for FIFO/LIFO, oldest first. Empty
            for the weighted-average method, which blends all lots.
    """

    method: ValuationMethod
    entries: Tuple[TransactionRow, ...]
    exits: Tuple[TransactionRow, ...]
    remaining_stock: Decimal
    total_cost: Decimal
    average_cost: Decimal
    open_lots: Tuple[LotBalance, ...] = ()


@dataclass
class _Lot:
    """Mutable lot state used while draining exits against entries."""

    transaction_id: str
    date_iso: str
    quantity: Decimal
    unit_cost: Decimal


def parse_timestamp(value: DateBound) -> datetime:
    """Normalize a timestamp into a timezone-aware UTC ``datetime``.

    Plain dates and date-only strings resolve to midnight. Naive values are
    interpreted as UTC so that they compare cleanly with aware ones.

    Raises:
        ValueError: If a string is not valid ISO-8601.
    """

    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime.combine(value, time.min)
    else:
        moment = datetime.fromisoformat(str(value).strip())

    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def _try_parse(value: DateBound) -> Optional[datetime]:
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


def is_entry(transaction: TransactionRow) -> bool:
    return transaction.transaction_type == TransactionType.ENTRY.value


def is_exit(transaction: TransactionRow) -> bool:
    return transaction.transaction_type == TransactionType.EXIT.value


def signed_quantity(transaction: TransactionRow) -> Decimal:
    """Return the stock delta of a transaction: ``+quantity`` or ``-quantity``."""

    if is_entry(transaction):
        return transaction.quantity
    if is_exit(transaction):
        return -transaction.quantity
    return ZERO


# ---------------------------------------------------------------------------
# Stock aggregation
# ---------------------------------------------------------------------------


def current_stock(transactions: Iterable[TransactionRow], product_id: str) -> Decimal:
    """Sum entries minus exits over every transaction of ``product_id``.

    The result does not depend on the order of ``transactions`` and is zero
    for a product that never moved.
    """

    return sum(
        (signed_quantity(t) for t in transactions if t.product_id == product_id),
        ZERO,
    )


def stock_by_product(transactions: Iterable[TransactionRow]) -> Dict[str, Decimal]:
    """Roll up current stock for every product appearing in the ledger."""

    balances: Dict[str, Decimal] = {}
    for transaction in transactions:
        balances[transaction.product_id] = (
            balances.get(transaction.product_id, ZERO) + signed_quantity(transaction)
        )
    return balances


def low_stock_products(
    products: Sequence[ProductRow],
    transactions: Sequence[TransactionRow],
) -> List[ProductRow]:
    """Return products whose stock is at or below their ``min_stock``.

    The comparison is inclusive: a product sitting exactly at its minimum
    already needs reordering. Catalog order is preserved.
    """

    balances = stock_by_product(transactions)
    return [
        product
        for product in products
        if balances.get(product.product_id, ZERO) <= product.min_stock
    ]


def category_stock(
    products: Sequence[ProductRow],
    transactions: Sequence[TransactionRow],
    category_id: str,
) -> List[StockLevel]:
    """Return one :class:`StockLevel` per product of ``category_id``, in catalog order."""

    balances = stock_by_product(transactions)
    return [
        StockLevel(product_id=product.product_id, stock=balances.get(product.product_id, ZERO))
        for product in products
        if product.category_id == category_id
    ]


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------


def filter_transactions(
    transactions: Sequence[TransactionRow],
    product_id: str,
    start: DateBound,
    end: DateBound,
) -> List[TransactionRow]:
    """Select the transactions of ``product_id`` dated within ``[start, end]``.

    Both bounds are inclusive. An inverted range (``start > end``) or a bound
    that cannot be parsed yields an empty list. Transactions whose stored date
    cannot be parsed never match. Ledger order is preserved.
    """

    start_at = _try_parse(start)
    end_at = _try_parse(end)
    if start_at is None or end_at is None:
        log.warning("Ignoring unparseable date range %r..%r", start, end)
        return []
    if start_at > end_at:
        return []

    selected: List[TransactionRow] = []
    for transaction in transactions:
        if transaction.product_id != product_id:
            continue
        moment = _try_parse(transaction.date_iso)
        if moment is None:
            log.warning(
                "Skipping transaction '%s' with unparseable date %r",
                transaction.transaction_id,
                transaction.date_iso,
            )
            continue
        if start_at <= moment <= end_at:
            selected.append(transaction)
    return selected


def costing_order(transactions: Sequence[TransactionRow]) -> List[TransactionRow]:
    """Sort by date ascending, keeping ledger order between equal dates.

    Callers pass transactions that already went through
    :func:`filter_transactions`, so every date parses.
    """

    indexed = list(enumerate(transactions))
    indexed.sort(key=lambda pair: (parse_timestamp(pair[1].date_iso), pair[0]))
    return [transaction for _, transaction in indexed]


# ---------------------------------------------------------------------------
# Costing algorithms
# ---------------------------------------------------------------------------


def simulate_lot_consumption(
    entries: Sequence[TransactionRow],
    exits: Sequence[TransactionRow],
    *,
    newest_first: bool,
) -> List[_Lot]:
    """Drain ``exits`` against a queue of entry lots.

    Lots are queued in costing order (FIFO) or its reverse (LIFO) and exits are
    always applied in costing order. Each exit consumes whole lots from the
    front of the queue while they fit and then decrements the next one. An exit
    that outlasts the queue has its remainder dropped.

    Returns:
        list[_Lot]: Lots still holding stock, in queue order.
    """

    ordered_entries = costing_order(entries)
    if newest_first:
        ordered_entries.reverse()

    queue = deque(
        _Lot(
            transaction_id=entry.transaction_id,
            date_iso=entry.date_iso,
            quantity=entry.quantity,
            unit_cost=entry.unit_cost,
        )
        for entry in ordered_entries
    )

    for exit_ in costing_order(exits):
        needed = exit_.quantity
        while needed > ZERO and queue:
            front = queue[0]
            if front.quantity <= needed:
                needed -= front.quantity
                queue.popleft()
            else:
                front.quantity -= needed
                needed = ZERO
        if needed > ZERO:
            log.debug(
                "Exit '%s' exceeded available lots by %s units; remainder dropped",
                exit_.transaction_id,
                needed,
            )

    return list(queue)


def weighted_average_totals(
    entries: Sequence[TransactionRow],
    exits: Sequence[TransactionRow],
) -> Tuple[Decimal, Decimal]:
    """Fold entries into one blended pool and charge exits at its average cost.

    An exit larger than the pool consumes only the units left, so the totals
    never go negative. This differs from subtracting the full exit quantity,
    which would leave a negative pool behind an oversold exit. Exits that
    arrive once the pool is empty are skipped.

    Returns:
        tuple[Decimal, Decimal]: ``(total_units, total_value)`` left in the pool.
    """

    total_units = sum((entry.quantity for entry in entries), ZERO)
    total_value = sum((entry.quantity * entry.unit_cost for entry in entries), ZERO)

    for exit_ in costing_order(exits):
        if total_units <= ZERO:
            continue
        average = total_value / total_units
        consumed = min(exit_.quantity, total_units)
        total_units -= consumed
        if total_units == ZERO:
            total_value = ZERO
        else:
            total_value -= consumed * average

    return total_units, total_value


def _average(total_cost: Decimal, remaining: Decimal) -> Decimal:
    return total_cost / remaining if remaining > ZERO else ZERO


def calculate_inventory_cost(
    transactions: Sequence[TransactionRow],
    product_id: str,
    method: ValuationMethod,
    start: DateBound,
    end: DateBound,
) -> CostBreakdown:
    """Value the stock of ``product_id`` over ``[start, end]`` under ``method``.

    Args:
        transactions: Snapshot of the whole ledger.
        product_id: Product to value.
        method: FIFO, LIFO, or weighted average.
        start: Inclusive lower date bound.
        end: Inclusive upper date bound.

    Returns:
        CostBreakdown: Entries and exits considered plus the remaining
            quantity, its cost, and the average unit cost.
    """

    method = ValuationMethod(method)
    selected = filter_transactions(transactions, product_id, start, end)
    entries = tuple(t for t in selected if is_entry(t))
    exits = tuple(t for t in selected if is_exit(t))

    if method is ValuationMethod.WEIGHTED:
        remaining, total_cost = weighted_average_totals(entries, exits)
        open_lots: Tuple[LotBalance, ...] = ()
    else:
        newest_first = method is ValuationMethod.LIFO
        lots = simulate_lot_consumption(entries, exits, newest_first=newest_first)
        if newest_first:
            # report lots oldest first regardless of queue direction
            lots.reverse()
        remaining = sum((lot.quantity for lot in lots), ZERO)
        total_cost = sum((lot.quantity * lot.unit_cost for lot in lots), ZERO)
        open_lots = tuple(
            LotBalance(
                transaction_id=lot.transaction_id,
                date_iso=lot.date_iso,
                quantity=lot.quantity,
                unit_cost=lot.unit_cost,
            )
            for lot in lots
        )

    breakdown = CostBreakdown(
        method=method,
        entries=entries,
        exits=exits,
        remaining_stock=remaining,
        total_cost=total_cost,
        average_cost=_average(total_cost, remaining),
        open_lots=open_lots,
    )
    log.debug(
        "Valued product '%s' with %s: remaining=%s total=%s average=%s",
        product_id,
        method.value,
        breakdown.remaining_stock,
        breakdown.total_cost,
        breakdown.average_cost,
    )
    return breakdown
