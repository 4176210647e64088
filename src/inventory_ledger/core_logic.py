"""Business logic layer for the inventory ledger.

This module owns the runtime context around the ledger workbook. It exposes
the catalog operations (categories and products), the validated append path
for stock movements, and the read-only query API that hands snapshots of the
transaction log to :mod:`inventory_ledger.valuation`.

All I/O goes through the Data Access Layer (DAL) in
:mod:`inventory_ledger.data_manager`. The transaction log is append-only:
nothing in this module edits or removes a transaction once written.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from openpyxl.workbook import Workbook

from . import data_manager, log, valuation
from .constants import EXPECTED_SCHEMA_VERSION, TransactionType, ValuationMethod


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced category, product, or transaction is unknown."""


class InsufficientStockError(BusinessRuleViolation):
    """Signals an exit that would drive a product's stock below zero."""

    def __init__(self, product_id: str, requested: Decimal, available: Decimal) -> None:
        super().__init__(
            f"Not enough stock for product '{product_id}': "
            f"requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class ReferenceInUseError(BusinessRuleViolation):
    """Raised when a catalog record cannot be removed while still referenced."""


class CategoryInUseError(ReferenceInUseError):
    """Raised when deleting a category that products still belong to."""


class ProductHasTransactionsError(ReferenceInUseError):
    """Raised when deleting a product that appears in the transaction log."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL.

    ``_write_lock`` serializes every write so that the stock check and the
    append of an exit happen as one step.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _write_lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class TransactionDraft:
    """User intent for a stock movement before it receives an identifier.

    ``unit_cost`` is ignored for exits. ``date`` defaults to the current UTC
    time and may be a ``datetime``, a ``date``, or an ISO-8601 string.
    """

    product_id: str
    transaction_type: TransactionType
    quantity: Decimal
    unit_cost: Decimal = Decimal("0")
    date: Optional[Union[datetime, date, str]] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class AppendResult:
    """Outcome of :func:`append_transaction`.

    Exactly one of ``transaction`` and ``error`` is set.
    """

    transaction: Optional[data_manager.TransactionRow] = None
    error: Optional[BusinessRuleViolation] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> data_manager.TransactionRow:
        """Return the stored transaction or raise the recorded failure."""

        if self.error is not None:
            raise self.error
        assert self.transaction is not None
        return self.transaction


def _resolve_timestamp(candidate: Optional[Union[datetime, date, str]]) -> datetime:
    """Resolve optional draft dates into timezone-aware UTC values.

    Raises:
        ValueError: If ``candidate`` is a string that is not ISO-8601.
    """

    if candidate is None:
        return datetime.now(UTC)
    return valuation.parse_timestamp(candidate)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets hold precomputed query results per domain area (categories,
    products, transactions) so repeated reads do not rescan the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_categories_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "categories")
    if "all" not in bucket:
        all_categories = list(data_manager.iter_categories(context.workbook))
        bucket["all"] = all_categories
        bucket["by_id"] = {category.category_id: category for category in all_categories}
        log.debug("Populated categories cache with %d entries", len(all_categories))
    return bucket


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the product cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` products and a ``by_id``
            lookup dictionary.
    """

    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = list(data_manager.iter_products(context.workbook))
        bucket["all"] = all_products
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug("Populated products cache with %d entries", len(all_products))
    return bucket


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the transaction log cache bucket on demand.

    Transactions are immutable after creation, so the cached tuple is a stable
    snapshot until the next append invalidates it.

    Returns:
        dict[str, Any]: Bucket containing ``all`` transactions (as a tuple in
            workbook order) and a ``by_id`` dictionary.
    """

    bucket = _get_cache_bucket(context, "transactions")
    if "all" not in bucket:
        all_transactions = tuple(data_manager.iter_transactions(context.workbook))
        bucket["all"] = all_transactions
        bucket["by_id"] = {transaction.transaction_id: transaction for transaction in all_transactions}
        log.debug("Populated transactions cache with %d entries", len(all_transactions))
    return bucket


def _snapshot(context: RuntimeContext) -> tuple[data_manager.TransactionRow, ...]:
    return _ensure_transactions_cache(context)["all"]


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


# ---------------------------------------------------------------------------
# Ledger store reads
# ---------------------------------------------------------------------------


def list_categories(context: RuntimeContext) -> List[data_manager.CategoryRow]:
    """Return the category catalog in sheet order."""
    return list(_ensure_categories_cache(context)["all"])


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return the product catalog in sheet order."""
    return list(_ensure_products_cache(context)["all"])


def list_transactions(context: RuntimeContext) -> List[data_manager.TransactionRow]:
    """Fetch the immutable transaction log from cache.

    The returned list is a shallow copy so callers can freely sort or filter
    without touching the shared cache. Entries remain in workbook order, which
    is insertion order.
    """
    return list(_snapshot(context))


def get_category(context: RuntimeContext, category_id: str) -> data_manager.CategoryRow:
    """Resolve a category record by its identifier.

    Raises:
        MissingReferenceError: If ``category_id`` is absent from the workbook.
    """
    try:
        return _ensure_categories_cache(context)["by_id"][category_id]
    except KeyError as exc:
        log.warning("Category lookup failed for id '%s'", category_id)
        raise MissingReferenceError(f"Unknown category id: {category_id}") from exc


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    try:
        return _ensure_products_cache(context)["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}") from exc


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Retrieve a transaction row by its primary identifier.

    Raises:
        MissingReferenceError: If the log lacks the supplied identifier.
    """
    try:
        return _ensure_transactions_cache(context)["by_id"][transaction_id]
    except KeyError as exc:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise MissingReferenceError(f"Unknown transaction id: {transaction_id}") from exc


# ---------------------------------------------------------------------------
# Catalog management
# ---------------------------------------------------------------------------


def generate_id(prefix: str) -> str:
    """Generate a unique identifier such as ``T-3f2a...``.

    Identifiers are random so they are never reused, even when several
    records share a timestamp.
    """
    return f"{prefix}-{uuid.uuid4().hex}"


def add_category(
    context: RuntimeContext,
    *,
    name: str,
    description: str = "",
    category_id: Optional[str] = None,
) -> data_manager.CategoryRow:
    """Append a new category to the catalog.

    Raises:
        BusinessRuleViolation: If ``category_id`` is already taken.
        ValueError: If ``name`` is blank.
    """
    require_text(name, "Category name")
    with context._write_lock:
        new_id = category_id or generate_id("C")
        if new_id in _ensure_categories_cache(context)["by_id"]:
            raise BusinessRuleViolation(f"Category '{new_id}' already exists")
        record = data_manager.CategoryRow(category_id=new_id, name=name.strip(), description=description)
        data_manager.append_category(context.workbook, record)
        _invalidate_cache(context, "categories")
    log.info("Added category '%s' (%s)", record.category_id, record.name)
    return record


def update_category(context: RuntimeContext, category_id: str, /, **changes: Any) -> data_manager.CategoryRow:
    """Replace selected fields (``name``, ``description``) of a category.

    Raises:
        MissingReferenceError: If the category does not exist.
        ValueError: If ``changes`` names an unknown or immutable field.
    """
    with context._write_lock:
        current = get_category(context, category_id)
        updated = _apply_changes(current, changes, immutable=("category_id",))
        require_text(updated.name, "Category name")
        data_manager.update_category(
            context.workbook,
            category_id,
            field_values=_row_values(data_manager.CATEGORIES_SHEET, data_manager.serialize_category(updated)),
        )
        _invalidate_cache(context, "categories")
    log.info("Updated category '%s'", category_id)
    return updated


def delete_category(context: RuntimeContext, category_id: str) -> None:
    """Remove a category that no product belongs to.

    Raises:
        MissingReferenceError: If the category does not exist.
        CategoryInUseError: If at least one product references it.
    """
    with context._write_lock:
        get_category(context, category_id)
        if any(product.category_id == category_id for product in list_products(context)):
            log.warning("Refusing to delete category '%s' while products use it", category_id)
            raise CategoryInUseError(f"Category '{category_id}' is in use by products")
        data_manager.delete_row(context.workbook, data_manager.CATEGORIES_SHEET, "CategoryID", category_id)
        _invalidate_cache(context, "categories")
    log.info("Deleted category '%s'", category_id)


def add_product(
    context: RuntimeContext,
    *,
    name: str,
    category_id: Optional[str] = None,
    sku: str = "",
    min_stock: Decimal = Decimal("0"),
    price: Decimal = Decimal("0.00"),
    description: str = "",
    barcode: Optional[str] = None,
    product_id: Optional[str] = None,
) -> data_manager.ProductRow:
    """Append a new product to the catalog.

    When ``category_id`` is omitted the configured default category is used.

    Raises:
        MissingReferenceError: If the category does not exist.
        BusinessRuleViolation: If ``product_id`` is already taken.
        ValueError: If the name is blank or a numeric field is negative.
    """
    require_text(name, "Product name")
    require_nonnegative_quantity(min_stock)
    require_nonnegative_money(price)
    with context._write_lock:
        target_category = category_id or context.settings.default_category_id
        get_category(context, target_category)
        new_id = product_id or generate_id("P")
        if new_id in _ensure_products_cache(context)["by_id"]:
            raise BusinessRuleViolation(f"Product '{new_id}' already exists")
        record = data_manager.ProductRow(
            product_id=new_id,
            name=name.strip(),
            description=description,
            category_id=target_category,
            sku=sku,
            min_stock=min_stock,
            price=price,
            barcode=barcode,
        )
        data_manager.append_product(context.workbook, record)
        _invalidate_cache(context, "products")
    log.info("Added product '%s' (%s) to category '%s'", record.product_id, record.name, target_category)
    return record


def update_product(context: RuntimeContext, product_id: str, /, **changes: Any) -> data_manager.ProductRow:
    """Replace selected fields of a product.

    Raises:
        MissingReferenceError: If the product or a new category is unknown.
        ValueError: If ``changes`` names an unknown or immutable field, or a
            numeric field becomes negative.
    """
    with context._write_lock:
        current = get_product(context, product_id)
        updated = _apply_changes(current, changes, immutable=("product_id",))
        require_text(updated.name, "Product name")
        require_nonnegative_quantity(updated.min_stock)
        require_nonnegative_money(updated.price)
        if updated.category_id != current.category_id:
            get_category(context, updated.category_id)
        data_manager.update_product(
            context.workbook,
            product_id,
            field_values=_row_values(data_manager.PRODUCTS_SHEET, data_manager.serialize_product(updated)),
        )
        _invalidate_cache(context, "products")
    log.info("Updated product '%s'", product_id)
    return updated


def delete_product(context: RuntimeContext, product_id: str) -> None:
    """Remove a product that never appeared in the transaction log.

    Raises:
        MissingReferenceError: If the product does not exist.
        ProductHasTransactionsError: If any transaction references it.
    """
    with context._write_lock:
        get_product(context, product_id)
        if any(transaction.product_id == product_id for transaction in _snapshot(context)):
            log.warning("Refusing to delete product '%s' with recorded transactions", product_id)
            raise ProductHasTransactionsError(f"Product '{product_id}' has transactions")
        data_manager.delete_row(context.workbook, data_manager.PRODUCTS_SHEET, "ProductID", product_id)
        _invalidate_cache(context, "products")
    log.info("Deleted product '%s'", product_id)


def _apply_changes(record: Any, changes: Dict[str, Any], *, immutable: tuple[str, ...]) -> Any:
    for name in changes:
        if name in immutable:
            raise ValueError(f"Field '{name}' cannot be changed")
    try:
        return replace(record, **changes)
    except TypeError as exc:
        raise ValueError(f"Unknown field in update: {exc}") from exc


def _row_values(sheet_name: str, values: List[object]) -> Dict[str, object]:
    return dict(zip(data_manager.SHEET_COLUMNS[sheet_name], values))


# ---------------------------------------------------------------------------
# Stock movements
# ---------------------------------------------------------------------------


def append_transaction(context: RuntimeContext, draft: TransactionDraft) -> AppendResult:
    """Validate a draft and append it to the transaction log.

    Exits are only accepted when the product's current stock covers the
    requested quantity. The stock check, the append, and the cache
    invalidation run under the context's write lock so concurrent writers
    cannot both pass the check against the same stock.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        draft (TransactionDraft): Movement to record.

    Returns:
        AppendResult: The stored transaction, or a typed failure
            (:class:`InsufficientStockError` or :class:`MissingReferenceError`)
            with the ledger left unchanged.

    Raises:
        ValueError: If the draft itself is malformed (non-positive quantity,
            negative unit cost, unknown type, or unparseable date).
    """
    transaction_type = TransactionType(draft.transaction_type)
    require_positive_quantity(draft.quantity)
    if transaction_type is TransactionType.ENTRY:
        require_nonnegative_money(draft.unit_cost)
    timestamp = _resolve_timestamp(draft.date)

    with context._write_lock:
        try:
            get_product(context, draft.product_id)
        except MissingReferenceError as error:
            return AppendResult(error=error)

        if transaction_type is TransactionType.EXIT:
            available = valuation.current_stock(_snapshot(context), draft.product_id)
            if available < draft.quantity:
                log.warning(
                    "Rejected exit for product '%s': requested %s, available %s",
                    draft.product_id,
                    draft.quantity,
                    available,
                )
                return AppendResult(
                    error=InsufficientStockError(draft.product_id, draft.quantity, available)
                )

        transaction = build_transaction(
            draft,
            transaction_type=transaction_type,
            transaction_id=generate_id("T"),
            timestamp=timestamp,
        )
        data_manager.append_transaction(context.workbook, transaction)
        _invalidate_cache(context, "transactions")

    log.info(
        "Recorded %s transaction '%s' for product '%s' (quantity=%s, unit_cost=%s)",
        transaction.transaction_type,
        transaction.transaction_id,
        transaction.product_id,
        transaction.quantity,
        transaction.unit_cost,
    )
    return AppendResult(transaction=transaction)


def build_transaction(
    draft: TransactionDraft,
    *,
    transaction_type: TransactionType,
    transaction_id: str,
    timestamp: datetime,
) -> data_manager.TransactionRow:
    """Materialize a draft into a DAL transaction row.

    Exits never carry a unit cost; their value is decided at valuation time.
    """
    unit_cost = draft.unit_cost if transaction_type is TransactionType.ENTRY else Decimal("0")
    return data_manager.TransactionRow(
        transaction_id=transaction_id,
        product_id=draft.product_id,
        transaction_type=transaction_type.value,
        quantity=draft.quantity,
        unit_cost=unit_cost,
        date_iso=timestamp.isoformat(),
        notes=draft.notes,
    )


def require_finite(value: Decimal, label: str) -> None:
    """Reject NaN and infinite amounts before they reach any comparison.

    Raises:
        ValueError: If ``value`` is not a finite number.
    """
    if not Decimal(value).is_finite():
        log.error("%s validation failed: %s", label, value)
        raise ValueError(f"{label} must be a finite number")


def require_positive_quantity(quantity: Decimal) -> None:
    """Validate that a quantity is finite and strictly positive.

    Raises:
        ValueError: If ``quantity`` is NaN, infinite, zero, or negative.
    """
    require_finite(quantity, "Quantity")
    if quantity <= Decimal("0"):
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_quantity(quantity: Decimal) -> None:
    require_finite(quantity, "Quantity")
    if quantity < Decimal("0"):
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be zero or positive")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is finite and nonnegative.

    Raises:
        ValueError: If ``amount`` is NaN, infinite, or less than zero.
    """
    require_finite(amount, "Amount")
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def require_text(value: str, label: str) -> None:
    if not value or not value.strip():
        raise ValueError(f"{label} must not be blank")


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_product_stock(context: RuntimeContext, product_id: str) -> Decimal:
    """Current stock of ``product_id``; zero when it never moved."""
    return valuation.current_stock(_snapshot(context), product_id)


def get_category_stock(context: RuntimeContext, category_id: str) -> List[valuation.StockLevel]:
    """Stock of every product in ``category_id``, in catalog order."""
    return valuation.category_stock(list_products(context), _snapshot(context), category_id)


def get_low_stock_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Products at or below their minimum stock, in catalog order."""
    return valuation.low_stock_products(list_products(context), _snapshot(context))


def get_product_transactions(
    context: RuntimeContext,
    product_id: str,
    start: valuation.DateBound,
    end: valuation.DateBound,
) -> List[data_manager.TransactionRow]:
    """Transactions of ``product_id`` dated within the inclusive range."""
    return valuation.filter_transactions(_snapshot(context), product_id, start, end)


def calculate_inventory_cost(
    context: RuntimeContext,
    product_id: str,
    method: Optional[Union[ValuationMethod, str]],
    start: valuation.DateBound,
    end: valuation.DateBound,
) -> valuation.CostBreakdown:
    """Value a product's stock over a date range.

    Args:
        context (RuntimeContext): Runtime context providing the ledger.
        product_id (str): Product to value.
        method (ValuationMethod | str | None): Costing convention. Strings
            accept the PEPS/UEPS aliases; ``None`` uses the configured default.
        start: Inclusive lower date bound.
        end: Inclusive upper date bound.

    Returns:
        valuation.CostBreakdown: Remaining stock, total cost, and average cost.

    Raises:
        ValueError: If ``method`` names no supported convention.
    """
    if method is None:
        resolved = context.settings.valuation_method
    elif isinstance(method, ValuationMethod):
        resolved = method
    else:
        resolved = ValuationMethod.parse(method)
    return valuation.calculate_inventory_cost(_snapshot(context), product_id, resolved, start, end)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    with context._write_lock:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook and
            an empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)
