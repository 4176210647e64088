"""Data access layer for the inventory ledger.

This module provides low-level helpers that read from and write to the
ledger workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating, or
   removing individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName, ValuationMethod


CONFIG_FILE_NAME = "config.ini"
CATEGORIES_SHEET = SheetName.CATEGORIES.value
PRODUCTS_SHEET = SheetName.PRODUCTS.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value

# Column order of every managed sheet; serializers below follow it exactly.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    CATEGORIES_SHEET: ("CategoryID", "Name", "Description"),
    PRODUCTS_SHEET: (
        "ProductID",
        "Name",
        "Description",
        "CategoryID",
        "SKU",
        "MinStock",
        "Price",
        "Barcode",
    ),
    TRANSACTIONS_SHEET: (
        "TransactionID",
        "ProductID",
        "Type",
        "Quantity",
        "UnitCost",
        "Date",
        "Notes",
    ),
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_category_id: str
    valuation_method: ValuationMethod = ValuationMethod.FIFO


@dataclass(frozen=True)
class CategoryRow:
    """In-memory view of a row from the ``Categories`` sheet."""

    category_id: str
    name: str
    description: str


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    description: str
    category_id: str
    sku: str
    min_stock: Decimal
    price: Decimal
    barcode: Optional[str] = None


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet.

    ``unit_cost`` is only meaningful for entries; exits carry zero.
    """

    transaction_id: str
    product_id: str
    transaction_type: str
    quantity: Decimal
    unit_cost: Decimal
    date_iso: str
    notes: Optional[str] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback. The
    ``[Defaults] ValuationMethod`` option is optional and defaults to FIFO.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative data file
            entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If the configured valuation method is not supported.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_category = parser.get("Defaults", "DefaultCategory")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    method_raw = parser.get("Defaults", "ValuationMethod", fallback=ValuationMethod.FIFO.value)
    valuation_method = ValuationMethod.parse(method_raw)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_category_id=default_category,
        valuation_method=valuation_method,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the ledger ``.xlsx`` file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    log.debug("Opened workbook '%s' with sheets %s", data_file, wb.sheetnames)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_populated_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    """Yield raw rows below the header, skipping fully empty ones."""

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield raw


def iter_categories(workbook: Workbook) -> Iterable[CategoryRow]:
    """Iterate over category records stored on the ``Categories`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the ``Categories`` sheet.

    Yields:
        CategoryRow: One structured row per populated record, in sheet order.
    """

    for raw in _iter_populated_rows(workbook, CATEGORIES_SHEET):
        yield deserialize_category(raw)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the ``Products`` sheet.

    Yields:
        ProductRow: One structured row per populated record, in sheet order.
    """

    for raw in _iter_populated_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream transaction records from the ``Transactions`` worksheet.

    Sheet order is insertion order, which the valuation engine uses to break
    ties between movements sharing a timestamp.

    Args:
        workbook (Workbook): Workbook containing the transaction sheet.

    Yields:
        TransactionRow: Normalized transaction record for each populated row.
    """

    for raw in _iter_populated_rows(workbook, TRANSACTIONS_SHEET):
        yield deserialize_transaction(raw)


def append_category(workbook: Workbook, record: CategoryRow) -> None:
    """Append a category record to the ``Categories`` worksheet."""

    workbook[CATEGORIES_SHEET].append(serialize_category(record))


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Append a transaction record to the ``Transactions`` worksheet.

    Numerical fields remain :class:`~decimal.Decimal` instances after
    serialization, allowing Excel to preserve precision when the workbook is
    saved.
    """

    workbook[TRANSACTIONS_SHEET].append(serialize_transaction(record))


def update_row(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    *,
    field_values: dict[str, Any],
) -> None:
    """Update selected columns of the row whose ``key_column`` equals ``key_value``.

    Only the specified fields are modified, leaving other columns untouched.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Worksheet holding the record.
        key_column (str): Header title of the identifier column.
        key_value (str): Identifier of the row to update.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the row or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"Row not found in '{sheet_name}': {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def update_category(workbook: Workbook, category_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing category."""

    update_row(workbook, CATEGORIES_SHEET, "CategoryID", category_id, field_values=field_values)


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product."""

    update_row(workbook, PRODUCTS_SHEET, "ProductID", product_id, field_values=field_values)


def delete_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> None:
    """Remove the row identified by ``key_value`` from ``sheet_name``.

    Raises:
        KeyError: If no row matches.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"Row not found in '{sheet_name}': {key_value}")
    workbook[sheet_name].delete_rows(row_index)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    The header row itself is not considered during matching.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def _header_map(sheet: Any) -> dict[object, int]:
    # header title -> 1-based column index
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def serialize_category(record: CategoryRow) -> list[object]:
    """Convert a category dataclass into ``[CategoryID, Name, Description]``."""

    return [record.category_id, record.name, record.description]


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering.

    Returns:
        list[object]: Values arranged as ``[ProductID, Name, Description,
        CategoryID, SKU, MinStock, Price, Barcode]``.
    """

    return [
        record.product_id,
        record.name,
        record.description,
        record.category_id,
        record.sku,
        record.min_stock,
        record.price,
        record.barcode,
    ]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the transaction sheet column order."""

    return [
        record.transaction_id,
        record.product_id,
        record.transaction_type,
        record.quantity,
        record.unit_cost,
        record.date_iso,
        record.notes,
    ]


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def deserialize_category(raw_row: Sequence[object]) -> CategoryRow:
    """Convert a raw worksheet row into a strongly typed category record."""

    category_id, name, description = raw_row[:3]
    return CategoryRow(
        category_id=str(category_id),
        name=str(name) if name is not None else "",
        description=str(description) if description is not None else "",
    )


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Numeric columns become :class:`~decimal.Decimal` instances and id/text
    columns are coerced to ``str`` to avoid surprises caused by Excel
    automatically interpreting numbers.
    """

    (
        product_id,
        name,
        description,
        category_id,
        sku,
        min_stock_raw,
        price_raw,
        barcode,
    ) = raw_row[:8]

    return ProductRow(
        product_id=str(product_id),
        name=str(name) if name is not None else "",
        description=str(description) if description is not None else "",
        category_id=str(category_id) if category_id is not None else "",
        sku=str(sku) if sku is not None else "",
        min_stock=_to_decimal(min_stock_raw),
        price=_to_decimal(price_raw, "0.00"),
        barcode=_to_optional_str(barcode),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed transaction record.

    Dates typed directly into Excel come back as ``datetime`` objects; they are
    normalized to ISO-8601 text so every row exposes the same representation.
    """

    (
        transaction_id,
        product_id,
        transaction_type,
        quantity_raw,
        unit_cost_raw,
        date_raw,
        notes,
    ) = raw_row[:7]

    if isinstance(date_raw, (datetime, date)):
        date_iso = date_raw.isoformat()
    else:
        date_iso = str(date_raw) if date_raw is not None else ""

    return TransactionRow(
        transaction_id=str(transaction_id),
        product_id=str(product_id) if product_id is not None else "",
        transaction_type=str(transaction_type) if transaction_type is not None else "",
        quantity=_to_decimal(quantity_raw),
        unit_cost=_to_decimal(unit_cost_raw),
        date_iso=date_iso,
        notes=_to_optional_str(notes),
    )
