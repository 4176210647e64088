"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from conftest import DEFAULT_CATEGORY_ID, make_product
from inventory_ledger import constants, data_manager
from inventory_ledger.constants import ValuationMethod


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directories(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=inventory_ledger.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "StoreName") == "Test Store"
    assert parser.get("Defaults", "DefaultCategory") == DEFAULT_CATEGORY_ID


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.default_category_id == DEFAULT_CATEGORY_ID
    assert settings.store_name == "Test Store"


def test_parse_settings_reads_valuation_alias(config_factory):
    parser = data_manager.read_config(config_factory(valuation_method="UEPS").config_path)
    assert data_manager.parse_settings(parser).valuation_method is ValuationMethod.LIFO


def test_parse_settings_defaults_to_fifo(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = ledger.xlsx\nStoreName = S\nSchemaVersion = 1.0.0\n"
        "[Defaults]\nDefaultCategory = C-GENERAL\n"
    )
    settings = data_manager.parse_settings(parser, base_path=tmp_path)
    assert settings.valuation_method is ValuationMethod.FIFO
    assert settings.data_file == (tmp_path / "ledger.xlsx").resolve()


def test_parse_settings_rejects_unknown_method(config_factory):
    parser = data_manager.read_config(config_factory(valuation_method="HIFO").config_path)
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser)


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(workbook.sheetnames) == set(data_manager.SHEET_COLUMNS)


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_with_destination_creates_copy(master_workbook_path, tmp_path):
    """Providing a destination should create a new file independent of the source."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, make_product("P2"))
    copy_path = tmp_path / "nested" / "copy.xlsx"
    data_manager.save_workbook(workbook, destination=copy_path)

    copy = openpyxl.load_workbook(copy_path)
    rows = list(copy[constants.SheetName.PRODUCTS.value].iter_rows(min_row=2, values_only=True))
    assert rows[0][0] == "P2"


def test_refresh_workbook_discards_unsaved_changes(master_workbook_path):
    """refresh_workbook should return a freshly loaded workbook from disk."""

    original = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(original, make_product("P-unsaved"))

    refreshed = data_manager.refresh_workbook(master_workbook_path)

    assert refreshed is not original
    assert list(data_manager.iter_products(refreshed)) == []


def test_master_workbook_seeds_default_category(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    categories = list(data_manager.iter_categories(workbook))
    assert [category.category_id for category in categories] == [DEFAULT_CATEGORY_ID]


def test_append_product_round_trips_through_disk(master_workbook_path):
    """Products written through the DAL should read back with Decimal fields."""

    workbook = data_manager.open_workbook(master_workbook_path)
    record = data_manager.ProductRow(
        product_id="P400",
        name="Juice",
        description="Orange",
        category_id=DEFAULT_CATEGORY_ID,
        sku="JU-1",
        min_stock=Decimal("20"),
        price=Decimal("6.50"),
        barcode="7890001",
    )
    data_manager.append_product(workbook, record)
    data_manager.save_workbook(workbook, master_workbook_path)

    rows = list(data_manager.iter_products(data_manager.open_workbook(master_workbook_path)))
    assert rows == [record]


def test_append_transaction_keeps_insertion_order(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    for index, moment in enumerate(["2024-02-01T00:00:00+00:00", "2024-01-01T00:00:00+00:00"]):
        data_manager.append_transaction(
            workbook,
            data_manager.TransactionRow(
                transaction_id=f"T{index}",
                product_id="P1",
                transaction_type=constants.TransactionType.ENTRY.value,
                quantity=Decimal("3"),
                unit_cost=Decimal("1.25"),
                date_iso=moment,
            ),
        )
    data_manager.save_workbook(workbook, master_workbook_path)

    rows = list(data_manager.iter_transactions(data_manager.open_workbook(master_workbook_path)))
    assert [row.transaction_id for row in rows] == ["T0", "T1"]
    assert rows[0].unit_cost == Decimal("1.25")
    assert rows[0].notes is None


def test_iter_transactions_normalizes_excel_dates(master_workbook_path):
    """Dates typed into Excel come back as datetimes and must become ISO text."""

    workbook = data_manager.open_workbook(master_workbook_path)
    workbook[data_manager.TRANSACTIONS_SHEET].append(
        ["T1", "P1", "entry", 5, 2, datetime(2024, 1, 5, 8, 30), "typed by hand"]
    )

    rows = list(data_manager.iter_transactions(workbook))

    assert rows[0].date_iso == "2024-01-05T08:30:00"
    assert rows[0].quantity == Decimal("5")


def test_iter_rows_skip_blank_lines(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    sheet = workbook[data_manager.PRODUCTS_SHEET]
    sheet.append([None] * 8)
    data_manager.append_product(workbook, make_product("P7"))

    assert [row.product_id for row in data_manager.iter_products(workbook)] == ["P7"]


def test_update_product_modifies_existing_row(master_workbook_path):
    """update_product should mutate values for the matching ProductID."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, make_product("P500", name="Old"))

    data_manager.update_product(workbook, "P500", field_values={"Name": "New", "MinStock": Decimal("4")})

    row = next(iter(data_manager.iter_products(workbook)))
    assert row.name == "New"
    assert row.min_stock == Decimal("4")


def test_update_product_missing_raises(master_workbook_path):
    """Updating a nonexistent product should surface a KeyError."""

    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.update_product(workbook, "NOPE", field_values={"Name": "X"})


def test_update_row_unknown_column_raises(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.update_category(workbook, DEFAULT_CATEGORY_ID, field_values={"Colour": "red"})


def test_delete_row_removes_only_match(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    for product_id in ("P1", "P2", "P3"):
        data_manager.append_product(workbook, make_product(product_id))

    data_manager.delete_row(workbook, data_manager.PRODUCTS_SHEET, "ProductID", "P2")

    assert [row.product_id for row in data_manager.iter_products(workbook)] == ["P1", "P3"]


def test_delete_row_missing_raises(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.delete_row(workbook, data_manager.PRODUCTS_SHEET, "ProductID", "NOPE")


def test_locate_row_returns_row_index(master_workbook_path):
    """locate_row should return the worksheet index of the matching key."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, make_product("P600"))

    assert data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "ProductID", "P600") == 2


def test_locate_row_returns_none_when_missing(master_workbook_path):
    """locate_row should return None if the key is not present."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "ProductID", "NOPE") is None


def test_locate_row_unknown_column_raises(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "Missing", "P1")


def test_serialize_transaction_preserves_order():
    """serialize_transaction should output the Transactions column order."""

    record = data_manager.TransactionRow(
        transaction_id="T3",
        product_id="P1",
        transaction_type="exit",
        quantity=Decimal("2"),
        unit_cost=Decimal("0"),
        date_iso="2024-01-15T00:00:00+00:00",
        notes="Note",
    )
    assert data_manager.serialize_transaction(record) == [
        "T3",
        "P1",
        "exit",
        Decimal("2"),
        Decimal("0"),
        "2024-01-15T00:00:00+00:00",
        "Note",
    ]


def test_serializers_match_sheet_columns():
    product = make_product("P1")
    category = data_manager.CategoryRow("C1", "Name", "Desc")
    assert len(data_manager.serialize_product(product)) == len(data_manager.SHEET_COLUMNS[data_manager.PRODUCTS_SHEET])
    assert len(data_manager.serialize_category(category)) == len(
        data_manager.SHEET_COLUMNS[data_manager.CATEGORIES_SHEET]
    )


def test_deserialize_product_coerces_excel_values():
    """deserialize_product should coerce worksheet values into ProductRow."""

    record = data_manager.deserialize_product([1001, "Bar", None, "C1", None, 5, 2.75, None])
    assert record.product_id == "1001"
    assert record.description == ""
    assert record.min_stock == Decimal("5")
    assert record.price == Decimal("2.75")
    assert record.barcode is None
