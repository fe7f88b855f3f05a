"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from shop_ledger import data_manager


def _product(product_id: str = "P1", **overrides) -> data_manager.ProductRow:
    values = {
        "name": "LED Bulb",
        "brand": "Philips",
        "category": "Lighting",
        "specifications": {"wattage": "9W", "color": "white"},
        "current_stock": 12,
        "selling_price": Decimal("120.00"),
        "purchase_price": Decimal("80.00"),
    }
    values.update(overrides)
    return data_manager.ProductRow(product_id=product_id, **values)


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_cwd(tmp_path, monkeypatch):
    """Auto-discovery should locate config.ini in the working directory tree."""

    config_dir = tmp_path / "nested"
    config_dir.mkdir(parents=True)
    config_file = config_dir / "config.ini"
    config_file.write_text("[System]\nDataFile=shop_master.xlsx")
    child = config_dir / "child"
    child.mkdir()
    monkeypatch.chdir(child)

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
    assert parser.get("System", "ShopName") == "Test Electricals"
    assert parser.getint("Ledger", "MaxWorkers") == 4


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
    assert settings.shop_name == "Test Electricals"
    assert settings.item_timeout_seconds == 5.0
    assert settings.delete_backoff_seconds == 0.0


def test_parse_settings_uses_ledger_defaults_when_section_missing(tmp_path):
    """The [Ledger] section is optional and falls back to module defaults."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = data.xlsx\nShopName = Shop\nSchemaVersion = 1.0.0\n")
    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.item_timeout_seconds == data_manager.DEFAULT_ITEM_TIMEOUT_SECONDS
    assert settings.max_workers == data_manager.DEFAULT_MAX_WORKERS
    assert settings.delete_max_attempts == data_manager.DEFAULT_DELETE_MAX_ATTEMPTS
    assert settings.delete_backoff_seconds == data_manager.DEFAULT_DELETE_BACKOFF_SECONDS


def test_parse_settings_rejects_invalid_ledger_values(tmp_path):
    """Non-positive worker counts are configuration errors."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = data.xlsx\nShopName = Shop\nSchemaVersion = 1.0.0\n"
        "[Ledger]\nMaxWorkers = 0\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


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
    """Opening a non-existent workbook should raise FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_persists_changes(master_workbook_path):
    """Rows appended in memory should be visible after saving and reloading."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_row(workbook, data_manager.PRODUCTS_SHEET, data_manager.serialize_product(_product()))
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.refresh_workbook(master_workbook_path)
    products = list(data_manager.iter_products(reloaded))
    assert [product.product_id for product in products] == ["P1"]
    assert products[0].specifications == {"color": "white", "wattage": "9W"}
    assert products[0].current_stock == 12


def test_refresh_workbook_returns_new_instance(master_workbook_path):
    """Refreshing should discard unsaved edits by loading a new workbook."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_row(workbook, data_manager.PRODUCTS_SHEET, data_manager.serialize_product(_product()))

    refreshed = data_manager.refresh_workbook(master_workbook_path)
    assert refreshed is not workbook
    assert list(data_manager.iter_products(refreshed)) == []


def test_iter_raw_rows_skips_blank_rows(master_workbook_path):
    """Fully empty rows between records should be ignored."""

    workbook = openpyxl.load_workbook(master_workbook_path)
    sheet = workbook[data_manager.PRODUCTS_SHEET]
    sheet.append(data_manager.serialize_product(_product("P1")))
    sheet.append([None] * len(data_manager.SHEET_COLUMNS[data_manager.PRODUCTS_SHEET]))
    sheet.append(data_manager.serialize_product(_product("P2")))

    ids = [product.product_id for product in data_manager.iter_products(workbook)]
    assert ids == ["P1", "P2"]


def test_locate_row_returns_row_index(master_workbook_path):
    """locate_row should return the 1-based Excel row index for a match."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_row(workbook, data_manager.PRODUCTS_SHEET, data_manager.serialize_product(_product("P1")))
    data_manager.append_row(workbook, data_manager.PRODUCTS_SHEET, data_manager.serialize_product(_product("P2")))

    assert data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "ProductID", "P2") == 3
    assert data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "ProductID", "P9") is None


def test_locate_row_unknown_column_raises(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "Nope", "P1")


def test_update_row_rejects_unknown_columns_without_writing(master_workbook_path):
    """An unknown column should leave the row untouched."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_row(workbook, data_manager.PRODUCTS_SHEET, data_manager.serialize_product(_product()))

    with pytest.raises(KeyError):
        data_manager.update_row(
            workbook, data_manager.PRODUCTS_SHEET, 2, field_values={"CurrentStock": 0, "Bogus": 1})

    assert data_manager.read_cell(workbook, data_manager.PRODUCTS_SHEET, 2, "CurrentStock") == 12


def test_update_row_none_clears_cell(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_row(
        workbook, data_manager.PRODUCTS_SHEET,
        data_manager.serialize_product(_product(deleted=True, deleted_at="2024-01-01T00:00:00+00:00")))

    data_manager.update_row(
        workbook, data_manager.PRODUCTS_SHEET, 2, field_values={"Deleted": None, "DeletedAt": None})

    product = next(iter(data_manager.iter_products(workbook)))
    assert product.deleted is False
    assert product.deleted_at is None


def test_delete_row_removes_record(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_row(workbook, data_manager.PRODUCTS_SHEET, data_manager.serialize_product(_product("P1")))
    data_manager.append_row(workbook, data_manager.PRODUCTS_SHEET, data_manager.serialize_product(_product("P2")))

    data_manager.delete_row(workbook, data_manager.PRODUCTS_SHEET, 2)

    assert [row.product_id for row in data_manager.iter_products(workbook)] == ["P2"]


def test_serialize_product_preserves_order():
    """Serialized product rows should follow the sheet column order."""

    row = data_manager.serialize_product(_product(deleted=False))
    columns = data_manager.SHEET_COLUMNS[data_manager.PRODUCTS_SHEET]
    assert len(row) == len(columns)
    assert row[columns.index("ProductID")] == "P1"
    assert row[columns.index("Specifications")] == '{"color":"white","wattage":"9W"}'
    assert row[columns.index("Deleted")] is None


def test_encode_specifications_is_key_order_independent():
    first = data_manager.encode_specifications({"b": 1, "a": 2})
    second = data_manager.encode_specifications({"a": 2, "b": 1})
    assert first == second


def test_deserialize_product_pads_short_rows():
    """Rows written before optional columns existed still load."""

    product = data_manager.deserialize_product(("P7", "Switch", "Anchor", "Switches", None, 4))
    assert product.product_id == "P7"
    assert product.current_stock == 4
    assert product.specifications == {}
    assert product.deleted is False
    assert product.unit == "piece"


def test_deserialize_stock_transaction_constructs_dataclass():
    row = data_manager.deserialize_stock_transaction(
        ("T1", "sale", "P1", 3, "50.00", "150.00", "B1", "note", "completed", "2024-05-01T10:00:00+00:00"))
    assert row.quantity == 3
    assert row.unit_price == Decimal("50.00")
    assert row.total_amount == Decimal("150.00")
    assert row.bill_id == "B1"


def test_bill_row_round_trips_items(master_workbook_path):
    """Bill line items are stored as JSON and expose their product ids."""

    workbook = data_manager.open_workbook(master_workbook_path)
    bill = data_manager.BillRow(
        bill_id="B1",
        bill_number="BILL-2024-000001",
        customer_id="C1",
        service_type="sale",
        location_type="shop",
        status="draft",
        items=(
            {"productId": "P1", "productName": "Bulb", "quantity": 2},
            {"productId": None, "productName": "Fan rewinding", "quantity": 1},
        ),
        subtotal=Decimal("100"),
        home_visit_fee=Decimal("0"),
        repair_charges=Decimal("0"),
        labor_charges=Decimal("0"),
        transportation_fee=Decimal("0"),
        tax_amount=Decimal("0"),
        discount_amount=Decimal("0"),
        total_amount=Decimal("100"),
        created_at="2024-05-01T10:00:00+00:00",
    )
    data_manager.append_row(workbook, data_manager.BILLS_SHEET, data_manager.serialize_bill(bill))

    loaded = next(iter(data_manager.iter_bills(workbook)))
    assert loaded.items[0]["productName"] == "Bulb"
    assert loaded.product_ids() == {"P1"}
