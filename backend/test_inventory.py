import pytest

import inventory
from conftest import stock_of
from errors import ConflictError, NotFoundError, ValidationError
from schemas import CartLine, InventoryUpsert, parse_cart


def lines(*pairs):
    return [CartLine(medicine_name=name, quantity=qty) for name, qty in pairs]


# --- Cart parsing ---
def test_parse_cart_accepts_json_string_and_alias():
    cart = parse_cart('[{"medicineName": "Paracetamol 500", "quantity": 2}]')
    assert [(c.medicine_name, c.quantity) for c in cart] == [("Paracetamol 500", 2)]


def test_parse_cart_merges_duplicate_names():
    cart = parse_cart([
        {"medicine_name": "Paracetamol 500", "quantity": 2},
        {"medicine_name": "paracetamol 500 ", "quantity": 3},
    ])
    assert len(cart) == 1
    assert cart[0].quantity == 5


@pytest.mark.parametrize("raw", [
    None,
    "",
    "not json",
    "[]",
    [{"medicine_name": "Paracetamol 500", "quantity": 0}],
    [{"medicine_name": "", "quantity": 1}],
    [{"quantity": 1}],
])
def test_parse_cart_rejects_bad_carts(raw):
    with pytest.raises(ValidationError):
        parse_cart(raw)


# --- Pricing ---
def test_price_and_validate_is_case_insensitive(pharmacy):
    priced, total = inventory.price_and_validate(pharmacy, lines(("PARACETAMOL 500", 2)))
    assert priced == [inventory.PricedLine("Paracetamol 500", 2, 50, 100)]
    assert total == 100


def test_price_and_validate_does_not_touch_stock(db, pharmacy):
    inventory.price_and_validate(pharmacy, lines(("Paracetamol 500", 10)))
    assert stock_of(db, pharmacy.id, "Paracetamol 500") == 10


def test_price_and_validate_unknown_medicine(pharmacy):
    with pytest.raises(NotFoundError) as exc:
        inventory.price_and_validate(pharmacy, lines(("Aspirin", 1)))
    assert exc.value.kind == "medicine_not_found"


def test_price_and_validate_insufficient_stock(pharmacy):
    with pytest.raises(ConflictError) as exc:
        inventory.price_and_validate(pharmacy, lines(("Paracetamol 500", 11)))
    assert exc.value.kind == "insufficient_stock"
    assert "Available: 10" in exc.value.message


# --- Reservation ---
def test_reserve_and_release(db, pharmacy):
    inventory.reserve(db, pharmacy.id, lines(("Paracetamol 500", 4), ("Tramadol 50mg", 1)))
    db.commit()
    assert stock_of(db, pharmacy.id, "Paracetamol 500") == 6
    assert stock_of(db, pharmacy.id, "Tramadol 50mg") == 4

    inventory.release(db, pharmacy.id, lines(("Paracetamol 500", 4), ("Tramadol 50mg", 1)))
    db.commit()
    assert stock_of(db, pharmacy.id, "Paracetamol 500") == 10
    assert stock_of(db, pharmacy.id, "Tramadol 50mg") == 5


def test_failed_reserve_rolls_back_every_line(db, pharmacy):
    with pytest.raises(ConflictError):
        inventory.reserve(db, pharmacy.id, lines(("Paracetamol 500", 4), ("Tramadol 50mg", 6)))
    db.rollback()
    assert stock_of(db, pharmacy.id, "Paracetamol 500") == 10
    assert stock_of(db, pharmacy.id, "Tramadol 50mg") == 5


def test_release_of_removed_line_is_logged(db, pharmacy, caplog):
    inventory.release(db, pharmacy.id, lines(("Aspirin", 1)))
    assert "inventory line missing" in caplog.text


# --- Vendor inventory ---
def test_upsert_adds_then_updates(db, pharmacy):
    item = inventory.upsert_item(db, pharmacy.id, "vendor-1", InventoryUpsert(
        medicine_name=" Ibuprofen 400 ", selling_price=30, stock=8,
    ))
    assert item.medicine_name == "Ibuprofen 400"
    assert item.name_key == "ibuprofen 400"

    again = inventory.upsert_item(db, pharmacy.id, "vendor-1", InventoryUpsert(
        medicine_name="IBUPROFEN 400", selling_price=35, stock=12, purchase_price=20,
    ))
    assert again.id == item.id
    assert (again.selling_price, again.stock, again.purchase_price) == (35, 12, 20)
    assert len(inventory.list_inventory(db, pharmacy.id, "vendor-1")) == 4


def test_inventory_is_owner_only(db, pharmacy):
    with pytest.raises(NotFoundError):
        inventory.upsert_item(db, pharmacy.id, "vendor-2", InventoryUpsert(
            medicine_name="Ibuprofen 400", selling_price=30, stock=8,
        ))
    with pytest.raises(NotFoundError):
        inventory.list_inventory(db, pharmacy.id, "vendor-2")
