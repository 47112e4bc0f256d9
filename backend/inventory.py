# inventory.py
"""Per-pharmacy stock: pricing a cart, reserving and releasing quantities."""
import logging
from decimal import Decimal
from typing import Iterable, List, NamedTuple, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from errors import ConflictError, NotFoundError
from models import InventoryItem, Pharmacy

logger = logging.getLogger(__name__)


class PricedLine(NamedTuple):
    medicine_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


def find_item(pharmacy: Pharmacy, medicine_name: str):
    key = medicine_name.strip().lower()
    for item in pharmacy.inventory:
        if item.name_key == key:
            return item
    return None


def price_and_validate(pharmacy: Pharmacy, requested_lines) -> Tuple[List[PricedLine], Decimal]:
    """Check every requested line against the pharmacy's stock and price it.

    Reads only; stock is not touched until payment succeeds.
    """
    priced = []
    medicine_total = 0
    for line in requested_lines:
        item = find_item(pharmacy, line.medicine_name)
        if item is None:
            raise NotFoundError(
                f"{line.medicine_name} not available in this pharmacy",
                kind="medicine_not_found",
            )
        if item.stock < line.quantity:
            raise ConflictError(
                f"Insufficient stock for {item.medicine_name}. Available: {item.stock}",
                kind="insufficient_stock",
            )
        line_total = item.selling_price * line.quantity
        medicine_total += line_total
        priced.append(PricedLine(item.medicine_name, line.quantity, item.selling_price, line_total))
    return priced, medicine_total


def reserve(db: Session, pharmacy_id: int, lines: Iterable) -> None:
    """Decrement stock for each line inside the caller's transaction.

    Every decrement is guarded by ``stock >= quantity`` in the UPDATE itself,
    so two concurrent reservations can never oversell. On failure the caller
    must roll back, which undoes the lines already decremented.
    """
    for line in lines:
        stmt = (
            update(InventoryItem)
            .where(
                InventoryItem.pharmacy_id == pharmacy_id,
                InventoryItem.name_key == line.medicine_name.lower(),
                InventoryItem.stock >= line.quantity,
            )
            .values(stock=InventoryItem.stock - line.quantity)
            .execution_options(synchronize_session=False)
        )
        if db.execute(stmt).rowcount != 1:
            raise ConflictError(
                f"Insufficient stock for {line.medicine_name}",
                kind="insufficient_stock",
            )


def release(db: Session, pharmacy_id: int, lines: Iterable) -> None:
    """Put reserved quantities back, inside the caller's transaction."""
    for line in lines:
        stmt = (
            update(InventoryItem)
            .where(
                InventoryItem.pharmacy_id == pharmacy_id,
                InventoryItem.name_key == line.medicine_name.lower(),
            )
            .values(stock=InventoryItem.stock + line.quantity)
            .execution_options(synchronize_session=False)
        )
        if db.execute(stmt).rowcount != 1:
            # The vendor removed the line since the order was placed
            logger.warning(
                "Could not restock %s x%s at pharmacy %s: inventory line missing",
                line.medicine_name, line.quantity, pharmacy_id,
            )


def get_owned_pharmacy(db: Session, pharmacy_id: int, owner_id: str) -> Pharmacy:
    pharmacy = db.get(Pharmacy, pharmacy_id)
    if pharmacy is None or pharmacy.owner_id != owner_id:
        raise NotFoundError("Pharmacy not found or unauthorized")
    return pharmacy


def upsert_item(db: Session, pharmacy_id: int, owner_id: str, data) -> InventoryItem:
    """Add a medicine to the pharmacy's inventory or update the existing line."""
    pharmacy = get_owned_pharmacy(db, pharmacy_id, owner_id)
    item = find_item(pharmacy, data.medicine_name)
    if item is None:
        item = InventoryItem(
            medicine_name=data.medicine_name.strip(),
            name_key=data.medicine_name.strip().lower(),
            selling_price=data.selling_price,
            stock=data.stock,
            purchase_price=data.purchase_price or 0,
        )
        pharmacy.inventory.append(item)
    else:
        item.selling_price = data.selling_price
        item.stock = data.stock
        if data.purchase_price is not None:
            item.purchase_price = data.purchase_price
    db.commit()
    db.refresh(item)
    logger.info("Inventory updated: pharmacy=%s medicine=%s stock=%s", pharmacy_id, item.medicine_name, item.stock)
    return item


def list_inventory(db: Session, pharmacy_id: int, owner_id: str) -> List[InventoryItem]:
    return list(get_owned_pharmacy(db, pharmacy_id, owner_id).inventory)

