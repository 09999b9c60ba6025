"""Inventory ledger.

The only code allowed to touch ``inventory``, ``reserved_inventory`` and
``sold_count``. Every mutation is a single conditional UPDATE whose
rowcount tells the caller whether the compare-and-swap won; nothing here
reads a counter and writes it back.
"""
from typing import Iterable

from sqlalchemy import update

from marketplace.models import Product, ProductStatus


def _apply(session, product_id: str, quantity: int, *conditions, **values) -> bool:
    if quantity <= 0:
        raise ValueError("quantity must be > 0")
    stmt = (
        update(Product)
        .where(Product.id == product_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def reserve(session, product_id: str, quantity: int) -> bool:
    """available -> reserved, only if enough units are available."""
    return _apply(
        session, product_id, quantity,
        Product.inventory >= quantity,
        inventory=Product.inventory - quantity,
        reserved_inventory=Product.reserved_inventory + quantity,
    )


def release(session, product_id: str, quantity: int) -> bool:
    """reserved -> available."""
    return _apply(
        session, product_id, quantity,
        Product.reserved_inventory >= quantity,
        inventory=Product.inventory + quantity,
        reserved_inventory=Product.reserved_inventory - quantity,
    )


def commit_reserved(session, product_id: str, quantity: int) -> bool:
    """reserved -> sold."""
    return _apply(
        session, product_id, quantity,
        Product.reserved_inventory >= quantity,
        reserved_inventory=Product.reserved_inventory - quantity,
        sold_count=Product.sold_count + quantity,
    )


def sell_available(session, product_id: str, quantity: int) -> bool:
    """available -> sold, for lines that never held a reservation."""
    return _apply(
        session, product_id, quantity,
        Product.inventory >= quantity,
        inventory=Product.inventory - quantity,
        sold_count=Product.sold_count + quantity,
    )


def decrement(session, product_id: str, quantity: int) -> bool:
    return _apply(
        session, product_id, quantity,
        Product.inventory >= quantity,
        inventory=Product.inventory - quantity,
    )


def restock(session, product_id: str, quantity: int) -> bool:
    return _apply(session, product_id, quantity, inventory=Product.inventory + quantity)


def mark_out_of_stock(session, product_ids: Iterable[str]) -> int:
    ids = list(set(product_ids))
    if not ids:
        return 0
    stmt = (
        update(Product)
        .where(
            Product.id.in_(ids),
            Product.inventory <= 0,
            Product.status == ProductStatus.ACTIVE,
        )
        .values(status=ProductStatus.OUT_OF_STOCK)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount
