"""Read-only catalog lookups for the sales conversation.

Name matching is deterministic: an exact (normalized, case-insensitive)
name match wins; otherwise, among names that contain the query or are
contained in it, the shortest name wins and ties are broken alphabetically.
"""
from __future__ import annotations

import re
import unicodedata
from typing import Iterable

from sqlalchemy.orm import Session

from app.models.product import Product


def normalize(text: str) -> str:
    text = (text or "").lower()
    text = unicodedata.normalize("NFKD", text)
    text = "".join(char for char in text if not unicodedata.combining(char))
    text = re.sub(r"[-_]", " ", text)
    text = re.sub(r"[^\w\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def find_active_by_tenant(db: Session, tenant_id: int) -> list[Product]:
    return (
        db.query(Product)
        .filter(Product.tenant_id == tenant_id, Product.status == "active")
        .order_by(Product.name.asc(), Product.id.asc())
        .all()
    )


def find_by_id(db: Session, product_id: int | None) -> Product | None:
    if product_id is None:
        return None
    return db.query(Product).filter(Product.id == product_id).first()


def _sort_key(product: Product) -> tuple[int, str, int]:
    return (len(normalize(product.name)), normalize(product.name), product.id or 0)


def match_product(products: Iterable[Product], query: str) -> Product | None:
    normalized_query = normalize(query)
    if not normalized_query:
        return None

    exact: list[Product] = []
    containing: list[Product] = []
    for product in products:
        normalized_name = normalize(product.name)
        if not normalized_name:
            continue
        if normalized_name == normalized_query:
            exact.append(product)
        elif normalized_name in normalized_query or normalized_query in normalized_name:
            containing.append(product)

    if exact:
        return sorted(exact, key=_sort_key)[0]
    if containing:
        return sorted(containing, key=_sort_key)[0]
    return None


def is_available(product: Product, quantity: int) -> bool:
    if not product.track_inventory or product.quantity is None:
        return True
    return product.quantity >= quantity
