"""
Cart engine

One cart per user, created lazily on the first add. Mutations rewrite the
whole `items` list, so concurrent edits of the same cart are last-writer-wins.
"""
import logging
from typing import Any, Dict

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import now, parse_object_id, serialize_doc
from errors import NotFoundError, ValidationError

logger = logging.getLogger("storefront.cart")


def _check_quantity(quantity: int) -> int:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError("quantity must be greater than 0")
    return quantity


def _find_line(items, item_id: str) -> int:
    for index, it in enumerate(items):
        if str(it.get("_id")) == item_id:
            return index
    return -1


def _save_items(db: Database, cart: Dict[str, Any]) -> Dict[str, Any]:
    cart["updated_at"] = now()
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": cart["items"], "updated_at": cart["updated_at"]}})
    return cart


def find_cart(db: Database, user_id: str) -> Dict[str, Any]:
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        raise NotFoundError("Cart not found")
    return cart


def get_or_create_cart(db: Database, user_id: str) -> Dict[str, Any]:
    stamp = now()
    return db["cart"].find_one_and_update(
        {"user_id": user_id},
        {"$setOnInsert": {"items": [], "created_at": stamp, "updated_at": stamp}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def populate(db: Database, cart: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize a cart with every line's product attached for display."""
    product_ids = [it["product_id"] for it in cart.get("items", [])]
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": product_ids}})} if product_ids else {}
    out = serialize_doc(cart)
    for line, raw in zip(out["items"], cart.get("items", [])):
        prod = products.get(raw["product_id"])
        line["product"] = serialize_doc(prod) if prod else None
    return out


def get_cart(db: Database, user_id: str) -> Dict[str, Any]:
    return populate(db, find_cart(db, user_id))


def add_item(db: Database, user_id: str, product_id: str, quantity: int) -> Dict[str, Any]:
    pid = parse_object_id(product_id, "productId")
    _check_quantity(quantity)
    if not db["product"].find_one({"_id": pid}, {"_id": 1}):
        raise NotFoundError("Product not found")

    cart = get_or_create_cart(db, user_id)
    items = cart.get("items", [])
    for it in items:
        if it["product_id"] == pid:
            it["quantity"] = int(it["quantity"]) + quantity
            break
    else:
        items.append({"_id": ObjectId(), "product_id": pid, "quantity": quantity})
    cart["items"] = items
    return populate(db, _save_items(db, cart))


def update_item_quantity(db: Database, user_id: str, item_id: str, quantity: int) -> Dict[str, Any]:
    _check_quantity(quantity)
    cart = find_cart(db, user_id)
    index = _find_line(cart.get("items", []), item_id)
    if index == -1:
        raise NotFoundError("Item not found")
    cart["items"][index]["quantity"] = quantity
    return populate(db, _save_items(db, cart))


def remove_item(db: Database, user_id: str, item_id: str) -> Dict[str, Any]:
    cart = find_cart(db, user_id)
    index = _find_line(cart.get("items", []), item_id)
    if index == -1:
        raise NotFoundError("Item not found")
    cart["items"].pop(index)
    return populate(db, _save_items(db, cart))


def clear_cart(db: Database, user_id: str, order_id=None, session=None) -> None:
    update: Dict[str, Any] = {"items": [], "updated_at": now()}
    if order_id is not None:
        update["last_order_id"] = order_id
    # A plain clear never creates a cart; only the checkout stamp may upsert
    db["cart"].update_one({"user_id": user_id}, {"$set": update}, upsert=order_id is not None, session=session)
