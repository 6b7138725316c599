"""
Order engine

Turns a cart into a frozen order snapshot and drives the order status
machine. Stock is reserved when the order is placed and released again when
it is cancelled.
"""
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

import config
from cart import clear_cart
from database import now, parse_object_id, serialize_doc, transaction
from errors import (
    EmptyCartError,
    ForbiddenError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from schemas import Order, OrderItem, OrderStatus

logger = logging.getLogger("storefront.orders")

# Statuses an admin may set
ADMIN_STATUSES = {
    OrderStatus.confirmed,
    OrderStatus.shipped,
    OrderStatus.delivered,
    OrderStatus.cancelled,
}

TRANSITIONS = {
    OrderStatus.pending: {OrderStatus.confirmed, OrderStatus.cancelled},
    OrderStatus.confirmed: {OrderStatus.shipped, OrderStatus.cancelled},
    OrderStatus.shipped: {OrderStatus.delivered, OrderStatus.cancelled},
    OrderStatus.delivered: set(),
    OrderStatus.cancelled: set(),
}


def can_transition(current: str, target: str) -> bool:
    try:
        return OrderStatus(target) in TRANSITIONS[OrderStatus(current)]
    except ValueError:
        return False


# Stock

def _reserve_stock(db: Database, lines: List[Dict[str, Any]], session=None) -> None:
    reserved: List[Dict[str, Any]] = []
    for line in lines:
        res = db["product"].update_one(
            {"_id": line["product_id"], "quantity": {"$gte": line["quantity"]}},
            {"$inc": {"quantity": -line["quantity"]}, "$set": {"updated_at": now()}},
            session=session,
        )
        if res.matched_count == 0:
            if session is None:
                _release_stock(db, reserved)
            logger.warning("Insufficient stock for product %s (wanted %s)", line["product_id"], line["quantity"])
            raise InsufficientStockError(f"Insufficient stock for {line['name']}")
        reserved.append(line)
    db["product"].update_many(
        {"_id": {"$in": [l["product_id"] for l in lines]}, "quantity": {"$lte": 0}},
        {"$set": {"in_stock": False}},
        session=session,
    )


def _release_stock(db: Database, lines: List[Dict[str, Any]], session=None) -> None:
    for line in lines:
        before = db["product"].find_one_and_update(
            {"_id": line["product_id"]},
            {"$inc": {"quantity": line["quantity"]}, "$set": {"updated_at": now()}},
            return_document=ReturnDocument.BEFORE,
            session=session,
        )
        # Only products that were sold out come back in stock
        if before and before.get("quantity", 0) <= 0:
            db["product"].update_one({"_id": line["product_id"]}, {"$set": {"in_stock": True}}, session=session)


# Customer operations

def create_order_from_cart(db: Database, user_id: str) -> Dict[str, Any]:
    uid = parse_object_id(user_id, "user id")
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart or not cart.get("items"):
        raise EmptyCartError()

    product_ids = [it["product_id"] for it in cart["items"]]
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": product_ids}})}

    total_amount = 0.0
    snapshot: List[OrderItem] = []
    for it in cart["items"]:
        product = products.get(it["product_id"])
        if not product:
            raise NotFoundError(f"Product {it['product_id']} is no longer available")
        price = float(product["price"])
        total_amount += price * it["quantity"]
        snapshot.append(OrderItem(product_id=str(product["_id"]), name=product["name"], price=price, quantity=it["quantity"]))

    order = Order(user_id=user_id, items=snapshot, total_amount=round(total_amount, 2)).model_dump(mode="json")
    order["_id"] = ObjectId()
    order["user_id"] = uid
    for line in order["items"]:
        line["product_id"] = ObjectId(line["product_id"])
    order["created_at"] = order["updated_at"] = now()

    with transaction(db) as session:
        _reserve_stock(db, order["items"], session=session)
        try:
            db["order"].insert_one(order, session=session)
        except Exception:
            if session is None:
                _release_stock(db, order["items"])
            raise
        clear_cart(db, user_id, order_id=order["_id"], session=session)

    logger.info("Order %s created for user %s (total %.2f)", order["_id"], user_id, order["total_amount"])
    return serialize_doc(order)


def get_my_orders(db: Database, user_id: str) -> List[Dict[str, Any]]:
    uid = parse_object_id(user_id, "user id")
    cursor = db["order"].find({"user_id": uid}).sort("created_at", DESCENDING)
    return [serialize_doc(o) for o in cursor]


def _owned_order(db: Database, user_id: str, order_id: str) -> Dict[str, Any]:
    oid = parse_object_id(order_id, "order id")
    order = db["order"].find_one({"_id": oid})
    if not order:
        raise NotFoundError("Order not found")
    if str(order["user_id"]) != user_id:
        if config.HIDE_FOREIGN_ORDERS:
            raise NotFoundError("Order not found")
        raise ForbiddenError()
    return order


def get_order_for_user(db: Database, user_id: str, order_id: str) -> Dict[str, Any]:
    return serialize_doc(_owned_order(db, user_id, order_id))


def cancel_order(db: Database, user_id: str, order_id: str) -> Dict[str, Any]:
    order = _owned_order(db, user_id, order_id)
    if order["status"] != OrderStatus.pending.value:
        raise InvalidTransitionError("Only pending orders can be cancelled")
    return _apply_status(db, order, OrderStatus.cancelled)


# Admin operations

def list_all_orders(db: Database) -> List[Dict[str, Any]]:
    orders = list(db["order"].find().sort("created_at", DESCENDING))
    owner_ids = list({o["user_id"] for o in orders})
    owners = {u["_id"]: u for u in db["user"].find({"_id": {"$in": owner_ids}}, {"email": 1, "role": 1})} if owner_ids else {}
    out = []
    for o in orders:
        doc = serialize_doc(o)
        owner = owners.get(o["user_id"])
        doc["user"] = serialize_doc(owner) if owner else None
        out.append(doc)
    return out


def update_order_status(db: Database, order_id: str, status: str, tracking_number: Optional[str] = None) -> Dict[str, Any]:
    try:
        target = OrderStatus(status)
    except ValueError:
        target = None
    if target not in ADMIN_STATUSES:
        raise ValidationError("Invalid status")

    oid = parse_object_id(order_id, "order id")
    order = db["order"].find_one({"_id": oid})
    if not order:
        raise NotFoundError("Order not found")
    if order["status"] == OrderStatus.delivered.value:
        raise InvalidTransitionError("Delivered orders cannot be modified")
    if not can_transition(order["status"], target.value):
        raise InvalidTransitionError(f"Cannot change order status from {order['status']} to {target.value}")
    return _apply_status(db, order, target, tracking_number)


def _apply_status(db: Database, order: Dict[str, Any], target: OrderStatus, tracking_number: Optional[str] = None) -> Dict[str, Any]:
    changes: Dict[str, Any] = {"status": target.value, "updated_at": now()}
    if tracking_number:
        changes["tracking_number"] = tracking_number

    with transaction(db) as session:
        # Only move from the status we read, so concurrent updates can't both win
        res = db["order"].update_one({"_id": order["_id"], "status": order["status"]}, {"$set": changes}, session=session)
        if res.matched_count == 0:
            raise InvalidTransitionError("Order status changed concurrently, reload and retry")
        if target == OrderStatus.cancelled:
            _release_stock(db, order["items"], session=session)

    logger.info("Order %s: %s -> %s", order["_id"], order["status"], target.value)
    order.update(changes)
    return serialize_doc(order)


def find_owner(db: Database, order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return db["user"].find_one({"_id": parse_object_id(order["user_id"], "user id")})
