import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

import accounts
import cart as carts
import config
import database
import notifications
import orders
import uploads
from database import get_db, now, parse_object_id, serialize_doc
from errors import NotFoundError, ShopError, UnavailableError
from schemas import CartItem, Category as CategorySchema, Product as ProductSchema, Role
from security import create_access_token, ensure_self_or_admin, get_current_user, public_user, require_roles

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger("storefront.api")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if database.db is not None:
        try:
            database.ensure_indexes(database.db)
        except PyMongoError as e:
            logger.error("Could not ensure indexes: %s", e)
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/uploads", StaticFiles(directory=config.UPLOAD_DIR, check_dir=False), name="uploads")


# Error handlers
@app.exception_handler(ShopError)
async def shop_error_handler(_request: Request, exc: ShopError):
    if isinstance(exc, UnavailableError):
        logger.error("Store unavailable: %s", exc.message)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"detail": message, "errors": [
        {"loc": list(e.get("loc", [])), "msg": e.get("msg")} for e in errors
    ]})


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Auth models
class RegisterInput(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)


class LoginInput(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


class UserCreate(RegisterInput):
    role: Role = Role.customer


class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    role: Optional[Role] = None


class ChangePasswordInput(BaseModel):
    old_password: str
    new_password: str = Field(..., min_length=1)


class ForgotPasswordInput(BaseModel):
    email: EmailStr


class ResetPasswordInput(BaseModel):
    token: str
    new_password: str = Field(..., min_length=1)


def _token_response(user: dict) -> TokenResponse:
    token = create_access_token({"sub": str(user["_id"])})
    return TokenResponse(access_token=token, user=public_user(user))


# Routes
@app.get("/")
def read_root():
    return {"status": "success", "message": "Storefront API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "running",
        "database": "unavailable",
        "database_name": None,
        "collections": [],
    }
    try:
        if database.db is not None:
            response["database"] = "connected"
            response["database_name"] = database.db.name
            response["collections"] = database.db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"error: {str(e)[:80]}"
    return response


# Auth
@app.post("/api/auth/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterInput, background_tasks: BackgroundTasks, db: Database = Depends(get_db)):
    user = accounts.register_user(db, payload.name, payload.email, payload.password)
    background_tasks.add_task(notifications.notify_welcome, public_user(user))
    return _token_response(user)


@app.post("/api/auth/login", response_model=TokenResponse)
def login(payload: LoginInput, db: Database = Depends(get_db)):
    user = accounts.authenticate(db, payload.email, payload.password)
    return _token_response(user)


@app.get("/api/auth/me")
def me(current_user: dict = Depends(get_current_user)):
    return current_user


# Password reset
@app.post("/api/password/forgot")
def forgot_password(payload: ForgotPasswordInput, background_tasks: BackgroundTasks, db: Database = Depends(get_db)):
    # Unknown emails get the same answer as registered ones
    user = db["user"].find_one({"email": payload.email.lower()})
    if user:
        token = accounts.issue_reset_token(db, user)
        background_tasks.add_task(notifications.notify_password_reset, public_user(user), token)
    else:
        logger.info("Password reset requested for unknown email")
    return {"message": "If the email is registered, a password reset link has been sent"}


@app.post("/api/password/reset")
def reset_password(payload: ResetPasswordInput, background_tasks: BackgroundTasks, db: Database = Depends(get_db)):
    user = accounts.reset_password(db, payload.token, payload.new_password)
    background_tasks.add_task(notifications.notify_password_changed, public_user(user))
    return {"message": "Password reset successfully"}


# Users
@app.get("/api/users")
def list_users(_admin: dict = Depends(require_roles("admin")), db: Database = Depends(get_db)):
    return [public_user(u) for u in db["user"].find().sort("created_at", ASCENDING)]


@app.put("/api/users/me/password")
def change_password(
    payload: ChangePasswordInput,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    user = accounts.change_password(db, current_user["id"], payload.old_password, payload.new_password)
    background_tasks.add_task(notifications.notify_password_changed, public_user(user))
    return {"message": "Password changed successfully"}


@app.post("/api/users/profile/image")
def upload_profile_image(
    image: UploadFile = File(...),
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    path = uploads.save_image(image)
    try:
        previous = accounts.set_profile_image(db, current_user["id"], path)
    except Exception:
        uploads.delete_image(path)
        raise
    if previous:
        uploads.delete_image(previous)
    user = accounts.find_user(db, current_user["id"])
    return {"message": "Profile image uploaded successfully", "user": public_user(user)}


@app.get("/api/users/{user_id}")
def get_user(user_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    ensure_self_or_admin(current_user, user_id)
    return public_user(accounts.find_user(db, user_id))


@app.post("/api/users", status_code=201)
def create_user(payload: UserCreate, _admin: dict = Depends(require_roles("admin")), db: Database = Depends(get_db)):
    user = accounts.register_user(db, payload.name, payload.email, payload.password, role=payload.role.value)
    return public_user(user)


@app.put("/api/users/{user_id}")
def update_user(user_id: str, payload: UserUpdate, _admin: dict = Depends(require_roles("admin")), db: Database = Depends(get_db)):
    user = accounts.update_user(db, user_id, payload.model_dump(exclude_unset=True, exclude_none=True))
    return public_user(user)


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, _admin: dict = Depends(require_roles("admin")), db: Database = Depends(get_db)):
    user = accounts.delete_user(db, user_id)
    return {"message": "User deleted successfully", "user": public_user(user)}


# Categories
class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None


def _find_category(db: Database, category_id: str) -> dict:
    category = db["category"].find_one({"_id": parse_object_id(category_id, "categoryId")})
    if not category:
        raise NotFoundError("Category not found")
    return category


@app.post("/api/categories", status_code=201)
def create_category(data: CategorySchema, _admin: dict = Depends(require_roles("admin")), db: Database = Depends(get_db)):
    category_id = database.create_document(db, "category", data)
    return serialize_doc(_find_category(db, category_id))


@app.get("/api/categories")
def list_categories(db: Database = Depends(get_db)):
    return [serialize_doc(c) for c in database.get_documents(db, "category")]


@app.get("/api/categories/{category_id}")
def get_category(category_id: str, db: Database = Depends(get_db)):
    return serialize_doc(_find_category(db, category_id))


@app.put("/api/categories/{category_id}")
def update_category(category_id: str, data: CategoryUpdate, _admin: dict = Depends(require_roles("admin")), db: Database = Depends(get_db)):
    category = _find_category(db, category_id)
    update_dict = data.model_dump(exclude_unset=True, exclude_none=True)
    if update_dict:
        update_dict["updated_at"] = now()
        db["category"].update_one({"_id": category["_id"]}, {"$set": update_dict})
    return serialize_doc(_find_category(db, category_id))


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, _admin: dict = Depends(require_roles("admin")), db: Database = Depends(get_db)):
    category = _find_category(db, category_id)
    # Products keep their category_id; nothing cascades
    db["category"].delete_one({"_id": category["_id"]})
    return {"message": "Category deleted"}


# Products
class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, gt=0)
    description: Optional[str] = None
    category_id: Optional[str] = None
    in_stock: Optional[bool] = None
    quantity: Optional[int] = Field(None, ge=0)


def _find_product(db: Database, product_id: str) -> dict:
    product = db["product"].find_one({"_id": parse_object_id(product_id, "productId")})
    if not product:
        raise NotFoundError("Product not found")
    return product


@app.post("/api/products", status_code=201)
def create_product(
    data: ProductSchema,
    _staff: dict = Depends(require_roles("admin", "vendor")),
    db: Database = Depends(get_db),
):
    category = _find_category(db, data.category_id)
    doc = data.model_dump()
    doc["category_id"] = category["_id"]
    doc["in_stock"] = data.in_stock and data.quantity > 0
    product_id = database.create_document(db, "product", doc)
    return serialize_doc(_find_product(db, product_id))


@app.get("/api/products")
def list_products(
    q: Optional[str] = None,
    category_id: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    in_stock: Optional[bool] = None,
    sort: Optional[str] = Query(None, description="price_asc|price_desc|new"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if q:
        query["$or"] = [
            {"name": {"$regex": q, "$options": "i"}},
            {"description": {"$regex": q, "$options": "i"}},
        ]
    if category_id:
        query["category_id"] = parse_object_id(category_id, "categoryId")
    price_filter: Dict[str, Any] = {}
    if min_price is not None:
        price_filter["$gte"] = float(min_price)
    if max_price is not None:
        price_filter["$lte"] = float(max_price)
    if price_filter:
        query["price"] = price_filter
    if in_stock is not None:
        query["in_stock"] = in_stock

    collection = db["product"]
    cursor = collection.find(query)
    if sort == "price_asc":
        cursor = cursor.sort("price", ASCENDING)
    elif sort == "price_desc":
        cursor = cursor.sort("price", DESCENDING)
    elif sort == "new":
        cursor = cursor.sort("created_at", DESCENDING)

    total = collection.count_documents(query)
    cursor = cursor.skip((page - 1) * limit).limit(limit)
    items = [serialize_doc(d) for d in cursor]
    return {"items": items, "total": total, "page": page, "limit": limit}


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return serialize_doc(_find_product(db, product_id))


@app.put("/api/products/{product_id}")
def update_product(
    product_id: str,
    data: ProductUpdate,
    _staff: dict = Depends(require_roles("admin", "vendor")),
    db: Database = Depends(get_db),
):
    product = _find_product(db, product_id)
    update_dict = data.model_dump(exclude_unset=True, exclude_none=True)
    if not update_dict:
        raise HTTPException(status_code=400, detail="No fields to update")
    if "category_id" in update_dict:
        update_dict["category_id"] = _find_category(db, update_dict["category_id"])["_id"]
    # in_stock follows the resulting quantity; a product with none left is never in stock
    quantity = update_dict.get("quantity", product.get("quantity", 0))
    if "quantity" in update_dict:
        update_dict["in_stock"] = update_dict.get("in_stock", True) and quantity > 0
    elif update_dict.get("in_stock") and quantity <= 0:
        update_dict["in_stock"] = False
    update_dict["updated_at"] = now()
    db["product"].update_one({"_id": product["_id"]}, {"$set": update_dict})
    return serialize_doc(_find_product(db, product_id))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, _staff: dict = Depends(require_roles("admin", "vendor")), db: Database = Depends(get_db)):
    product = _find_product(db, product_id)
    db["product"].delete_one({"_id": product["_id"]})
    for url in product.get("images", []):
        uploads.delete_image(url)
    return {"message": "Product deleted"}


@app.post("/api/products/{product_id}/image", status_code=201)
def upload_product_image(
    product_id: str,
    image: UploadFile = File(...),
    _staff: dict = Depends(require_roles("admin", "vendor")),
    db: Database = Depends(get_db),
):
    product = _find_product(db, product_id)
    path = uploads.save_image(image)
    db["product"].update_one({"_id": product["_id"]}, {"$push": {"images": path}, "$set": {"updated_at": now()}})
    return serialize_doc(_find_product(db, product_id))


@app.delete("/api/products/{product_id}/image")
def delete_product_image(
    product_id: str,
    url: str = Query(..., min_length=1),
    _staff: dict = Depends(require_roles("admin", "vendor")),
    db: Database = Depends(get_db),
):
    product = _find_product(db, product_id)
    if url not in product.get("images", []):
        raise NotFoundError("Image not found")
    db["product"].update_one({"_id": product["_id"]}, {"$pull": {"images": url}, "$set": {"updated_at": now()}})
    uploads.delete_image(url)
    return serialize_doc(_find_product(db, product_id))


# Cart
class QuantityInput(BaseModel):
    quantity: int = Field(..., gt=0)


@app.get("/api/cart/{user_id}")
def get_cart(user_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    ensure_self_or_admin(current_user, user_id)
    return carts.get_cart(db, user_id)


@app.post("/api/cart/{user_id}", status_code=201)
@app.post("/api/cart/{user_id}/items", status_code=201)
def add_to_cart(user_id: str, item: CartItem, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    ensure_self_or_admin(current_user, user_id)
    return carts.add_item(db, user_id, item.product_id, item.quantity)


@app.put("/api/cart/{user_id}/items/{item_id}")
def update_cart_item(
    user_id: str,
    item_id: str,
    payload: QuantityInput,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    ensure_self_or_admin(current_user, user_id)
    return carts.update_item_quantity(db, user_id, item_id, payload.quantity)


@app.delete("/api/cart/{user_id}/items/{item_id}")
def remove_cart_item(user_id: str, item_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    ensure_self_or_admin(current_user, user_id)
    cart = carts.remove_item(db, user_id, item_id)
    return {"message": "Item removed", "cart": cart}


@app.delete("/api/cart/{user_id}")
def clear_cart(user_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    ensure_self_or_admin(current_user, user_id)
    carts.clear_cart(db, user_id)
    return {"ok": True}


# Orders
class StatusUpdateInput(BaseModel):
    status: str
    tracking_number: Optional[str] = None


@app.post("/api/orders", status_code=201)
def create_order(
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(require_roles("customer")),
    db: Database = Depends(get_db),
):
    order = orders.create_order_from_cart(db, current_user["id"])
    background_tasks.add_task(notifications.notify_order_created, current_user, order)
    return order


@app.get("/api/orders")
def get_my_orders(current_user: dict = Depends(require_roles("customer")), db: Database = Depends(get_db)):
    return orders.get_my_orders(db, current_user["id"])


@app.get("/api/orders/admin/all")
def get_all_orders(_admin: dict = Depends(require_roles("admin")), db: Database = Depends(get_db)):
    return orders.list_all_orders(db)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, current_user: dict = Depends(require_roles("customer")), db: Database = Depends(get_db)):
    return orders.get_order_for_user(db, current_user["id"], order_id)


@app.patch("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, current_user: dict = Depends(require_roles("customer")), db: Database = Depends(get_db)):
    return orders.cancel_order(db, current_user["id"], order_id)


@app.patch("/api/orders/admin/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: StatusUpdateInput,
    background_tasks: BackgroundTasks,
    _admin: dict = Depends(require_roles("admin")),
    db: Database = Depends(get_db),
):
    order = orders.update_order_status(db, order_id, payload.status, payload.tracking_number)
    owner = orders.find_owner(db, order)
    if owner:
        background_tasks.add_task(notifications.notify_order_status, public_user(owner), order)
    return order


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
