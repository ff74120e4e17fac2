import os
import json
import hmac
import base64
import hashlib
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

import structlog
from fastapi import FastAPI, Depends, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import database
from access import Principal, require_admin
from addresses import AddressBook
from carts import CartService
from database import create_document, get_db, get_documents, serialize_document, to_object_id, utcnow
from errors import NotFoundError, ShopError, StoreFailureError, ValidationError
from logging_config import bind_request_context, clear_request_context, configure_logging
from orders import OrderAssembler, OrderBook
from schemas import (
    AddressCreate,
    AddressUpdate,
    CartItemAdd,
    CartItemUpdate,
    CategoryCreate,
    CategoryUpdate,
    LoginRequest,
    OrderCreate,
    OrderStatusUpdate,
    ProductCreate,
    ProductUpdate,
    Role,
    UserCreate,
    UserUpdate,
)

from dotenv import load_dotenv
load_dotenv()

logger = structlog.get_logger(__name__)

# Simple JWT (HS256) without external deps
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 30))

def _b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode()

def _b64url_decode(s: str) -> bytes:
    pad = '=' * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)

def jwt_encode(payload: dict, secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = _b64url_encode(json.dumps(header, separators=(',', ':')).encode())
    payload_b64 = _b64url_encode(json.dumps(payload, default=str, separators=(',', ':')).encode())
    signing_input = f"{header_b64}.{payload_b64}".encode()
    signature = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
    sig_b64 = _b64url_encode(signature)
    return f"{header_b64}.{payload_b64}.{sig_b64}"

def jwt_decode(token: str, secret: str) -> dict:
    try:
        header_b64, payload_b64, sig_b64 = token.split('.')
        signing_input = f"{header_b64}.{payload_b64}".encode()
        expected_sig = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
        if not hmac.compare_digest(_b64url_encode(expected_sig), sig_b64):
            raise ValueError("Invalid signature")
        payload = json.loads(_b64url_decode(payload_b64))
        if 'exp' in payload:
            exp = datetime.fromisoformat(payload['exp']) if isinstance(payload['exp'], str) else datetime.fromtimestamp(payload['exp'], tz=timezone.utc)
            if datetime.now(timezone.utc) > exp:
                raise ValueError("Token expired")
        return payload
    except (ValueError, TypeError) as e:
        raise ValueError(str(e))

PWD_SALT = os.getenv("PWD_SALT", "salt")

def hash_password(password: str) -> str:
    return hashlib.sha256((password + PWD_SALT).encode()).hexdigest()

def verify_password(password: str, hashed: str) -> bool:
    return hmac.compare_digest(hash_password(password), hashed)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt_encode(to_encode, JWT_SECRET)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    if database.db is not None:
        database.ensure_indexes(database.db)
        logger.info("database_ready", name=database.DATABASE_NAME, transactions=database.MONGO_TRANSACTIONS)
    else:
        logger.warning("database_not_configured")
    yield


# FastAPI app
app = FastAPI(title="Shop API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/users/login")


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    body: Dict[str, Any] = {"success": False, "error": exc.kind, "message": exc.message}
    if isinstance(exc, ValidationError):
        body["field"] = exc.field
    product_id = getattr(exc, "product_id", None)
    if product_id:
        body["product_id"] = product_id
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.error("store_failure", path=request.url.path, error=str(exc))
    return await shop_error_handler(request, StoreFailureError(str(exc)))


@app.middleware("http")
async def request_context(request: Request, call_next):
    clear_request_context()
    bind_request_context(method=request.method, path=request.url.path)
    return await call_next(request)


# Dependencies
async def get_current_user(token: str = Depends(oauth2_scheme), db=Depends(get_db)) -> dict:
    try:
        payload = jwt_decode(token, JWT_SECRET)
        user_id: str = payload.get("sub")
        if not user_id:
            raise ValueError("No sub")
        user = db["user"].find_one({"_id": to_object_id(user_id)})
    except (ValueError, ValidationError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Could not validate credentials")
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    bind_request_context(user_id=str(user["_id"]))
    return user


def get_principal(user: dict = Depends(get_current_user)) -> Principal:
    return Principal.from_user(user)


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "email": user["email"],
        "first_name": user["first_name"],
        "last_name": user["last_name"],
        "role": user.get("role", Role.CUSTOMER.value),
    }


# Users
@app.post("/api/users/register", status_code=201)
def register(payload: UserCreate, db=Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="User already exists")
    doc = {
        "email": email,
        "first_name": payload.first_name,
        "last_name": payload.last_name,
        "password_hash": hash_password(payload.password),
        "role": Role.CUSTOMER.value,
    }
    try:
        new_id = create_document(db, "user", doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="User already exists")
    user = db["user"].find_one({"_id": to_object_id(new_id)})
    return {"success": True, "data": {"user": public_user(user), "token": create_access_token({"sub": new_id})}}

@app.post("/api/users/login")
def login(payload: LoginRequest, db=Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    access_token = create_access_token({"sub": str(user["_id"])})
    return {"access_token": access_token, "token_type": "bearer", "user": public_user(user)}

@app.get("/api/users/me")
def get_me(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": public_user(current_user)}

@app.get("/api/users")
def list_users(principal: Principal = Depends(get_principal), db=Depends(get_db)):
    require_admin(principal)
    users = [public_user(u) for u in db["user"].find()]
    return {"success": True, "count": len(users), "data": users}

@app.put("/api/users/{user_id}")
def update_user(user_id: str, body: UserUpdate, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    if principal.user_id != user_id:
        require_admin(principal)
    if body.role is not None:
        require_admin(principal)
    update = body.model_dump(mode="json", exclude_none=True)
    if "email" in update:
        update["email"] = update["email"].lower()
    update["updated_at"] = utcnow()
    try:
        user = db["user"].find_one_and_update(
            {"_id": to_object_id(user_id, "user_id")}, {"$set": update}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already in use")
    if not user:
        raise NotFoundError("User", user_id)
    return {"success": True, "data": public_user(user)}

@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    require_admin(principal)
    res = db["user"].delete_one({"_id": to_object_id(user_id, "user_id")})
    if not res.deleted_count:
        raise NotFoundError("User", user_id)
    return {"success": True, "message": "User deleted successfully"}


# Addresses
@app.get("/api/addresses")
def list_addresses(principal: Principal = Depends(get_principal), db=Depends(get_db)):
    addresses = AddressBook(db).list(principal)
    return {"success": True, "count": len(addresses), "data": addresses}

@app.get("/api/addresses/{address_id}")
def get_address(address_id: str, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    return {"success": True, "data": AddressBook(db).get(principal, address_id)}

@app.post("/api/addresses", status_code=201)
def create_address(body: AddressCreate, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    return {"success": True, "data": AddressBook(db).create(principal, body)}

@app.put("/api/addresses/{address_id}")
def update_address(address_id: str, body: AddressUpdate, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    return {"success": True, "data": AddressBook(db).update(principal, address_id, body)}

@app.delete("/api/addresses/{address_id}")
def delete_address(address_id: str, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    AddressBook(db).delete(principal, address_id)
    return {"success": True, "message": "Address deleted successfully"}


# Categories
@app.get("/api/categories")
def list_categories(db=Depends(get_db)):
    cats = [serialize_document(c) for c in get_documents(db, "category")]
    return {"success": True, "count": len(cats), "data": cats}

@app.get("/api/categories/{category_id}")
def get_category(category_id: str, db=Depends(get_db)):
    c = db["category"].find_one({"_id": to_object_id(category_id, "category_id")})
    if not c:
        raise NotFoundError("Category", category_id)
    return {"success": True, "data": serialize_document(c)}

@app.post("/api/categories", status_code=201)
def create_category(body: CategoryCreate, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    require_admin(principal)
    new_id = create_document(db, "category", body.model_dump())
    return {"success": True, "data": serialize_document(db["category"].find_one({"_id": to_object_id(new_id)}))}

@app.put("/api/categories/{category_id}")
def update_category(category_id: str, body: CategoryUpdate, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    require_admin(principal)
    update = body.model_dump(exclude_none=True)
    update["updated_at"] = utcnow()
    c = db["category"].find_one_and_update(
        {"_id": to_object_id(category_id, "category_id")}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    if not c:
        raise NotFoundError("Category", category_id)
    return {"success": True, "data": serialize_document(c)}

@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    require_admin(principal)
    res = db["category"].delete_one({"_id": to_object_id(category_id, "category_id")})
    if not res.deleted_count:
        raise NotFoundError("Category", category_id)
    return {"success": True, "message": "Category deleted successfully"}


# Products
@app.get("/api/products")
def list_products(category: Optional[str] = None, search: Optional[str] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None, db=Depends(get_db)):
    query: Dict[str, Any] = {}
    if category:
        query["category_id"] = category
    if search:
        query["$or"] = [
            {"name": {"$regex": search, "$options": "i"}},
            {"description": {"$regex": search, "$options": "i"}},
        ]
    if min_price is not None or max_price is not None:
        query["price"] = {}
        if min_price is not None:
            query["price"]["$gte"] = min_price
        if max_price is not None:
            query["price"]["$lte"] = max_price
    items = [serialize_document(p) for p in get_documents(db, "product", query)]
    return {"success": True, "count": len(items), "data": items}

@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    p = db["product"].find_one({"_id": to_object_id(product_id, "product_id")})
    if not p:
        raise NotFoundError("Product", product_id)
    return {"success": True, "data": serialize_document(p)}

@app.post("/api/products", status_code=201)
def create_product(body: ProductCreate, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    require_admin(principal)
    if not db["category"].find_one({"_id": to_object_id(body.category_id, "category_id")}):
        raise NotFoundError("Category", body.category_id)
    new_id = create_document(db, "product", body.model_dump())
    logger.info("product_created", product_id=new_id, stock_quantity=body.stock_quantity)
    return {"success": True, "data": serialize_document(db["product"].find_one({"_id": to_object_id(new_id)}))}

@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdate, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    require_admin(principal)
    update = body.model_dump(exclude_none=True)
    update["updated_at"] = utcnow()
    p = db["product"].find_one_and_update(
        {"_id": to_object_id(product_id, "product_id")}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    if not p:
        raise NotFoundError("Product", product_id)
    return {"success": True, "data": serialize_document(p)}

@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    require_admin(principal)
    res = db["product"].delete_one({"_id": to_object_id(product_id, "product_id")})
    if not res.deleted_count:
        raise NotFoundError("Product", product_id)
    return {"success": True, "message": "Product deleted successfully"}


# Cart
@app.get("/api/carts")
def get_cart(principal: Principal = Depends(get_principal), db=Depends(get_db)):
    return {"success": True, "data": CartService(db).view(principal)}

@app.post("/api/carts/items", status_code=201)
def add_to_cart(body: CartItemAdd, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    return {"success": True, "data": CartService(db).add_item(principal, body.product_id, body.quantity)}

@app.put("/api/carts/items/{item_id}")
def update_cart_item(item_id: str, body: CartItemUpdate, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    return {"success": True, "data": CartService(db).update_item(principal, item_id, body.quantity)}

@app.delete("/api/carts/items/{item_id}")
def remove_from_cart(item_id: str, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    CartService(db).remove_item(principal, item_id)
    return {"success": True, "message": "Item removed from cart"}

@app.delete("/api/carts")
def clear_cart(principal: Principal = Depends(get_principal), db=Depends(get_db)):
    CartService(db).clear(principal)
    return {"success": True, "message": "Cart cleared"}


# Orders
@app.post("/api/orders", status_code=201)
def create_order(body: OrderCreate, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    result = OrderAssembler(db).place_order(principal, body.shipping_address_id, body.billing_address_id)
    return {"success": True, "data": result}

@app.get("/api/orders")
def list_orders(principal: Principal = Depends(get_principal), db=Depends(get_db)):
    orders = OrderBook(db).list_orders(principal)
    return {"success": True, "count": len(orders), "data": orders}

@app.get("/api/orders/{order_id}")
def get_order(order_id: str, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    return {"success": True, "data": OrderBook(db).get_order(principal, order_id)}

@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, body: OrderStatusUpdate, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    require_admin(principal)
    return {"success": True, "data": OrderBook(db).set_status(order_id, body.status)}

@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str, principal: Principal = Depends(get_principal), db=Depends(get_db)):
    require_admin(principal)
    OrderBook(db).delete_order(order_id)
    return {"success": True, "message": "Order deleted successfully"}


# Health
@app.get("/api/health")
def health():
    response = {"success": True, "message": "API is running", "database": "Not Configured"}
    if database.db is not None:
        try:
            database.db.command("ping")
            response["database"] = "Connected"
        except PyMongoError as e:
            response["database"] = f"Error: {str(e)[:120]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
