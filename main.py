import logging
from contextlib import asynccontextmanager
from typing import List, Literal, Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

import database
import settings
from auth import StepUpVerifier, check_password, create_token, hash_password, require_admin, require_user
from database import create_document, get_db, get_documents, now_utc, oid
from errors import ShopError, UnauthorizedTransitionError
from order_workflow import (
    AuthContext,
    OrderStatus,
    OrderStore,
    PendingCancellations,
    allowed_targets,
    display_status,
    status_timeline,
)
from pricing import (
    PriceBreakdown,
    breakdown_for,
    breakdown_from_snapshot,
    compute_breakdown,
    compute_order_totals,
    find_size,
    to_money,
)
from schemas import Address, CartItem, Order, OrderItem, Product, Review, ShippingPincode, User

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def ensure_admin(db) -> None:
    if not (settings.ADMIN_EMAIL and settings.ADMIN_PASSWORD):
        return
    if db["user"].find_one({"email": settings.ADMIN_EMAIL}):
        return
    admin = User(name="Admin", email=settings.ADMIN_EMAIL,
                 password_hash=hash_password(settings.ADMIN_PASSWORD), role="admin")
    create_document(db, "user", admin)
    logger.info("Created admin account %s", settings.ADMIN_EMAIL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_admin(database.db)
    yield


app = FastAPI(title="GST Storefront API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

pending_cancellations = PendingCancellations()


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def get_step_up_verifier(db=Depends(get_db)) -> StepUpVerifier:
    return StepUpVerifier(db)

# ---------------------- Request Models ----------------------

class RegisterBody(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None

class LoginBody(BaseModel):
    email: str
    password: str

class PriceQuery(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    base_price: float
    mrp: Optional[float] = None
    gst_rate_percent: float
    gst_type: str = "exclusive"

class PriceBreakdownOut(BaseModel):
    price_before_gst: float = Field(serialization_alias="priceBeforeGST")
    gst_amount: float = Field(serialization_alias="gstAmount")
    final_price: float = Field(serialization_alias="finalPrice")
    discount_percent: int = Field(serialization_alias="discountPercent")
    mrp: float

class CheckoutBody(BaseModel):
    items: Optional[List[CartItem]] = None
    address: Address
    payment_mode: Literal["COD", "Online"] = "COD"

class StatusBody(BaseModel):
    target_status: str
    tracking_id: Optional[str] = None
    courier_company: Optional[str] = None
    reject_reason: Optional[str] = None

class CancellationBody(BaseModel):
    reject_reason: Optional[str] = None

class VerifyBody(BaseModel):
    password: str

class ReviewBody(BaseModel):
    product_id: str
    order_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None

# ---------------------- Helpers ----------------------

def public_user(user: dict) -> Dict[str, Any]:
    return {"id": str(user["_id"]), "name": user.get("name"), "email": user["email"], "role": user.get("role", "customer")}

def load_products(db, product_ids: List[str]) -> Dict[str, dict]:
    products = {}
    missing = []
    for pid in dict.fromkeys(product_ids):
        prod = db["product"].find_one({"_id": oid(pid)})
        if prod and prod.get("is_active", True):
            products[pid] = prod
        else:
            missing.append(pid)
    if missing:
        raise HTTPException(404, f"One or more products not found. Missing product IDs: {', '.join(missing)}")
    return products

def price_line(product: dict, selected_size: Optional[str]) -> PriceBreakdown:
    if selected_size:
        size = find_size(product, selected_size)
        if size is None:
            raise HTTPException(400, f"Size {selected_size} is not offered for {product.get('title')}")
        if not size.get("is_available", True):
            raise HTTPException(400, f"Size {selected_size} of {product.get('title')} is unavailable")
    return breakdown_for(product, selected_size)

def shipping_override_for(db, pincode: Optional[str]) -> Optional[float]:
    if not pincode:
        return None
    rule = db["shippingpincode"].find_one({"pincode": pincode.strip(), "is_active": True})
    return rule["amount"] if rule else None

def product_out(prod: dict) -> dict:
    prod["_id"] = str(prod["_id"])
    prod["pricing"] = breakdown_for(prod).as_dict()
    for size in prod.get("sizes") or []:
        size["pricing"] = breakdown_for(prod, size["size_value"]).as_dict()
    return prod

def order_out(order: dict) -> dict:
    order["_id"] = str(order["_id"])
    order["display_status"] = display_status(order["status"])
    order["next_statuses"] = [s.value for s in allowed_targets(order["status"])]
    order["status_timeline"] = status_timeline(order)
    return order

def order_totals(order: dict) -> Dict[str, Any]:
    lines = [(breakdown_from_snapshot(it), it["quantity"]) for it in order.get("items", [])]
    return compute_order_totals(lines, shipping_override=order.get("shipping_charge", 0)).as_dict()

# ---------------------- Root & Health ----------------------

@app.get("/")
def read_root():
    return {"message": "GST Storefront API running"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"
            try:
                response["collections"] = database.db.list_collection_names()
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response

# ---------------------- Schemas Endpoint ----------------------

@app.get("/schema")
def get_schema():
    def model_fields(m):
        return {k: str(v.annotation) for k, v in m.model_fields.items()}
    return {
        "models": {
            "user": model_fields(User),
            "product": model_fields(Product),
            "cart_item": model_fields(CartItem),
            "order": model_fields(Order),
            "order_item": model_fields(OrderItem),
            "shippingpincode": model_fields(ShippingPincode),
            "review": model_fields(Review),
        }
    }

# ---------------------- Auth ----------------------

@app.post("/auth/register")
def register(body: RegisterBody, db=Depends(get_db)):
    if db["user"].find_one({"email": body.email}):
        raise HTTPException(400, "Email already registered")
    user = User(name=body.name, email=body.email, password_hash=hash_password(body.password), phone=body.phone)
    create_document(db, "user", user)
    user_doc = db["user"].find_one({"email": body.email})
    return {"token": create_token(user_doc), "user": public_user(user_doc)}

@app.post("/auth/login")
def login(body: LoginBody, db=Depends(get_db)):
    user = db["user"].find_one({"email": body.email})
    if not user or not user.get("is_active", True) or not check_password(body.password, user.get("password_hash")):
        raise HTTPException(401, "Invalid credentials")
    return {"token": create_token(user), "user": public_user(user)}

@app.get("/auth/me")
def me(user=Depends(require_user)):
    return public_user(user)

# ---------------------- Pricing ----------------------

@app.post("/pricing/breakdown", response_model=PriceBreakdownOut)
def price_breakdown(body: PriceQuery):
    return compute_breakdown(body.base_price, body.mrp, body.gst_rate_percent, body.gst_type).as_dict()

# ---------------------- Products ----------------------

@app.get("/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None, brand: Optional[str] = None,
                  limit: int = 50, db=Depends(get_db)):
    filt: Dict[str, Any] = {"is_active": True}
    if q:
        filt["title"] = {"$regex": q, "$options": "i"}
    if category:
        filt["category"] = category
    if brand:
        filt["brand"] = brand
    return [product_out(p) for p in db["product"].find(filt).limit(limit)]

@app.get("/products/{pid}")
def get_product(pid: str, db=Depends(get_db)):
    prod = db["product"].find_one({"_id": oid(pid)})
    if not prod:
        raise HTTPException(404, "Product not found")
    return product_out(prod)

@app.post("/admin/products")
def admin_create_product(body: Product, admin=Depends(require_admin), db=Depends(get_db)):
    # reject a product whose pricing cannot be computed
    breakdown_for(body.model_dump())
    return {"_id": create_document(db, "product", body)}

@app.put("/admin/products/{pid}")
def admin_update_product(pid: str, body: Product, admin=Depends(require_admin), db=Depends(get_db)):
    breakdown_for(body.model_dump())
    res = db["product"].update_one({"_id": oid(pid)}, {"$set": {**body.model_dump(), "updated_at": now_utc()}})
    if res.matched_count == 0:
        raise HTTPException(404, "Product not found")
    return {"ok": True}

@app.delete("/admin/products/{pid}")
def admin_delete_product(pid: str, admin=Depends(require_admin), db=Depends(get_db)):
    open_orders = db["order"].count_documents({
        "items.product_id": pid,
        "status": {"$in": [OrderStatus.PENDING.value, OrderStatus.DISPATCHED.value]},
    })
    if open_orders:
        raise HTTPException(409, f"Product is part of {open_orders} open order(s) and cannot be deleted")
    res = db["product"].delete_one({"_id": oid(pid)})
    if res.deleted_count == 0:
        raise HTTPException(404, "Product not found")
    return {"ok": True}

# ---------------------- Cart ----------------------

@app.get("/cart")
def get_cart(user=Depends(require_user), db=Depends(get_db)):
    cart = db["cart"].find_one({"user_id": str(user["_id"])}) or {"user_id": str(user["_id"]), "items": []}
    if "_id" in cart:
        cart["_id"] = str(cart["_id"])
    return cart

@app.post("/cart/add")
def add_to_cart(item: CartItem, user=Depends(require_user), db=Depends(get_db)):
    product = load_products(db, [item.product_id])[item.product_id]
    price_line(product, item.selected_size)
    user_id = str(user["_id"])
    cart = db["cart"].find_one({"user_id": user_id}) or {"user_id": user_id, "items": []}
    items = cart.get("items", [])
    for it in items:
        if it["product_id"] == item.product_id and it.get("selected_size") == item.selected_size:
            it["quantity"] += item.quantity
            break
    else:
        items.append(item.model_dump())
    db["cart"].update_one({"user_id": user_id}, {"$set": {"items": items, "updated_at": now_utc()}}, upsert=True)
    return {"ok": True}

@app.post("/cart/remove")
def remove_from_cart(item: CartItem, user=Depends(require_user), db=Depends(get_db)):
    user_id = str(user["_id"])
    cart = db["cart"].find_one({"user_id": user_id}) or {"user_id": user_id, "items": []}
    items = [it for it in cart.get("items", [])
             if not (it["product_id"] == item.product_id and it.get("selected_size") == item.selected_size)]
    db["cart"].update_one({"user_id": user_id}, {"$set": {"items": items, "updated_at": now_utc()}}, upsert=True)
    return {"ok": True}

@app.get("/cart/summary")
def cart_summary(pincode: Optional[str] = Query(None), user=Depends(require_user), db=Depends(get_db)):
    cart = db["cart"].find_one({"user_id": str(user["_id"])}) or {"items": []}
    items = cart.get("items", [])
    products = load_products(db, [it["product_id"] for it in items]) if items else {}
    lines = []
    out = []
    for it in items:
        breakdown = price_line(products[it["product_id"]], it.get("selected_size"))
        lines.append((breakdown, it["quantity"]))
        out.append({**it, **breakdown.as_dict(), "line_total": to_money(breakdown.final_price * it["quantity"])})
    totals = compute_order_totals(lines, shipping_override_for(db, pincode))
    return {"items": out, "price_breakdown": totals.as_dict(), "currency": settings.CURRENCY}

# ---------------------- Shipping Rules ----------------------

@app.get("/shipping/pincodes")
def list_pincodes(pin: Optional[str] = None, db=Depends(get_db)):
    filt: Dict[str, Any] = {}
    if pin:
        filt["pincode"] = pin.strip()
    return get_documents(db, "shippingpincode", filt)

@app.post("/admin/shipping/pincodes", status_code=201)
def admin_add_pincode(body: ShippingPincode, admin=Depends(require_admin), db=Depends(get_db)):
    if db["shippingpincode"].find_one({"pincode": body.pincode}):
        raise HTTPException(409, "Pincode already exists")
    return {"_id": create_document(db, "shippingpincode", body)}

@app.put("/admin/shipping/pincodes/{rule_id}")
def admin_update_pincode(rule_id: str, body: ShippingPincode, admin=Depends(require_admin), db=Depends(get_db)):
    row = db["shippingpincode"].find_one({"_id": oid(rule_id)})
    if not row:
        raise HTTPException(404, "Entry not found")
    if body.pincode != row["pincode"] and db["shippingpincode"].find_one({"pincode": body.pincode}):
        raise HTTPException(409, "Another entry with this pincode already exists")
    db["shippingpincode"].update_one({"_id": row["_id"]}, {"$set": {**body.model_dump(), "updated_at": now_utc()}})
    return {"ok": True}

@app.delete("/admin/shipping/pincodes/{rule_id}")
def admin_delete_pincode(rule_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    res = db["shippingpincode"].delete_one({"_id": oid(rule_id)})
    if res.deleted_count == 0:
        raise HTTPException(404, "Entry not found")
    return {"ok": True}

# ---------------------- Checkout ----------------------

@app.post("/checkout/create-order")
def create_order(body: CheckoutBody, user=Depends(require_user), db=Depends(get_db)):
    user_id = str(user["_id"])
    items = [it.model_dump() for it in body.items] if body.items else \
        (db["cart"].find_one({"user_id": user_id}) or {}).get("items", [])
    if not items:
        raise HTTPException(400, "No items in the order")

    products = load_products(db, [it["product_id"] for it in items])
    lines = []
    order_items = []
    for it in items:
        product = products[it["product_id"]]
        breakdown = price_line(product, it.get("selected_size"))
        lines.append((breakdown, it["quantity"]))
        order_items.append(OrderItem(
            product_id=it["product_id"],
            title=product.get("title", ""),
            quantity=it["quantity"],
            selected_size=it.get("selected_size"),
            # catalogue price (size-adjusted) the breakdown was derived from
            price_at_purchase=to_money(breakdown.final_price if breakdown.gst_type == "inclusive"
                                       else breakdown.price_before_gst),
            price_before_gst=to_money(breakdown.price_before_gst),
            gst_amount=to_money(breakdown.gst_amount),
            final_price=to_money(breakdown.final_price),
            gst_rate=float(breakdown.gst_rate),
            gst_type=breakdown.gst_type,
        ))

    totals = compute_order_totals(lines, shipping_override_for(db, body.address.pincode))
    order = Order(
        user_id=user_id,
        items=order_items,
        payment_mode=body.payment_mode,
        currency=settings.CURRENCY,
        shipping_charge=to_money(totals.shipping_charge),
        price_breakdown=totals.as_dict(),
        status_history=[{"status": OrderStatus.PENDING.value, "at": now_utc(), "by": user["email"]}],
        **body.address.model_dump(),
    )
    order_id = create_document(db, "order", order)
    if not body.items:
        db["cart"].update_one({"user_id": user_id}, {"$set": {"items": [], "updated_at": now_utc()}})
    logger.info("Order %s placed by %s for %s", order_id, user["email"], totals.grand_total)
    return {"order_id": order_id, "status": OrderStatus.PENDING.value, "price_breakdown": totals.as_dict(),
            "currency": settings.CURRENCY}

# ---------------------- Orders ----------------------

@app.get("/orders")
def list_orders(user=Depends(require_user), db=Depends(get_db)):
    cur = db["order"].find({"user_id": str(user["_id"])}).sort("created_at", -1)
    return [order_out(o) for o in cur]

@app.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(require_user), db=Depends(get_db)):
    o = OrderStore(db).get(order_id)
    if o["user_id"] != str(user["_id"]) and user.get("role") != "admin":
        raise HTTPException(404, "Order not found")
    o["price_breakdown"] = order_totals(o)
    return order_out(o)

@app.get("/admin/orders")
def admin_list_orders(status: Optional[str] = None, admin=Depends(require_admin), db=Depends(get_db)):
    filt: Dict[str, Any] = {}
    if status and status != "all":
        filt["status"] = OrderStatus.parse(status).value
    cur = db["order"].find(filt).sort("created_at", -1)
    return [order_out(o) for o in cur]

@app.post("/admin/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusBody, admin=Depends(require_admin), db=Depends(get_db)):
    # cancellations go through the verified cancellation flow below
    context = AuthContext(verified=False, admin_email=admin["email"])
    order = OrderStore(db).transition(order_id, body.target_status, body.model_dump(), context)
    return {"message": "Order status updated successfully", "order": order_out(order)}

@app.post("/admin/orders/{order_id}/cancellation", status_code=202)
def request_cancellation(order_id: str, body: CancellationBody, admin=Depends(require_admin), db=Depends(get_db)):
    order = OrderStore(db).get(order_id)
    pending_cancellations.hold(order, admin["email"], body.reject_reason)
    return {"status": "verification-required", "order_id": str(order["_id"])}

@app.post("/admin/orders/{order_id}/cancellation/verify")
def verify_cancellation(order_id: str, body: VerifyBody, admin=Depends(require_admin), db=Depends(get_db),
                        verifier: StepUpVerifier = Depends(get_step_up_verifier)):
    pending = pending_cancellations.take(str(oid(order_id)), admin["email"])
    if pending is None:
        raise HTTPException(404, "No pending cancellation for this order")
    context = verifier.verify(admin["email"], body.password)
    if not context.verified:
        raise UnauthorizedTransitionError("Invalid admin credentials")
    order = OrderStore(db).transition(order_id, OrderStatus.CANCELLED, {"reject_reason": pending.reject_reason}, context)
    return {"message": "Order status updated to Cancelled", "order": order_out(order)}

@app.delete("/admin/orders/{order_id}/cancellation")
def dismiss_cancellation(order_id: str, admin=Depends(require_admin)):
    return {"ok": True, "discarded": pending_cancellations.discard(str(oid(order_id)), admin["email"])}

# ---------------------- Reviews ----------------------

@app.post("/reviews", status_code=201)
def create_review(body: ReviewBody, user=Depends(require_user), db=Depends(get_db)):
    user_id = str(user["_id"])
    order = db["order"].find_one({"_id": oid(body.order_id), "user_id": user_id,
                                  "status": OrderStatus.DELIVERED.value})
    if not order or not any(it["product_id"] == body.product_id for it in order.get("items", [])):
        raise HTTPException(400, "Order not found or not delivered")
    review = Review(user_id=user_id, **body.model_dump())
    return {"_id": create_document(db, "review", review)}

# ---------------------- Seed Demo Data ----------------------

@app.post("/admin/seed")
def seed(admin=Depends(require_admin), db=Depends(get_db)):
    if db["product"].count_documents({}) > 0:
        return {"status": "already-seeded"}
    shirt_sizes = [
        {"size_type": "clothing", "size_value": v, "display_order": i, "price_modifier_type": "none"}
        for i, v in enumerate(["S", "M", "L"])
    ] + [{"size_type": "clothing", "size_value": "XL", "display_order": 3,
          "price_modifier_type": "percentage", "price_modifier_value": 10}]
    demo = [
        {"title": "Cotton Kurta", "slug": "cotton-kurta", "price": 899, "mrp": 1299, "gst_rate": 5,
         "gst_type": "inclusive", "category": "fashion", "brand": "Flames", "stock": 40, "sizes": shirt_sizes},
        {"title": "Running Shoes", "slug": "running-shoes", "price": 2499, "mrp": 3499, "gst_rate": 18,
         "gst_type": "exclusive", "category": "footwear", "brand": "Flames", "stock": 25,
         "sizes": [{"size_type": "shoes", "size_value": str(n), "display_order": n, "price_modifier_type": "none"}
                   for n in range(6, 11)]},
        {"title": "Basmati Rice", "slug": "basmati-rice", "price": 120, "mrp": 150, "gst_rate": 5,
         "gst_type": "exclusive", "category": "grocery", "stock": 200,
         "sizes": [
             {"size_type": "weight", "size_value": "1kg", "display_order": 0, "price_modifier_type": "none"},
             {"size_type": "weight", "size_value": "5kg", "display_order": 1, "price_modifier_type": "fixed",
              "price": 560, "mrp": 700},
         ]},
    ]
    for d in demo:
        create_document(db, "product", Product(**d))
    return {"status": "seeded", "count": len(demo)}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
