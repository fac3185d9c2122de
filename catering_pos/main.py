from __future__ import annotations
import logging
import os
from datetime import datetime
from typing import Literal, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from motor.motor_asyncio import AsyncIOMotorDatabase

from .auth import AuthSession, can, get_session, require
from .billing import BillRenderer
from .database import get_db
from .errors import POSError, error_envelope, pos_error_handler
from .lifecycle import OrderLifecycle
from .product_routes import router as product_router, seed_catalog
from .schemas import OrderCreate, OrderUpdate, SendBillRequest, StatusUpdate, TERMINAL_STATUSES
from .settings import Settings, get_settings, settings
from .whatsapp import WhatsAppGateway
from .whatsapp_routes import get_gateway, router as whatsapp_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Catering POS API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(POSError, pos_error_handler)
app.include_router(product_router)
app.include_router(whatsapp_router)


def get_renderer(settings: Settings = Depends(get_settings)) -> BillRenderer:
    return BillRenderer(settings)


def get_lifecycle(
    db: AsyncIOMotorDatabase = Depends(get_db),
    renderer: BillRenderer = Depends(get_renderer),
    gateway: WhatsAppGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> OrderLifecycle:
    return OrderLifecycle(db, renderer, gateway, currency=settings.CURRENCY_SYMBOL, business_name=settings.BUSINESS_NAME)


def check_acknowledged(status: Optional[str], acknowledged: bool) -> None:
    # Confirm and cancel are two-step in the UI; the second step is re-checked here
    if status in TERMINAL_STATUSES and not acknowledged:
        raise HTTPException(status_code=400, detail=f"Changing status to {status} must be acknowledged")


def owner_scope(session: AuthSession) -> Optional[str]:
    # Without orders:read_all a principal only sees what it created
    return None if can(session.principal, "orders:read_all") else session.principal.user_id


@app.get("/")
async def root():
    return {"message": "Catering POS Backend Running"}


@app.get("/test")
async def test(db: AsyncIOMotorDatabase = Depends(get_db)):
    try:
        colls = await db.list_collection_names()
        return {
            "backend": "✅ Running",
            "database": "✅ Connected & Working",
            "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
            "database_name": db.name,
            "connection_status": "Connected",
            "collections": colls[:10],
        }
    except Exception as e:
        logger.warning("Database check failed: %s", e)
        return {"backend": "✅ Running", "database": f"❌ Error: {str(e)[:50]}", "connection_status": "Not Connected"}


@app.post("/seed", dependencies=[Depends(require("products:write"))])
async def seed(db: AsyncIOMotorDatabase = Depends(get_db)):
    inserted = await seed_catalog(db)
    return {"seeded": any(inserted.values()), **inserted}


# Auth session

@app.get("/auth/session")
async def current_session(session: AuthSession = Depends(get_session)):
    p = session.principal
    return {
        "userId": p.user_id,
        "role": p.role,
        "permissions": list(p.permissions),
        "branch": p.branch,
        "name": p.name,
        "expiresAt": session.expires_at,
    }


@app.post("/auth/refresh")
async def refresh_session(session: AuthSession = Depends(get_session)):
    refreshed = session.refresh()
    return {"token": refreshed.token, "expiresAt": refreshed.expires_at}


# Orders

@app.get("/orders")
async def list_orders(
    status: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    session: AuthSession = Depends(require("orders:read")),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.list_orders(
        status=status,
        priority=priority,
        search=search,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        start_date=start_date,
        end_date=end_date,
        created_by=owner_scope(session),
    )


@app.get("/orders/stats")
async def order_stats(
    period: str = Query("month"),
    session: AuthSession = Depends(require("orders:read")),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.order_stats(period, created_by=owner_scope(session))


@app.get("/orders/{order_id}", dependencies=[Depends(require("orders:read"))])
async def get_order(order_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    return await lifecycle.get_order(order_id)


@app.post("/orders", status_code=201)
async def create_order(
    payload: OrderCreate,
    background_tasks: BackgroundTasks,
    send_bill: bool = Query(False, alias="sendBill"),
    session: AuthSession = Depends(require("orders:create")),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
    settings: Settings = Depends(get_settings),
):
    order = await lifecycle.create_order(
        payload.customer,
        payload.items,
        discount=payload.discount,
        discount_type=payload.discount_type,
        priority=payload.priority,
        delivery_date=payload.delivery_date,
        notes=payload.notes,
        created_by=session.principal.user_id,
        branch=session.principal.branch,
    )
    if send_bill:
        # Runs after the response; a failed send never undoes the order
        background_tasks.add_task(lifecycle.send_bill_later, order["id"], settings.AUTO_SEND_BILL_DELAY)
    return {"message": "Order created successfully", "order": order}


@app.put("/orders/{order_id}", dependencies=[Depends(require("orders:update"))])
async def update_order(order_id: str, payload: OrderUpdate, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    check_acknowledged(payload.status, payload.acknowledged)
    order = await lifecycle.update_order(order_id, payload.to_document(exclude_unset=True, exclude={"acknowledged"}))
    return {"message": "Order updated successfully", "order": order}


@app.patch("/orders/{order_id}/status", dependencies=[Depends(require("orders:status"))])
async def update_order_status(order_id: str, payload: StatusUpdate, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    check_acknowledged(payload.status, payload.acknowledged)
    order = await lifecycle.change_status(order_id, payload.status)
    return {"message": "Order status updated successfully", "order": order}


@app.patch("/orders/{order_id}/confirm", dependencies=[Depends(require("orders:status"))])
async def confirm_order(order_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    order = await lifecycle.confirm_order(order_id)
    return {"message": "Order confirmed successfully", "order": order}


@app.delete("/orders/{order_id}", dependencies=[Depends(require("orders:delete"))])
async def delete_order(order_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    await lifecycle.delete_order(order_id)
    return {"message": "Order deleted successfully"}


@app.post("/orders/{order_id}/send-bill", dependencies=[Depends(require("orders:send_bill"))])
async def send_bill(order_id: str, payload: Optional[SendBillRequest] = None, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    image_data = payload.image_data if payload else None
    try:
        result = await lifecycle.trigger_bill_delivery(order_id, image_data)
    except POSError as e:
        logger.error("Error sending bill for order %s: %s", order_id, e.message)
        return error_envelope(e)
    return {"success": True, "message": "Bill sent successfully via WhatsApp", "data": result}


@app.get("/orders/{order_id}/bill.png", dependencies=[Depends(require("orders:read"))])
async def bill_png(order_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    order, png = await lifecycle.render_bill(order_id, "png")
    return Response(
        content=png,
        media_type="image/png",
        headers={"Content-Disposition": f'inline; filename="bill-{order["orderNumber"]}.png"'},
    )


@app.get("/orders/{order_id}/bill.pdf", dependencies=[Depends(require("orders:read"))])
async def bill_pdf(order_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    order, pdf = await lifecycle.render_bill(order_id, "pdf")
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="Bill-{order["orderNumber"]}.pdf"'},
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", settings.PORT)))
