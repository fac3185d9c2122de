"""
Order lifecycle controller.

Owns the status state machine, server-side pricing at commit time, and the
render -> send -> record bill delivery pipeline. Concurrent edits are last
write wins; there is no version field on orders.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from datetime import datetime, timedelta
from typing import Any, Optional

from fastapi.concurrency import run_in_threadpool
from motor.motor_asyncio import AsyncIOMotorDatabase

from .billing import BillRenderer
from .database import (
    create_document,
    delete_document,
    get_document,
    get_documents,
    next_sequence,
    to_object_id,
    update_document,
)
from .errors import DeliveryError, InvalidTransition, NotFound, POSError, ValidationError
from .pricing import compute_totals, line_subtotal
from .schemas import ORDER_STATUSES, TERMINAL_STATUSES, Customer, OrderItemIn
from .whatsapp import WhatsAppGateway, bill_caption

logger = logging.getLogger(__name__)

ORDERS = "orders"
PRODUCTS = "products"

OPEN_ORDER = {"status": {"$nin": list(TERMINAL_STATUSES)}}
SORTABLE_FIELDS = ("createdAt", "updatedAt", "orderNumber", "finalAmount", "status", "priority", "deliveryDate")


def check_transition(current: str, new_status: str) -> None:
    if new_status not in ORDER_STATUSES:
        raise ValidationError(f"Valid status is required ({', '.join(ORDER_STATUSES)})")
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(f"Cannot change status of {current} orders")


def format_order_number(seq: int) -> str:
    return f"ORD-{seq:03d}"


class OrderLifecycle:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        renderer: BillRenderer,
        gateway: WhatsAppGateway,
        currency: str = "£",
        business_name: str = "us",
    ):
        self.db = db
        self.renderer = renderer
        self.gateway = gateway
        self.currency = currency
        self.business_name = business_name

    async def _require(self, order_id: str) -> dict:
        order = await get_document(self.db, ORDERS, order_id)
        if order is None:
            raise NotFound("Order not found")
        return order

    async def _price_items(self, items: list[OrderItemIn]) -> list[dict]:
        """Freeze catalog values onto order lines; the client only sends ids and quantities."""
        processed = []
        for item in items:
            product = await get_document(self.db, PRODUCTS, item.product_id)
            if product is None:
                raise NotFound(f"Product with ID {item.product_id} not found")
            price = float(product["price"])
            processed.append({
                "productId": product["id"],
                "name": product["name"],
                "category": product["category"],
                "price": price,
                "quantity": item.quantity,
                "subtotal": line_subtotal(price, item.quantity),
                "isVegetarian": bool(product.get("isVegetarian", False)),
                "includes": list(product.get("items") or []),
            })
        return processed

    async def _write_open(self, order_id: str, changes: dict[str, Any]) -> dict:
        """Apply changes only while the order is still open; a concurrent finalize wins."""
        updated = await update_document(self.db, ORDERS, order_id, changes, guard=OPEN_ORDER)
        if updated is None:
            current = await get_document(self.db, ORDERS, order_id)
            if current is None:
                raise NotFound("Order not found")
            raise InvalidTransition(f"Cannot change {current['status']} orders")
        return updated

    @staticmethod
    def _check_customer(customer: Customer) -> dict:
        data = customer.to_document()
        for key in ("name", "whatsapp", "address"):
            data[key] = (data.get(key) or "").strip()
        if not (data["name"] and data["whatsapp"] and data["address"]):
            raise ValidationError("Customer information (name, whatsapp, address) is required")
        data["notes"] = (data.get("notes") or "").strip()
        return data

    async def create_order(
        self,
        customer: Customer,
        items: list[OrderItemIn],
        discount: float = 0,
        discount_type: str = "amount",
        priority: str = "medium",
        delivery_date: Optional[datetime] = None,
        notes: str = "",
        created_by: Optional[str] = None,
        branch: Optional[str] = None,
    ) -> dict:
        customer_doc = self._check_customer(customer)
        if not items:
            raise ValidationError("At least one item is required")
        if discount is None or discount < 0:
            raise ValidationError("Discount must be zero or positive")

        processed = await self._price_items(items)
        totals = compute_totals(processed, discount, discount_type)
        seq = await next_sequence(self.db, "orderNumber")

        order = await create_document(self.db, ORDERS, {
            "orderNumber": format_order_number(seq),
            "customer": customer_doc,
            "items": processed,
            "discount": float(discount),
            "discountType": discount_type,
            **totals,
            "status": "pending",
            "priority": priority,
            "deliveryDate": delivery_date,
            "notes": (notes or "").strip(),
            "createdBy": created_by,
            "branch": branch,
        })
        logger.info("Order %s created (%d items, final %.2f)", order["orderNumber"], len(processed), totals["finalAmount"])
        return order

    async def get_order(self, order_id: str) -> dict:
        return await self._require(order_id)

    async def update_order(self, order_id: str, fields: dict[str, Any]) -> dict:
        """
        Apply a partial update. Finalized (confirmed or cancelled) orders are
        read-only. Money is recomputed whenever items or discount change.
        """
        order = await self._require(order_id)
        if order["status"] in TERMINAL_STATUSES:
            raise InvalidTransition(f"Cannot update {order['status']} orders")

        changes: dict[str, Any] = {}
        if fields.get("customer") is not None:
            changes["customer"] = self._check_customer(Customer.model_validate(fields["customer"]))

        items = order["items"]
        if fields.get("items") is not None:
            if not fields["items"]:
                raise ValidationError("At least one item is required")
            items = await self._price_items([OrderItemIn.model_validate(i) for i in fields["items"]])
            changes["items"] = items

        discount = order.get("discount", 0) if fields.get("discount") is None else float(fields["discount"])
        discount_type = fields.get("discountType") or order.get("discountType", "amount")
        if any(fields.get(k) is not None for k in ("items", "discount", "discountType")):
            changes.update({"discount": discount, "discountType": discount_type, **compute_totals(items, discount, discount_type)})

        for key in ("priority", "deliveryDate"):
            if fields.get(key) is not None:
                changes[key] = fields[key]
        if fields.get("notes") is not None:
            changes["notes"] = fields["notes"].strip()
        if fields.get("status") is not None:
            check_transition(order["status"], fields["status"])
            changes["status"] = fields["status"]

        if not changes:
            return order
        updated = await self._write_open(order_id, changes)
        logger.info("Order %s updated (%s)", updated["orderNumber"], ", ".join(sorted(changes)))
        return updated

    async def change_status(self, order_id: str, new_status: str) -> dict:
        order = await self._require(order_id)
        check_transition(order["status"], new_status)
        updated = await self._write_open(order_id, {"status": new_status})
        logger.info("Order %s status %s -> %s", updated["orderNumber"], order["status"], new_status)
        return updated

    async def confirm_order(self, order_id: str) -> dict:
        return await self.change_status(order_id, "confirmed")

    async def delete_order(self, order_id: str) -> None:
        if not await delete_document(self.db, ORDERS, order_id):
            raise NotFound("Order not found")
        logger.info("Order %s deleted", order_id)

    # Queries

    @staticmethod
    def _filter(
        status: Optional[str] = None,
        priority: Optional[str] = None,
        search: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> dict:
        filt: dict[str, Any] = {}
        if created_by:
            filt["createdBy"] = created_by
        if status and status != "all":
            filt["status"] = status
        if priority and priority != "all":
            filt["priority"] = priority
        if search:
            pattern = re.escape(search)
            filt["$or"] = [
                {"orderNumber": {"$regex": pattern, "$options": "i"}},
                {"customer.name": {"$regex": pattern, "$options": "i"}},
                {"customer.whatsapp": {"$regex": pattern, "$options": "i"}},
                {"customer.address": {"$regex": pattern, "$options": "i"}},
            ]
        if start_date or end_date:
            filt["createdAt"] = {}
            if start_date:
                filt["createdAt"]["$gte"] = start_date
            if end_date:
                filt["createdAt"]["$lte"] = end_date
        return filt

    async def status_counts(self, created_by: Optional[str] = None) -> dict[str, int]:
        counts = {status: 0 for status in ORDER_STATUSES}
        match = {"createdBy": created_by} if created_by else {}
        async for row in self.db[ORDERS].aggregate([
            {"$match": match},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ]):
            counts[row["_id"]] = row["count"]
        return counts

    async def list_orders(
        self,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> dict:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        if sort_by not in SORTABLE_FIELDS:
            raise ValidationError(f"Cannot sort by {sort_by}")
        filt = self._filter(status, priority, search, start_date, end_date, created_by)
        direction = -1 if sort_order == "desc" else 1
        orders = await get_documents(
            self.db, ORDERS, filt, limit=limit, skip=(page - 1) * limit, sort=[(sort_by, direction)],
        )
        total = await self.db[ORDERS].count_documents(filt)
        return {
            "orders": orders,
            "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
            "statusCounts": await self.status_counts(created_by),
        }

    async def order_stats(self, period: str = "month", created_by: Optional[str] = None, now: Optional[datetime] = None) -> dict:
        now = now or datetime.utcnow()
        match: dict[str, Any] = {}
        if created_by:
            match["createdBy"] = created_by
        if period == "today":
            start = now.replace(hour=0, minute=0, second=0, microsecond=0)
            match["createdAt"] = {"$gte": start, "$lt": start + timedelta(days=1)}
        elif period == "week":
            start = (now - timedelta(days=now.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
            match["createdAt"] = {"$gte": start, "$lte": now}
        elif period == "month":
            match["createdAt"] = {"$gte": now.replace(day=1, hour=0, minute=0, second=0, microsecond=0), "$lte": now}
        elif period != "all":
            raise ValidationError("period must be one of today, week, month, all")

        stats = {"totalOrders": 0, "totalRevenue": 0.0, "averageOrderValue": 0.0}
        by_status = []
        async for row in self.db[ORDERS].aggregate([
            {"$match": match},
            {"$group": {"_id": "$status", "count": {"$sum": 1}, "revenue": {"$sum": "$finalAmount"}}},
        ]):
            by_status.append({"status": row["_id"], "count": row["count"], "revenue": row["revenue"]})
            stats["totalOrders"] += row["count"]
            stats["totalRevenue"] += row["revenue"]
        if stats["totalOrders"]:
            stats["averageOrderValue"] = stats["totalRevenue"] / stats["totalOrders"]
        return {"period": period, "stats": stats, "statusStats": by_status}

    # Bill delivery

    async def render_bill(self, order_id: str, fmt: str = "png") -> tuple[dict, bytes]:
        order = await self._require(order_id)
        render = self.renderer.render_pdf if fmt == "pdf" else self.renderer.render_png
        return order, await run_in_threadpool(render, order)

    async def trigger_bill_delivery(self, order_id: str, image_data: Optional[str] = None) -> dict:
        """
        Render (unless the client already did) and send the bill, then record
        the delivery sub-record. A failure anywhere leaves the order untouched
        and propagates to the caller; re-running sends again.
        """
        order = await self._require(order_id)
        phone = order["customer"].get("whatsapp")
        if not phone:
            raise ValidationError("Customer WhatsApp number not found")

        if image_data:
            image_url = image_data
        else:
            png = await run_in_threadpool(self.renderer.render_png, order)
            image_url = self.renderer.to_data_url(png)

        logger.info("Sending bill for order %s to %s", order["orderNumber"], phone)
        message_id = await run_in_threadpool(
            self.gateway.send_image,
            phone,
            image_url,
            f"bill-{order['orderNumber']}.png",
            bill_caption(order, self.currency, self.business_name),
        )

        sent_at = datetime.utcnow()
        delivery = {"sent": True, "sentAt": sent_at, "imageUrl": image_url, "providerMessageId": message_id}
        result = await self.db[ORDERS].update_one({"_id": to_object_id(order["id"])}, {"$set": {"delivery": delivery}})
        if result.matched_count == 0:
            logger.warning("Order %s disappeared before its delivery could be recorded", order["orderNumber"])
        logger.info("Bill for order %s sent, message id %s", order["orderNumber"], message_id)

        return {
            "orderId": order["id"],
            "orderNumber": order["orderNumber"],
            "sentTo": phone,
            "customerName": order["customer"].get("name"),
            "billImageUrl": image_url,
            "whatsappMessageId": message_id,
            "sentAt": sent_at,
        }

    async def send_bill_later(self, order_id: str, delay: float = 0) -> None:
        """Auto-send after creation. Failures are logged, the order is never rolled back."""
        if delay:
            await asyncio.sleep(delay)
        try:
            await self.trigger_bill_delivery(order_id)
        except POSError as e:
            level = logging.WARNING if isinstance(e, DeliveryError) else logging.ERROR
            logger.log(level, "Order %s created but bill was not sent: %s", order_id, e.message)
