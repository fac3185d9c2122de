import pytest
from bson import ObjectId

from catering_pos.database import get_document, update_document
from catering_pos.errors import DeliveryError, InvalidTransition, NotFound, RenderError, UpstreamError, ValidationError
from catering_pos.schemas import ORDER_STATUSES, Customer, OrderItemIn

NON_TERMINAL = ("pending", "preparing", "ready")


async def test_scenario_a_percentage_discount(make_order):
    order = await make_order(discount=10, discount_type="percentage")
    assert order["totalAmount"] == 25
    assert order["discountAmount"] == 2.5
    assert order["finalAmount"] == 22.5
    assert order["status"] == "pending"
    assert order["priority"] == "medium"


async def test_scenario_b_amount_discount(make_order):
    order = await make_order(discount=5, discount_type="amount")
    assert order["totalAmount"] == 25
    assert order["finalAmount"] == 20


async def test_items_are_priced_from_the_catalog(make_order, products):
    order = await make_order(lines=(("Family Feast", 3), ("Samosa", 2)))
    feast, samosa = order["items"]
    assert feast["productId"] == products["Family Feast"]
    assert feast["subtotal"] == 120
    assert feast["includes"] == ["Chicken Biryani", "4 Naan", "Raita"]
    assert samosa["isVegetarian"] is True
    assert order["totalAmount"] == sum(i["price"] * i["quantity"] for i in order["items"])


async def test_later_price_changes_do_not_touch_orders(make_order, db, products, lifecycle):
    order = await make_order()
    await update_document(db, "products", products["Chicken Biryani"], {"price": 99})
    stored = await lifecycle.get_order(order["id"])
    assert stored["items"][0]["price"] == 10
    assert stored["finalAmount"] == 25


async def test_order_numbers_are_unique_after_delete(make_order, lifecycle):
    first = await make_order()
    second = await make_order()
    await lifecycle.delete_order(second["id"])
    third = await make_order()
    assert [first["orderNumber"], second["orderNumber"], third["orderNumber"]] == ["ORD-001", "ORD-002", "ORD-003"]


async def test_create_requires_customer_fields(lifecycle, products):
    blank = Customer(name="  ", whatsapp="123", address="Somewhere")
    with pytest.raises(ValidationError):
        await lifecycle.create_order(blank, [OrderItemIn(product_id=products["Samosa"], quantity=1)])


async def test_create_requires_items(lifecycle, customer):
    with pytest.raises(ValidationError):
        await lifecycle.create_order(customer, [])


async def test_create_with_unknown_product(lifecycle, customer):
    with pytest.raises(NotFound):
        await lifecycle.create_order(customer, [OrderItemIn(product_id=str(ObjectId()), quantity=1)])


@pytest.mark.parametrize("current", NON_TERMINAL)
@pytest.mark.parametrize("target", ORDER_STATUSES)
async def test_open_orders_accept_any_status(make_order, lifecycle, db, current, target):
    order = await make_order()
    await update_document(db, "orders", order["id"], {"status": current})
    updated = await lifecycle.change_status(order["id"], target)
    assert updated["status"] == target
    assert updated["finalAmount"] == order["finalAmount"]


@pytest.mark.parametrize("current", ("confirmed", "cancelled"))
@pytest.mark.parametrize("target", ORDER_STATUSES)
async def test_finalized_orders_reject_every_status(make_order, lifecycle, db, current, target):
    order = await make_order()
    await update_document(db, "orders", order["id"], {"status": current})
    with pytest.raises(InvalidTransition):
        await lifecycle.change_status(order["id"], target)


async def test_scenario_c_cancel_then_ready(make_order, lifecycle):
    order = await make_order()
    assert (await lifecycle.change_status(order["id"], "cancelled"))["status"] == "cancelled"
    with pytest.raises(InvalidTransition):
        await lifecycle.change_status(order["id"], "ready")


async def test_unknown_status_is_rejected(make_order, lifecycle):
    order = await make_order()
    with pytest.raises(ValidationError):
        await lifecycle.change_status(order["id"], "delivered")


async def test_change_status_on_missing_order(lifecycle):
    with pytest.raises(NotFound):
        await lifecycle.change_status(str(ObjectId()), "ready")


async def test_confirm_twice(make_order, lifecycle):
    order = await make_order()
    await lifecycle.confirm_order(order["id"])
    with pytest.raises(InvalidTransition):
        await lifecycle.confirm_order(order["id"])


async def test_update_recomputes_money(make_order, lifecycle, products):
    order = await make_order()
    updated = await lifecycle.update_order(order["id"], {"discount": 10, "discountType": "percentage"})
    assert updated["finalAmount"] == 22.5

    updated = await lifecycle.update_order(order["id"], {"items": [{"productId": products["Samosa"], "quantity": 4}]})
    assert updated["totalAmount"] == 20
    assert updated["finalAmount"] == 18
    assert updated["discountType"] == "percentage"


async def test_update_customer_and_notes(make_order, lifecycle):
    order = await make_order()
    updated = await lifecycle.update_order(order["id"], {
        "customer": {"name": "Bilal", "whatsapp": "07700 900456", "address": "1 Park Row"},
        "notes": " no nuts ",
        "priority": "high",
    })
    assert updated["customer"]["name"] == "Bilal"
    assert updated["notes"] == "no nuts"
    assert updated["priority"] == "high"
    assert updated["finalAmount"] == order["finalAmount"]


@pytest.mark.parametrize("final", ("confirmed", "cancelled"))
async def test_finalized_orders_cannot_be_edited(make_order, lifecycle, final):
    order = await make_order()
    await lifecycle.change_status(order["id"], final)
    with pytest.raises(InvalidTransition):
        await lifecycle.update_order(order["id"], {"notes": "late change"})


async def test_update_status_goes_through_the_state_machine(make_order, lifecycle):
    order = await make_order()
    updated = await lifecycle.update_order(order["id"], {"status": "preparing"})
    assert updated["status"] == "preparing"


async def test_scenario_e_delete_missing(lifecycle):
    with pytest.raises(NotFound):
        await lifecycle.delete_order(str(ObjectId()))
    with pytest.raises(NotFound):
        await lifecycle.delete_order("not-an-id")


async def test_delete_is_hard(make_order, lifecycle, db):
    order = await make_order()
    await lifecycle.delete_order(order["id"])
    assert await get_document(db, "orders", order["id"]) is None


async def test_bill_delivery_records_sub_record(make_order, lifecycle, provider):
    order = await make_order()
    result = await lifecycle.trigger_bill_delivery(order["id"])

    assert result["sentTo"] == "+44 7700 900123"
    assert result["whatsappMessageId"] == "wamid-1"
    assert result["billImageUrl"].startswith("data:image/png;base64,")

    call = provider.sent[0]
    assert call["url"] == "http://whatsapp.test/message/media-base64/test-session"
    assert call["json"]["phoneNumber"] == "447700900123"
    assert call["json"]["filename"] == "bill-ORD-001.png"
    assert not call["json"]["mediaData"].startswith("data:")
    assert "£25.00" in call["json"]["caption"]

    stored = await lifecycle.get_order(order["id"])
    assert stored["delivery"]["sent"] is True
    assert stored["delivery"]["providerMessageId"] == "wamid-1"
    assert stored["status"] == "pending"


async def test_bill_delivery_twice_sends_twice(make_order, lifecycle):
    order = await make_order()
    first = await lifecycle.trigger_bill_delivery(order["id"])
    second = await lifecycle.trigger_bill_delivery(order["id"])
    assert first["whatsappMessageId"] != second["whatsappMessageId"]
    stored = await lifecycle.get_order(order["id"])
    assert stored["delivery"]["providerMessageId"] == second["whatsappMessageId"]


async def test_client_rendered_image_is_forwarded(make_order, lifecycle, provider):
    order = await make_order()
    await lifecycle.trigger_bill_delivery(order["id"], "data:image/jpeg;base64,QUJD")
    assert provider.sent[0]["json"]["mediaData"] == "QUJD"
    stored = await lifecycle.get_order(order["id"])
    assert stored["delivery"]["imageUrl"] == "data:image/jpeg;base64,QUJD"


async def test_scenario_d_no_active_session(make_order, lifecycle, provider):
    order = await make_order()
    provider.fail_with = (400, {"success": False, "error": "session_not_connected"})
    with pytest.raises(DeliveryError) as exc:
        await lifecycle.trigger_bill_delivery(order["id"])
    assert exc.value.detail == "session_not_connected"

    stored = await lifecycle.get_order(order["id"])
    assert "delivery" not in stored
    assert stored["status"] == order["status"]
    assert stored["finalAmount"] == order["finalAmount"]


async def test_unreachable_provider(make_order, lifecycle, provider):
    import requests

    order = await make_order()
    provider.raise_exc = requests.exceptions.ConnectionError("refused")
    with pytest.raises(UpstreamError):
        await lifecycle.trigger_bill_delivery(order["id"])
    assert "delivery" not in await lifecycle.get_order(order["id"])


async def test_render_failure_never_reaches_the_gateway(make_order, lifecycle, provider, monkeypatch):
    order = await make_order()

    def broken(_order):
        raise RenderError("layout engine exploded")

    monkeypatch.setattr(lifecycle.renderer, "render_png", broken)
    with pytest.raises(RenderError):
        await lifecycle.trigger_bill_delivery(order["id"])
    assert provider.sent == []
    assert "delivery" not in await lifecycle.get_order(order["id"])


async def test_delivery_for_missing_order(lifecycle):
    with pytest.raises(NotFound):
        await lifecycle.trigger_bill_delivery(str(ObjectId()))


async def test_background_send_swallows_failures(make_order, lifecycle, provider, caplog):
    order = await make_order()
    provider.fail_with = (503, {"error": "no active session"})
    await lifecycle.send_bill_later(order["id"])
    assert "bill was not sent" in caplog.text
    assert "delivery" not in await lifecycle.get_order(order["id"])


async def test_list_orders(make_order, lifecycle):
    await make_order()
    second = await make_order(priority="high")
    await lifecycle.change_status(second["id"], "cancelled")

    listing = await lifecycle.list_orders()
    assert listing["pagination"] == {"page": 1, "limit": 20, "total": 2, "pages": 1}
    assert listing["statusCounts"] == {"pending": 1, "preparing": 0, "ready": 0, "confirmed": 0, "cancelled": 1}

    assert [o["id"] for o in (await lifecycle.list_orders(status="cancelled"))["orders"]] == [second["id"]]
    assert (await lifecycle.list_orders(priority="high"))["pagination"]["total"] == 1
    assert (await lifecycle.list_orders(search="ayesha"))["pagination"]["total"] == 2
    assert (await lifecycle.list_orders(search="ORD-002"))["pagination"]["total"] == 1
    assert (await lifecycle.list_orders(created_by="someone-else"))["pagination"]["total"] == 0


async def test_order_stats(make_order, lifecycle):
    await make_order()
    await make_order(discount=5)
    stats = await lifecycle.order_stats("all")
    assert stats["stats"]["totalOrders"] == 2
    assert stats["stats"]["totalRevenue"] == 45
    assert stats["stats"]["averageOrderValue"] == 22.5
    with pytest.raises(ValidationError):
        await lifecycle.order_stats("decade")


async def stale_read(lifecycle, monkeypatch, order, final):
    # The order is finalized after the controller has already read it as open
    await update_document(lifecycle.db, "orders", order["id"], {"status": final})

    async def read_open(order_id):
        return dict(order)

    monkeypatch.setattr(lifecycle, "_require", read_open)


@pytest.mark.parametrize("final", ("confirmed", "cancelled"))
async def test_status_change_never_reopens_a_finalized_order(make_order, lifecycle, db, monkeypatch, final):
    order = await make_order()
    await stale_read(lifecycle, monkeypatch, order, final)
    with pytest.raises(InvalidTransition):
        await lifecycle.change_status(order["id"], "ready")
    assert (await get_document(db, "orders", order["id"]))["status"] == final


async def test_update_never_touches_a_finalized_order(make_order, lifecycle, db, monkeypatch):
    order = await make_order()
    await stale_read(lifecycle, monkeypatch, order, "cancelled")
    with pytest.raises(InvalidTransition):
        await lifecycle.update_order(order["id"], {"notes": "late change", "status": "preparing"})
    stored = await get_document(db, "orders", order["id"])
    assert stored["status"] == "cancelled"
    assert stored["notes"] == ""
