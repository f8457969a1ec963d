import orjson
import pytest

from conftest import make_event
from ticketdesk.errors import BadRequest, NotFound
from ticketdesk.model import events
from ticketdesk.workflows import catalog, intake


def test_inventory_items_floor_and_skip_unlinked():
    bundles = [
        {"external_price_id": "p1", "bundle_quantity": 5},
        {"external_price_id": None, "bundle_quantity": 1},
        {"external_price_id": "p3", "bundle_quantity": 3},
    ]
    assert catalog.inventory_items(bundles, 100, 20) == [
        {"priceId": "p1", "availableQuantity": 16,
         "allowOutOfStockPurchases": False},
        {"priceId": "p3", "availableQuantity": 26,
         "allowOutOfStockPurchases": False},
    ]


async def test_create_event_validates(ds):
    with pytest.raises(BadRequest):
        await catalog.create_event(ds, {"title": "x", "date": "2026-01-01",
                                        "capacity": 0})
    with pytest.raises(BadRequest):
        await catalog.create_event(ds, {"date": "2026-01-01", "capacity": 5})

    event = await catalog.create_event(ds, {
        "title": "Gala", "date": "2026-01-01", "capacity": 50,
        "ticket_price": "12.5", "location_id": "loc-1",
    })
    assert event["tickets_sold"] == 0
    assert event["ticket_price"] == 12.5
    assert (await catalog.list_events(ds, "loc-1"))[0]["id"] == event["id"]
    assert await catalog.list_events(ds, "loc-other") == []


async def test_update_event_reports_changes(ds):
    event = await make_event(ds, capacity=10, tickets_sold=4)

    updated, changed = await catalog.update_event(
        ds, event["id"], {"title": "Renamed", "capacity": 12})
    assert updated["title"] == "Renamed"
    assert updated["capacity"] == 12
    assert changed == {"title", "capacity"}

    with pytest.raises(BadRequest):
        await catalog.update_event(ds, event["id"], {"capacity": 3})
    with pytest.raises(NotFound):
        await catalog.update_event(ds, "missing", {"title": "x"})


async def test_delete_event_refused_with_orders(ds):
    event = await make_event(ds)
    await intake.intake_order(ds, {
        "event_id": event["id"], "quantity": 1,
        "contact": {"name": "Ada", "email": "ada@example.com"},
    })
    with pytest.raises(BadRequest):
        await catalog.delete_event(ds, event["id"])

    empty = await make_event(ds, title="Empty")
    await catalog.delete_event(ds, empty["id"])
    with pytest.raises(NotFound):
        await catalog.get_event(ds, empty["id"])


async def test_create_bundle_without_product_stays_local(ds, commerce, upstream):
    event = await make_event(ds)
    out = await catalog.create_bundle(ds, commerce, event["id"], {
        "package_name": "Duo", "package_price": 40, "bundle_quantity": 2})
    assert out["bundle"]["external_price_id"] is None
    assert "warning" not in out
    assert upstream.requests == []


async def test_create_bundle_pushes_price(ds, commerce, upstream):
    event = await make_event(ds, capacity=100, tickets_sold=20,
                             location_id="loc-1", external_product_id="prod-1")
    upstream.reply("POST", "/products/prod-1/price", 201, {"_id": "price-9"})

    out = await catalog.create_bundle(ds, commerce, event["id"], {
        "package_name": "Five pack", "package_price": 100,
        "bundle_quantity": 5})

    assert out["bundle"]["external_price_id"] == "price-9"
    req = upstream.calls("POST", "/products/prod-1/price")[0]
    body = orjson.loads(req.content)
    assert body["availableQuantity"] == 16
    assert body["trackInventory"] is True
    assert body["allowOutOfStockPurchases"] is False
    assert req.headers["Authorization"] == "Bearer secret-key"
    async with ds.tx() as db:
        stored = await events.get_bundle(db, out["bundle"]["id"])
    assert stored["external_price_id"] == "price-9"


async def test_create_bundle_upstream_failure_is_a_warning(
        ds, commerce, upstream):
    event = await make_event(ds, location_id="loc-1",
                             external_product_id="prod-1")
    upstream.reply("POST", "/products/prod-1/price", 422, {"message": "bad"})

    out = await catalog.create_bundle(ds, commerce, event["id"], {
        "package_name": "Duo", "package_price": 40, "bundle_quantity": 2})

    assert "422" in out["warning"]
    assert len(await catalog.list_bundles(ds, event["id"])) == 1


async def test_create_bundle_missing_key_is_a_warning(ds, commerce, upstream):
    event = await make_event(ds, location_id="loc-nokey",
                             external_product_id="prod-1")
    out = await catalog.create_bundle(ds, commerce, event["id"], {
        "package_name": "Duo", "package_price": 40, "bundle_quantity": 2})
    assert "No API key" in out["warning"]
    assert upstream.requests == []


async def test_update_bundle_recomputes_availability(ds, commerce, upstream):
    event = await make_event(ds, capacity=100, tickets_sold=20,
                             location_id="loc-1", external_product_id="prod-1")
    async with ds.tx() as db:
        bundle = await events.insert_bundle(db, event["id"], "Five", 100, 5)
        await events.set_bundle_price(db, bundle["id"], "price-5")

    out = await catalog.update_bundle(ds, commerce, bundle["id"], {
        "package_name": "Five pack", "package_price": 90})

    assert out["available_quantity"] == 16
    assert out["bundle"]["package_name"] == "Five pack"
    req = upstream.calls("PUT", "/products/prod-1/price/price-5")[0]
    assert orjson.loads(req.content)["availableQuantity"] == 16


async def test_update_bundle_quantity_is_immutable(ds, commerce):
    event = await make_event(ds)
    async with ds.tx() as db:
        bundle = await events.insert_bundle(db, event["id"], "Five", 100, 5)

    with pytest.raises(BadRequest):
        await catalog.update_bundle(ds, commerce, bundle["id"], {
            "package_name": "Five", "package_price": 100,
            "bundle_quantity": 6})
    # same value is fine
    out = await catalog.update_bundle(ds, commerce, bundle["id"], {
        "package_name": "Five", "package_price": 80, "bundle_quantity": 5})
    assert out["bundle"]["package_price"] == 80


async def test_delete_bundle_is_local(ds, commerce, upstream):
    event = await make_event(ds)
    async with ds.tx() as db:
        bundle = await events.insert_bundle(db, event["id"], "Duo", 40, 2)
        await events.set_bundle_price(db, bundle["id"], "price-2")
    await catalog.delete_bundle(ds, bundle["id"])
    assert upstream.requests == []
    with pytest.raises(NotFound):
        await catalog.delete_bundle(ds, bundle["id"])


async def test_sync_product_create_links_event(ds, commerce, upstream):
    event = await make_event(ds, location_id="loc-1")
    upstream.reply("POST", "/products/", 201, {"product": {"_id": "prod-7"}})

    await catalog.sync_event_product(ds, commerce, event["id"])

    assert (await catalog.get_event(ds, event["id"]))[
        "external_product_id"] == "prod-7"
    body = orjson.loads(upstream.calls("POST", "/products/")[0].content)
    assert body["productType"] == "DIGITAL"
    assert body["locationId"] == "loc-1"


async def test_sync_product_update_uses_put(ds, commerce, upstream):
    event = await make_event(ds, location_id="loc-1",
                             external_product_id="prod-7")
    await catalog.sync_event_product(ds, commerce, event["id"])
    assert len(upstream.calls("PUT", "/products/prod-7")) == 1


async def test_sync_inventory_after_sales(ds, commerce, upstream):
    event = await make_event(ds, capacity=10, location_id="loc-1")
    async with ds.tx() as db:
        for name, qty, price_id in (("One", 1, "p1"), ("Four", 4, "p4")):
            b = await events.insert_bundle(db, event["id"], name, 10, qty)
            await events.set_bundle_price(db, b["id"], price_id)
        await events.add_tickets_sold(db, event["id"], 3)

    items = await catalog.sync_event_inventory(ds, commerce, event["id"])

    assert sorted((i["priceId"], i["availableQuantity"]) for i in items) == [
        ("p1", 7), ("p4", 1)]
    body = orjson.loads(upstream.calls("POST", "/products/inventory")[0].content)
    assert body["altId"] == "loc-1"
    assert body["altType"] == "location"


async def test_sync_inventory_quietly_swallows_upstream(ds, commerce, upstream):
    event = await make_event(ds, location_id="loc-1")
    async with ds.tx() as db:
        b = await events.insert_bundle(db, event["id"], "One", 10, 1)
        await events.set_bundle_price(db, b["id"], "p1")
    upstream.reply("POST", "/products/inventory", 500, "boom")

    await catalog.sync_inventory_quietly(ds, commerce, event["id"])
    assert len(upstream.calls("POST", "/products/inventory")) == 1


async def test_push_bundle_price_requires_fields(commerce):
    with pytest.raises(BadRequest):
        await catalog.push_bundle_price(commerce, {"ghlProductId": "p"})
    with pytest.raises(BadRequest):
        await catalog.push_inventory(commerce, {"locationId": "loc-1",
                                                "items": []})
