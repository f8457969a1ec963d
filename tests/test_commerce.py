import httpx
import orjson
import pytest

from ticketdesk.commerce import ContactConfirmer, LeadConnector, upstream_id
from ticketdesk.errors import NoApiKey, UpstreamError


async def test_headers_and_version(commerce, upstream):
    upstream.reply("POST", "/products/", 201, {"_id": "prod-1"})

    data = await commerce.create_product("loc-1", "Gala", "")

    assert upstream_id(data) == "prod-1"
    req = upstream.requests[0]
    assert req.headers["Authorization"] == "Bearer secret-key"
    assert req.headers["Version"] == "2021-07-28"
    assert req.headers["Accept"] == "application/json"
    assert str(req.url) == "https://commerce.test/products/"


async def test_missing_key_raises_before_calling(commerce, upstream):
    with pytest.raises(NoApiKey) as exc:
        await commerce.sync_inventory("loc-unknown", [])
    assert exc.value.location_id == "loc-unknown"
    with pytest.raises(NoApiKey):
        await commerce.get_order("", "order-1")
    assert upstream.requests == []


async def test_non_2xx_raises_upstream_error(commerce, upstream):
    upstream.reply("PUT", "/products/p/price/q", 404, {"message": "gone"})

    with pytest.raises(UpstreamError) as exc:
        await commerce.update_price("loc-1", "p", "q", name="x", amount=1,
                                    currency="USD")
    assert exc.value.status == 404
    assert "gone" in exc.value.body
    assert exc.value.status_code == 502


async def test_update_price_without_quantity_leaves_inventory_alone(
        commerce, upstream):
    await commerce.update_price("loc-1", "p", "q", name="x", amount=5,
                                currency="")
    body = orjson.loads(upstream.requests[0].content)
    assert body["currency"] == "USD"
    assert "availableQuantity" not in body


async def test_text_body_is_returned_as_is(commerce, upstream):
    upstream.reply("POST", "/products/inventory", 200, "ok")
    assert await commerce.sync_inventory("loc-1", [{"priceId": "p"}]) == "ok"


def test_upstream_id_shapes():
    assert upstream_id({"product": {"_id": "a"}}, "product") == "a"
    assert upstream_id({"id": "b"}, "product") == "b"
    assert upstream_id("nope") is None


async def test_confirmer_posts_all_fields(upstream):
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(upstream)
    ) as http:
        cc = ContactConfirmer(http, url="https://confirm.test/hook/")
        resp = await cc.confirm(email="a@example.com", first_name="Ada")

    assert resp.status_code == 200
    body = orjson.loads(upstream.requests[0].content)
    assert body == {
        "email": "a@example.com", "first_name": "Ada", "last_name": "",
        "phone": "", "event_name": "", "location_id": "",
    }


async def test_confirm_quietly_never_raises():
    def boom(request):
        raise httpx.ConnectError("down", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(boom)) as http:
        cc = ContactConfirmer(http, url="https://confirm.test/hook/")
        assert await cc.confirm_quietly(email="a@example.com") is False


async def test_confirm_quietly_reports_non_2xx(upstream):
    upstream.reply("POST", "/hook/", 503, {"error": "busy"})
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(upstream)
    ) as http:
        cc = ContactConfirmer(http, url="https://confirm.test/hook/")
        assert await cc.confirm_quietly(email="a@example.com") is False


async def test_adapter_is_stateless_per_call(upstream):
    keys = {"loc-1": "k1", "loc-2": "k2"}

    async def resolve(location_id):
        return keys.get(location_id)

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(upstream)
    ) as http:
        lc = LeadConnector(http, resolve, base_url="https://commerce.test/")
        await lc.get_order("loc-1", "o1")
        await lc.get_order("loc-2", "o2")

    assert [r.headers["Authorization"] for r in upstream.requests] == [
        "Bearer k1", "Bearer k2"]
