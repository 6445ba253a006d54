import fakeredis.aioredis
import pytest

from confshop.domain import CartOwner
from confshop.model.cart._redis import CartStore as RedisCartStore


@pytest.fixture
async def redis_carts():
    r = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield RedisCartStore(r, ttl_seconds=60)
    await r.aclose()


@pytest.fixture(params=["sql", "redis"])
async def carts(request, shop, redis_carts):
    # sql lines reference catalog rows
    for item_id in ("a", "b"):
        await shop.item(item_id)
    return shop.carts if request.param == "sql" else redis_carts


async def test_add_twice_keeps_one_line(carts):
    owner = CartOwner.for_session("tok")
    assert await carts.add(owner, "a") is True
    assert await carts.add(owner, "a") is False

    lines = await carts.lines(owner)
    assert [(line["item_id"], line["quantity"]) for line in lines] == [("a", 1)]


async def test_owners_are_isolated(carts):
    guest = CartOwner.for_session("tok")
    member = CartOwner.for_account("acct-1")
    await carts.add(guest, "a")
    await carts.add(member, "b")

    assert [line["item_id"] for line in await carts.lines(guest)] == ["a"]
    assert [line["item_id"] for line in await carts.lines(member)] == ["b"]


async def test_remove_and_clear(carts):
    owner = CartOwner.for_session("tok")
    await carts.add(owner, "a")
    await carts.add(owner, "b")

    assert await carts.remove(owner, "a") is True
    assert await carts.remove(owner, "a") is False
    assert await carts.clear(owner) == 1
    assert await carts.lines(owner) == []
    assert await carts.clear(owner) == 0


async def test_redis_cart_expires(redis_carts):
    owner = CartOwner.for_session("tok")
    await redis_carts.add(owner, "a")
    assert 0 < await redis_carts.r.ttl("cart:session:tok") <= 60


def test_cart_owner_needs_exactly_one_identity():
    with pytest.raises(ValueError):
        CartOwner()
    with pytest.raises(ValueError):
        CartOwner(session_token="t", account_id="a")


def test_cart_owner_key_round_trip():
    owner = CartOwner.for_account("acct-1")
    assert owner.key == "account:acct-1"
    assert CartOwner.parse(owner.key) == owner
    assert CartOwner.parse("session:tok").session_token == "tok"
    with pytest.raises(ValueError):
        CartOwner.parse("cookie:tok")
