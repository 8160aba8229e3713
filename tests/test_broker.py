import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from models.follower import Follower, FollowerStatus
from models.trade import Side
from modules.broker import (
    BrokerEndpoints,
    BrokerGateway,
    FollowerOrder,
    client_order_id,
    interpret_order_response,
)
from modules.credentials import (
    Credential,
    StaticCredentialResolver,
    TokenFileCredentialResolver,
    mask_token,
)
from modules.fetch_client import FetchResponse
from utils.exceptions import CredentialError, NetworkError

# ------------------------- Fixtures ------------------------- #

@pytest.fixture
def fetch_client():
    client = MagicMock()
    client.get = AsyncMock(return_value=FetchResponse(200, "{}", {"result": []}))
    client.post = AsyncMock(return_value=FetchResponse(200, "{}", {"order_id": "OID-1"}))
    return client


@pytest.fixture
def resolver():
    return StaticCredentialResolver({
        "master": "master-token",
        "cred-alice": Credential(token="alice-token"),
    })


@pytest.fixture
def gateway(fetch_client, resolver):
    return BrokerGateway(fetch_client, resolver, BrokerEndpoints(
        order_book_url="https://x.test/book",
        trades_url="https://x.test/trades",
        order_url="https://x.test/order",
    ))


@pytest.fixture
def alice():
    return Follower(
        id="f1", name="Alice", status=FollowerStatus.ACTIVE,
        credential_ref="cred-alice", copy_trading_enabled=True,
    )


@pytest.fixture
def order():
    return FollowerOrder(trade_id="T1", symbol="INFY-EQ", side=Side.SELL, quantity=5, price=1500.5)

# ------------------------- Tests ------------------------- #

@pytest.mark.parametrize(
    "data,accepted,order_id",
    [
        ({"order_id": "1"}, True, "1"),
        ({"NOrdNo": 240210}, True, "240210"),
        ([{"stat": "Ok", "nestOrderNumber": "99"}], True, "99"),
        ({"success": True}, True, None),
        ({"stat": "ok"}, True, None),
        ({"success": "yes"}, False, None),
        ({"emsg": "Insufficient margin"}, False, None),
        ({}, False, None),
        ("not json", False, None),
    ],
)
def test_interpret_order_response(data, accepted, order_id):
    ack = interpret_order_response(data)
    assert ack.accepted is accepted
    assert ack.order_id == order_id


def test_rejection_reason():
    assert interpret_order_response({"emsg": "Insufficient margin"}).reason == "Insufficient margin"
    assert interpret_order_response({}).reason == "Failed to push order"


def test_client_order_id_is_deterministic():
    assert client_order_id("T1", "f1") == client_order_id("T1", "f1")
    assert client_order_id("T1", "f1") != client_order_id("T1", "f2")
    assert client_order_id("T1", "f1").startswith("CT")
    assert len(client_order_id("T1", "f1")) == 20


@pytest.mark.asyncio
async def test_place_order_uses_follower_credential(gateway, fetch_client, alice, order):
    ack = await gateway.place_order(alice, order)

    assert ack.accepted
    assert ack.order_id == "OID-1"
    url = fetch_client.post.call_args.args[0]
    kwargs = fetch_client.post.call_args.kwargs
    assert url == "https://x.test/order"
    assert kwargs["headers"]["Authorization"] == "Bearer alice-token"
    assert kwargs["json"] == {
        "symbol": "INFY-EQ",
        "transactionType": "SELL",
        "quantity": 5,
        "orderType": "REGULAR",
        "product": "MIS",
        "price": 1500.5,
        "clientOrderId": client_order_id("T1", "f1"),
    }


@pytest.mark.asyncio
async def test_place_order_without_credential(gateway, fetch_client, order):
    stranger = Follower(id="f9", name="Nobody", status=FollowerStatus.ACTIVE, credential_ref="missing")
    with pytest.raises(CredentialError):
        await gateway.place_order(stranger, order)
    fetch_client.post.assert_not_called()


@pytest.mark.asyncio
async def test_place_order_propagates_network_error(gateway, fetch_client, alice, order):
    fetch_client.post.side_effect = NetworkError("HTTP 500", status=500, body="", url="u", attempts=3)
    with pytest.raises(NetworkError):
        await gateway.place_order(alice, order)


@pytest.mark.asyncio
async def test_fetch_trade_book_returns_payload(gateway, fetch_client):
    fetch_client.get.return_value = FetchResponse(200, "", {"orders": [{"NOrdNo": "1"}]})
    data = await gateway.fetch_trade_book("master")
    assert data == {"orders": [{"NOrdNo": "1"}]}
    assert fetch_client.get.call_args.args[0] == "https://x.test/book"
    assert fetch_client.get.call_args.kwargs["headers"]["Authorization"] == "Bearer master-token"


@pytest.mark.asyncio
async def test_token_valid(gateway, fetch_client):
    fetch_client.get.return_value = FetchResponse(200, "", {"result": [{}, {}]})
    check = await gateway.test_token("master")
    assert check.valid
    assert check.trade_count == 2


@pytest.mark.asyncio
async def test_token_missing(gateway):
    check = await gateway.test_token("ghost")
    assert not check.valid
    assert check.message == "No OAuth token found for this account"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,prefix",
    [
        (401, "Token is invalid or expired"),
        (403, "Token is invalid or expired"),
        (None, "Failed to connect to broker API"),
        (500, "API error: HTTP 500"),
    ],
)
async def test_token_failures(gateway, fetch_client, status, prefix):
    fetch_client.get.side_effect = NetworkError("boom", status=status, body="x", url="u", attempts=3)
    check = await gateway.test_token("master")
    assert not check.valid
    assert check.message.startswith(prefix)


def test_mask_token():
    assert mask_token(None) == ""
    assert mask_token("short") == "***"
    token = "a" * 10 + "SECRETSECRET" + "b" * 10
    assert mask_token(token) == "aaaaaaaaaa**...**bbbbbbbbbb"


def test_token_file_resolver_json(tmp_path):
    path = tmp_path / "tokens.json"
    path.write_text(json.dumps({"master": "m-tok", "cred-alice": "a-tok"}))
    resolver = TokenFileCredentialResolver(str(path), auth_method="hmac", api_key="k")

    cred = resolver.resolve("cred-alice")
    assert cred.token == "a-tok"
    assert cred.auth_method == "hmac"
    assert resolver.resolve("nobody") is None


def test_token_file_resolver_rereads_on_rotation(tmp_path):
    path = tmp_path / "tokens.json"
    path.write_text(json.dumps({"master": "old"}))
    resolver = TokenFileCredentialResolver(str(path))
    assert resolver.resolve("master").token == "old"

    path.write_text(json.dumps({"master": "new"}))
    assert resolver.resolve("master").token == "new"


def test_token_file_resolver_raw_token(tmp_path):
    path = tmp_path / "token.txt"
    path.write_text("raw-token-value\n")
    resolver = TokenFileCredentialResolver(str(path), master_account="2548613")
    assert resolver.resolve("2548613").token == "raw-token-value"


def test_token_file_resolver_missing_file(tmp_path):
    resolver = TokenFileCredentialResolver(str(tmp_path / "absent.json"))
    assert resolver.resolve("master") is None
    assert resolver.describe() == {}
