# modules/broker.py
"""
Broker gateway: the only place that knows broker URLs, payload shapes and
auth headers.  Every call goes through :class:`ResilientFetchClient`.

Credentials are looked up per call from the injected resolver using the
account's *own* reference: an order for a follower is always signed with that
follower's credential, never the master's.
"""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from models.follower import Follower
from models.trade import Side
from modules.credentials import Credential, CredentialResolver, mask_token
from modules.fetch_client import FetchResponse, ResilientFetchClient
from utils import signing
from utils.exceptions import CredentialError, NetworkError

DEFAULT_BASE_URL = "https://ant.aliceblueonline.com"

# Acceptance markers, checked in order.
SUCCESS_FLAGS = ("ok", "success", "result")
ORDER_ID_FIELDS = ("order_id", "orderId", "NOrdNo", "nestOrderNumber", "brokerOrderId")
REJECTION_FIELDS = ("error", "emsg", "message", "reason")


@dataclass(frozen=True)
class BrokerEndpoints:
    order_book_url: str = f"{DEFAULT_BASE_URL}/open-api/od/v1/orders/book"
    trades_url: str = f"{DEFAULT_BASE_URL}/open-api/od/v1/trades"
    order_url: str = f"{DEFAULT_BASE_URL}/open-api/od/v1/orders/placeorder"


@dataclass(frozen=True)
class FollowerOrder:
    trade_id: str
    symbol: str
    side: Side
    quantity: int
    price: float
    order_type: str = "REGULAR"
    product: str = "MIS"


@dataclass
class OrderAck:
    accepted: bool
    order_id: Optional[str] = None
    reason: Optional[str] = None
    raw: Any = field(default_factory=dict)


@dataclass
class TokenCheck:
    valid: bool
    message: str
    trade_count: int = 0


def client_order_id(trade_id: str, follower_id: str) -> str:
    """Deterministic per (trade, follower) so the broker can dedupe resubmits."""
    digest = hashlib.sha1(f"{trade_id}:{follower_id}".encode()).hexdigest()
    return f"CT{digest[:18]}"


def build_auth_headers(
    credential: Credential,
    method: str,
    url: str,
    body: Optional[str] = None,
) -> Dict[str, str]:
    """Headers for one request.  A bearer token takes precedence over keys."""
    headers = {"Content-Type": "application/json"}
    if credential.token:
        headers["Authorization"] = f"Bearer {credential.token}"
        return headers

    auth_method = (credential.auth_method or "headers").lower()
    if auth_method == "basic":
        headers["Authorization"] = "Basic " + signing.basic_token(
            credential.api_key, credential.api_secret
        )
    elif auth_method == "hmac":
        ts = signing.stamp()
        headers["x-api-key"] = credential.api_key
        headers["x-timestamp"] = ts
        headers["x-signature"] = signing.hmac_signature(
            credential.api_secret, ts, signing.request_path(url), body or ""
        )
    else:
        headers["x-api-key"] = credential.api_key
        headers["x-api-secret"] = credential.api_secret
    return headers


def interpret_order_response(data: Any) -> OrderAck:
    """Decide whether a placement response means the broker took the order."""
    payload = data[0] if isinstance(data, list) and data and isinstance(data[0], Mapping) else data
    if not isinstance(payload, Mapping):
        return OrderAck(accepted=False, reason="Failed to push order", raw=data)

    order_id = next(
        (str(payload[k]) for k in ORDER_ID_FIELDS if payload.get(k) not in (None, "")),
        None,
    )
    flagged = any(payload.get(k) is True for k in SUCCESS_FLAGS) or str(
        payload.get("stat", "")
    ).lower() == "ok"
    if order_id or flagged:
        return OrderAck(accepted=True, order_id=order_id, raw=data)

    reason = next(
        (str(payload[k]) for k in REJECTION_FIELDS if payload.get(k)),
        "Failed to push order",
    )
    return OrderAck(accepted=False, reason=reason, raw=data)


class BrokerGateway:
    def __init__(
        self,
        fetch_client: ResilientFetchClient,
        credentials: CredentialResolver,
        endpoints: Optional[BrokerEndpoints] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.fetch_client = fetch_client
        self.credentials = credentials
        self.endpoints = endpoints or BrokerEndpoints()
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    def _credential(self, ref: str) -> Credential:
        credential = self.credentials.resolve(ref) if ref else None
        if credential is None:
            raise CredentialError(f"No credential found for account {ref!r}")
        return credential

    async def _authed_get(self, account_ref: str, url: str) -> FetchResponse:
        credential = self._credential(account_ref)
        headers = build_auth_headers(credential, "GET", url)
        self.logger.debug("GET %s as %s (token %s)", url, account_ref, mask_token(credential.token))
        return await self.fetch_client.get(url, headers=headers)

    # ------------------------------------------------------------------ #
    async def fetch_trade_book(self, account_ref: str) -> Any:
        """Raw order-book payload for ``account_ref``."""
        response = await self._authed_get(account_ref, self.endpoints.order_book_url)
        return response.data

    async def fetch_trades(self, account_ref: str) -> Any:
        """Raw trades payload for ``account_ref``."""
        response = await self._authed_get(account_ref, self.endpoints.trades_url)
        return response.data

    async def place_order(self, follower: Follower, order: FollowerOrder) -> OrderAck:
        """POST one order to the follower's own account.

        Raises CredentialError (before any network call) or NetworkError.
        """
        credential = self._credential(follower.credential_ref)
        body = {
            "symbol": order.symbol,
            "transactionType": order.side.transaction_type,
            "quantity": int(order.quantity),
            "orderType": order.order_type.upper(),
            "product": order.product,
            "price": float(order.price),
            "clientOrderId": client_order_id(order.trade_id, follower.id),
        }
        url = self.endpoints.order_url
        headers = build_auth_headers(credential, "POST", url, json.dumps(body))
        response = await self.fetch_client.post(url, headers=headers, json=body)
        ack = interpret_order_response(response.data)
        self.logger.debug(
            "Order for follower %s (%s %s x%d): accepted=%s id=%s",
            follower.id, body["transactionType"], order.symbol, order.quantity,
            ack.accepted, ack.order_id,
        )
        return ack

    async def test_token(self, account_ref: str) -> TokenCheck:
        """Check that the stored token for ``account_ref`` is still accepted."""
        try:
            response = await self._authed_get(account_ref, self.endpoints.trades_url)
        except CredentialError:
            return TokenCheck(valid=False, message="No OAuth token found for this account")
        except NetworkError as exc:
            if exc.status in (401, 403):
                return TokenCheck(valid=False, message="Token is invalid or expired")
            if exc.status is None:
                return TokenCheck(valid=False, message=f"Failed to connect to broker API: {exc}")
            return TokenCheck(valid=False, message=f"API error: HTTP {exc.status} {exc.body}")

        data = response.data
        result = data.get("result") if isinstance(data, Mapping) else data
        count = len(result) if isinstance(result, list) else 0
        return TokenCheck(
            valid=True, message="Token is valid and connection successful", trade_count=count
        )
