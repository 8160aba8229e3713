from __future__ import annotations

from typing import Any, List, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from models.trade import Side
from utils.exceptions import ValidationError

ALL_FOLLOWERS = "all"
_SIDE_CODES = {"B", "BUY", "S", "SELL", "SHORT"}


class CopyRequest(BaseModel):
    """Inbound fan-out trigger.

    Every trade field is optional at parse time so that a missing value is
    reported through :meth:`check_preconditions` (one error listing all
    missing fields) instead of a pydantic error per field.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    trade_id: Optional[str] = Field(None, validation_alias=AliasChoices("trade_id", "tradeId"))
    master_id: str = Field("master_account", validation_alias=AliasChoices("master_id", "masterId"))
    symbol: Optional[str] = None
    side: Optional[str] = None
    master_qty: Optional[float] = Field(None, validation_alias=AliasChoices("master_qty", "masterQty"))
    price: Optional[float] = None
    product_type: str = Field("MIS", validation_alias=AliasChoices("product_type", "productType"))
    order_type: str = Field("REGULAR", validation_alias=AliasChoices("order_type", "orderType"))

    # follower selector: single id, explicit list, or "all"
    follower_id: Optional[str] = Field(None, validation_alias=AliasChoices("follower_id", "followerId"))
    listener_followers: Optional[List[str]] = Field(
        None, validation_alias=AliasChoices("listener_followers", "listenerFollowers")
    )
    followers: Union[str, List[str], None] = None

    @field_validator("trade_id", "follower_id", mode="before")
    @classmethod
    def _stringify_id(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @field_validator("listener_followers", "followers", mode="before")
    @classmethod
    def _stringify_ids(cls, v: Any) -> Any:
        if isinstance(v, (list, tuple)):
            return [str(item) for item in v]
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("symbol", "side", "trade_id")
    @classmethod
    def _strip(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        return v or None

    # ------------------------------------------------------------------ #
    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CopyRequest":
        """Parse a raw trigger payload, mapping pydantic failures to ValidationError."""
        if not isinstance(payload, Mapping):
            raise ValidationError("Copy trade payload must be an object")
        try:
            return cls.model_validate(dict(payload))
        except PydanticValidationError as exc:
            fields = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
            raise ValidationError(f"Invalid copy trade payload: {exc}", missing=fields) from exc

    def check_preconditions(self) -> None:
        """Raise ValidationError unless every field a fan-out needs is present."""
        missing = [
            name
            for name, value in (
                ("symbol", self.symbol),
                ("side", self.side),
                ("masterQty", self.master_qty),
                ("price", self.price),
            )
            if not value or (isinstance(value, float) and value <= 0)
        ]
        if missing:
            raise ValidationError(
                "Missing required trade fields: " + ", ".join(missing), missing=missing
            )
        if self.side.upper() not in _SIDE_CODES:
            raise ValidationError(f"Unrecognised side: {self.side!r}", missing=["side"])
        if not self.trade_id:
            raise ValidationError(
                "Missing tradeId - required to prevent duplicate copies", missing=["tradeId"]
            )

    @property
    def canonical_side(self) -> Side:
        return Side.parse(self.side)

    def target_follower_ids(self) -> Optional[List[str]]:
        """Explicit follower ids in request order, or None for all eligible followers."""
        if self.follower_id:
            return [self.follower_id]
        if self.listener_followers is not None:
            return list(self.listener_followers)
        if isinstance(self.followers, list):
            return [str(f) for f in self.followers]
        if isinstance(self.followers, str) and self.followers.strip().lower() != ALL_FOLLOWERS:
            return [self.followers.strip()]
        return None
