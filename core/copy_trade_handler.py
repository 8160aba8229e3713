"""
copy_trade_handler.py
=====================
Entry point for an explicit "copy this trade" request.  Validates the raw
payload, runs the fan-out and shapes the response.

A response with mixed per-follower outcomes is still ``ok``; callers must
read ``results`` to learn what happened to each follower.
"""
from __future__ import annotations

from typing import Any, Dict, Mapping

from models.copy_request import CopyRequest
from modules.fanout_engine import FanOutEngine
from utils.exceptions import DirectoryError, ValidationError
from utils.logger import setup_logger

logger = setup_logger(__name__)


async def handle_copy_request(payload: Mapping[str, Any], engine: FanOutEngine) -> Dict[str, Any]:
    """Return ``{"status": <http-like code>, "ok": bool, ...}`` for ``payload``."""
    try:
        request = CopyRequest.from_payload(payload)
        result = await engine.execute(request)
    except ValidationError as ve:
        logger.warning("Copy trade rejected: %s", ve)
        return {"status": 400, "ok": False, "message": str(ve), "missing": ve.missing}
    except DirectoryError as de:
        logger.error("Copy trade aborted: %s", de)
        return {"status": 503, "ok": False, "message": str(de)}

    return {
        "status": 200,
        "ok": True,
        "copyTradeId": result.copy_trade_id,
        "masterTradeId": result.master_trade_id,
        "message": result.message,
        "results": [r.to_dict() for r in result.records],
        "summary": result.summary(),
    }
