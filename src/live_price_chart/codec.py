from __future__ import annotations

import json
import math
import time
from typing import Iterable

from .models import Tick

TICKER_CHANNEL = "ticker"
HEARTBEAT_CHANNEL = "heartbeat"


def _parse_price(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if not isinstance(value, (str, int, float)):
        return None

    try:
        price = float(value)
    except (TypeError, ValueError):
        return None

    if not math.isfinite(price):
        return None
    return price


def decode(raw: str | bytes, received_ts: float | None = None) -> Tick | None:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None

    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None

    if not isinstance(data, dict):
        return None

    if data.get("type") != TICKER_CHANNEL:
        return None

    price = _parse_price(data.get("price"))
    if price is None:
        return None

    symbol = data.get("product_id")
    return Tick(
        ts=received_ts if received_ts is not None else time.time(),
        price=price,
        symbol=str(symbol).strip() if symbol else "",
    )


def encode_subscribe(symbols: Iterable[str]) -> str:
    product_ids = sorted({s.strip() for s in symbols if s and s.strip()})
    if not product_ids:
        raise ValueError("at least one product id is required to subscribe")

    payload = {
        "type": "subscribe",
        "product_ids": product_ids,
        "channels": [
            HEARTBEAT_CHANNEL,
            {"name": TICKER_CHANNEL, "product_ids": product_ids},
        ],
    }
    return json.dumps(payload, separators=(",", ":"))
