from __future__ import annotations

import math
import os
from dataclasses import dataclass

from dotenv import load_dotenv

from .ticker import DEFAULT_WS_URL

WINDOW_UNITS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}


@dataclass(frozen=True)
class Config:
    feed_ws_url: str
    feed_product_ids: tuple[str, ...]
    feed_reconnect_delay_seconds: float
    ws_ping_interval_seconds: int
    chart_window: str
    chart_window_seconds: float
    chart_sample_interval_seconds: float
    chart_clock_interval_seconds: float
    chart_api_port: int


def parse_window_seconds(window: str) -> float:
    """Window length in seconds from "600", "90s", "10m", "1.5h" or "1d"."""
    value = window.strip().lower()
    if not value:
        raise ValueError("window must not be empty")

    suffix = value[-1]
    if suffix.isalpha() and suffix not in WINDOW_UNITS:
        raise ValueError(f"unsupported window unit: {suffix}")

    if suffix in WINDOW_UNITS:
        number_text, unit = value[:-1], suffix
    else:
        number_text, unit = value, "s"

    try:
        number = float(number_text)
    except ValueError:
        raise ValueError(f"invalid window: {window!r}") from None
    if not math.isfinite(number) or number <= 0:
        raise ValueError("window must be > 0")

    return number * WINDOW_UNITS[unit]


def _product_ids_from_env(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ("BTC-USD",)
    return tuple(part.strip().upper() for part in value.split(",") if part.strip())


def load_config() -> Config:
    load_dotenv()

    feed_ws_url = os.getenv("FEED_WS_URL", DEFAULT_WS_URL).strip()
    if not feed_ws_url.startswith(("ws://", "wss://")):
        raise ValueError("FEED_WS_URL must be a ws:// or wss:// URL")

    feed_product_ids = _product_ids_from_env(os.getenv("FEED_PRODUCT_IDS"))
    if not feed_product_ids:
        raise ValueError("FEED_PRODUCT_IDS must name at least one product")

    feed_reconnect_delay_seconds = float(os.getenv("FEED_RECONNECT_DELAY_SECONDS", "1.0"))
    if feed_reconnect_delay_seconds < 0:
        raise ValueError("FEED_RECONNECT_DELAY_SECONDS must be >= 0")

    chart_window = os.getenv("CHART_WINDOW", "10m").strip().lower()
    chart_sample_interval_seconds = float(os.getenv("CHART_SAMPLE_INTERVAL_SECONDS", "1.0"))
    if chart_sample_interval_seconds < 0:
        raise ValueError("CHART_SAMPLE_INTERVAL_SECONDS must be >= 0")

    chart_clock_interval_seconds = float(os.getenv("CHART_CLOCK_INTERVAL_SECONDS", "1.0"))
    if chart_clock_interval_seconds <= 0:
        raise ValueError("CHART_CLOCK_INTERVAL_SECONDS must be > 0")

    return Config(
        feed_ws_url=feed_ws_url,
        feed_product_ids=feed_product_ids,
        feed_reconnect_delay_seconds=feed_reconnect_delay_seconds,
        ws_ping_interval_seconds=int(os.getenv("WS_PING_INTERVAL_SECONDS", "15")),
        chart_window=chart_window,
        chart_window_seconds=parse_window_seconds(chart_window),
        chart_sample_interval_seconds=chart_sample_interval_seconds,
        chart_clock_interval_seconds=chart_clock_interval_seconds,
        chart_api_port=int(os.getenv("CHART_API_PORT", "8080")),
    )
