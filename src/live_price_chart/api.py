from __future__ import annotations

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from .models import Tick
from .runtime import ChartRuntime, get_runtime
from .state import chart_state

app = FastAPI(title="Live Price Chart API", version="0.1.0")


class LifecycleRequest(BaseModel):
    foreground: bool


def _require_runtime() -> ChartRuntime:
    runtime = get_runtime()
    if runtime is None:
        raise HTTPException(status_code=503, detail="chart runtime not started")
    return runtime


def _tick_to_dict(tick: Tick) -> dict:
    return {
        "id": tick.id,
        "ts": tick.ts,
        "price": tick.price,
        "symbol": tick.symbol,
    }


@app.get("/healthz")
async def healthz() -> dict:
    return {"ok": True}


@app.get("/status")
async def status() -> dict:
    return chart_state.snapshot()


@app.get("/series")
async def series(since_version: int | None = Query(default=None, ge=0)) -> dict:
    snapshot = _require_runtime().aggregator.snapshot()
    changed = since_version is None or snapshot.version != since_version
    return {
        "version": snapshot.version,
        "now": snapshot.now,
        "changed": changed,
        "items": [_tick_to_dict(t) for t in snapshot.series] if changed else [],
    }


@app.get("/bounds")
async def bounds() -> dict:
    current = _require_runtime().aggregator.current_bounds()
    return {
        "value_range": list(current.value_range),
        "time_range": list(current.time_range),
    }


@app.post("/admin/pause")
async def pause_feed() -> dict:
    connection = _require_runtime().connection
    await connection.pause()
    chart_state.add_event("info", "feed_paused", {})
    return {"ok": True, "connection_state": connection.state.value}


@app.post("/admin/resume")
async def resume_feed() -> dict:
    connection = _require_runtime().connection
    connection.resume()
    chart_state.add_event("info", "feed_resumed", {})
    return {"ok": True, "connection_state": connection.state.value}


@app.post("/admin/lifecycle")
async def lifecycle(payload: LifecycleRequest) -> dict:
    if payload.foreground:
        return await resume_feed()
    return await pause_feed()


@app.post("/admin/reset")
async def reset_series() -> dict:
    snapshot = _require_runtime().aggregator.reset()
    chart_state.add_event("info", "series_reset", {"version": snapshot.version})
    return {"ok": True, "version": snapshot.version}
