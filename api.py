import asyncio
import contextlib
import json
from dataclasses import asdict
from typing import Literal

import structlog
from fastapi import FastAPI, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import DB_URL, TICK_INTERVAL_MS, WS_ORIGIN, configure_logging
from export import NOTHING_TO_EXPORT, export_csv
from monitor import MonitorState, TickOrchestrator, snapshot
from risk_engine import RuleBook
from storage import init_db, load_rules, load_theme, save_rules, save_theme

log = structlog.get_logger(__name__)

NOTHING_TO_UNDO = "Nothing to undo."


class RuleUpdate(BaseModel):
    value: float = Field(allow_inf_nan=False)


class ThemeUpdate(BaseModel):
    theme: Literal["light", "dark"]


def _patient_or_404(monitor: MonitorState, patient_id: str):
    if patient_id not in monitor.patients:
        raise HTTPException(status_code=404, detail=f"Unknown patient_id {patient_id!r}")
    return monitor.patient(patient_id)


def create_app(db_url: str = DB_URL, interval_ms: int = TICK_INTERVAL_MS) -> FastAPI:
    configure_logging()
    app = FastAPI(title="VitalStream API", version="1.0.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[WS_ORIGIN],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        # rejected inputs may be NaN/inf, which JSON cannot carry back
        detail = [{"loc": e["loc"], "msg": e["msg"], "type": e["type"]} for e in exc.errors()]
        return JSONResponse(status_code=422, content={"detail": detail})

    @app.on_event("startup")
    def startup():
        Session = init_db(db_url)
        monitor = MonitorState(rules=RuleBook(load_rules(Session)))
        app.state.Session = Session
        app.state.monitor = monitor
        app.state.ticker = TickOrchestrator(monitor, interval_ms=interval_ms)
        app.state.ticker_task = None

    @app.on_event("shutdown")
    async def shutdown():
        app.state.ticker.stop()
        task = app.state.ticker_task
        if task is not None:
            task.cancel()

    def state(request: Request):
        return request.app.state

    @app.get("/patients")
    async def get_patients(request: Request):
        monitor = state(request).monitor
        return [{"id": p.id, "label": p.label, "baseline": asdict(p.baseline)} for p in monitor.patients.values()]

    @app.get("/state")
    async def get_state(request: Request, patient_id: str = Query(...)):
        s = state(request)
        _patient_or_404(s.monitor, patient_id)
        return {"status": s.ticker.status.value, **snapshot(s.monitor, patient_id)}

    @app.post("/start")
    async def start(request: Request):
        s = state(request)
        started = s.ticker.start()
        if started:
            s.ticker_task = asyncio.create_task(s.ticker.run())
        return {"status": s.ticker.status.value, "changed": started}

    @app.post("/stop")
    async def stop(request: Request):
        s = state(request)
        stopped = s.ticker.stop()
        if stopped and s.ticker_task is not None:
            s.ticker_task.cancel()
            s.ticker_task = None
        return {"status": s.ticker.status.value, "changed": stopped}

    @app.post("/patients/{patient_id}/event")
    async def inject(request: Request, patient_id: str):
        monitor = state(request).monitor
        _patient_or_404(monitor, patient_id)
        until = monitor.inject_event(patient_id)
        return {"patient_id": patient_id, "event_active_until": until}

    @app.get("/rules")
    async def get_rules(request: Request):
        book = state(request).monitor.rules
        return {"rules": book.active.to_mapping(), "can_undo": book.can_undo}

    @app.put("/rules/{name}")
    async def put_rule(request: Request, name: str, body: RuleUpdate):
        book = state(request).monitor.rules
        try:
            book.set_threshold(name, body.value)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown threshold {name!r}")
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        return {"rules": book.active.to_mapping(), "can_undo": book.can_undo}

    @app.post("/rules/undo")
    async def undo_rule(request: Request):
        book = state(request).monitor.rules
        undone = book.undo()
        return {
            "undone": undone,
            "notice": None if undone else NOTHING_TO_UNDO,
            "rules": book.active.to_mapping(),
            "can_undo": book.can_undo,
        }

    @app.post("/rules/save")
    async def persist_rules(request: Request):
        s = state(request)
        save_rules(s.Session, s.monitor.rules.active)
        return {"saved": True, "rules": s.monitor.rules.active.to_mapping()}

    @app.get("/theme")
    async def get_theme(request: Request):
        return {"theme": load_theme(state(request).Session)}

    @app.put("/theme")
    async def put_theme(request: Request, body: ThemeUpdate):
        return {"theme": save_theme(state(request).Session, body.theme)}

    @app.get("/export.csv")
    async def export(request: Request):
        result = export_csv(state(request).monitor.run_log)
        if result is None:
            return Response(status_code=204, headers={"X-Notice": NOTHING_TO_EXPORT})
        return Response(
            content=result.content,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
        )

    @app.websocket("/ws")
    async def ws_endpoint(ws: WebSocket, patient_id: str):
        await ws.accept()
        s = ws.app.state
        if patient_id not in s.monitor.patients:
            await ws.send_text(json.dumps({"error": "Unknown patient_id"}))
            await ws.close()
            return

        selected = {"patient_id": patient_id}
        queue: asyncio.Queue = asyncio.Queue(maxsize=16)

        def on_tick(monitor: MonitorState):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(snapshot(monitor, selected["patient_id"]))

        async def sender():
            try:
                while True:
                    payload = await queue.get()
                    await ws.send_text(json.dumps({"status": s.ticker.status.value, **payload}))
            except Exception:
                log.exception("ws_send_failed", patient_id=selected["patient_id"])

        s.ticker.subscribe(on_tick)
        await ws.send_text(json.dumps({"status": s.ticker.status.value, **snapshot(s.monitor, patient_id)}))
        task = asyncio.create_task(sender())
        try:
            # client messages select another patient
            while True:
                msg = await ws.receive_text()
                if msg in s.monitor.patients:
                    selected["patient_id"] = msg
                    on_tick(s.monitor)
        except WebSocketDisconnect:
            pass
        finally:
            s.ticker.unsubscribe(on_tick)
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            log.info("ws_closed", patient_id=selected["patient_id"])

    return app


app = create_app()
