"""FastAPI server exposing the conversation controller."""
from __future__ import annotations

import asyncio
from datetime import datetime

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response

from imagequery.config import get_config
from imagequery.controller import ConversationController
from imagequery.errors import ControllerBusy, InvalidOperation, NotFound, StoreFailure
from imagequery.export import FORMATS

app = FastAPI(title="ImageQuery")


def _controller(request: Request) -> ConversationController:
    return request.app.state.controller


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


@app.exception_handler(ControllerBusy)
async def _busy_handler(request: Request, exc: ControllerBusy):
    return _error(str(exc) or "busy", 409)


@app.exception_handler(InvalidOperation)
async def _invalid_handler(request: Request, exc: InvalidOperation):
    return _error(str(exc), 400)


@app.exception_handler(NotFound)
async def _not_found_handler(request: Request, exc: NotFound):
    return _error(str(exc) or "not found", 404)


@app.exception_handler(StoreFailure)
async def _store_handler(request: Request, exc: StoreFailure):
    return _error(str(exc), 503)


@app.on_event("startup")
async def _startup() -> None:
    if getattr(app.state, "controller", None) is None:
        app.state.controller = ConversationController.from_config(get_config())
    await app.state.controller.initialize()


@app.on_event("shutdown")
async def _shutdown() -> None:
    controller = getattr(app.state, "controller", None)
    if controller is not None:
        await controller.close()


@app.get("/health")
async def health():
    """Health check endpoint for monitoring."""
    return {"status": "healthy", "service": "imagequery"}


@app.get("/api/state")
async def state_api(request: Request):
    return _controller(request).state.to_dict()


@app.get("/api/models")
async def models_api(request: Request):
    controller = _controller(request)
    return {"selected": controller.model, "models": controller.engine.registry.list_models()}


@app.post("/api/models/select")
async def select_model_api(payload: dict, request: Request):
    _controller(request).set_model((payload.get("model") or "").strip() or "auto")
    return {"ok": True, "selected": _controller(request).model}


@app.get("/api/sessions")
async def sessions_api(request: Request):
    return {"sessions": [s.to_dict() for s in _controller(request).chat_sessions]}


@app.post("/api/sessions")
async def create_session_api(request: Request, payload: dict | None = None):
    title = ((payload or {}).get("title") or "").strip() or None
    session = await _controller(request).create_new_chat_session(title)
    return session.to_dict()


@app.post("/api/sessions/{session_id}/switch")
async def switch_session_api(session_id: str, request: Request):
    session = await _controller(request).switch_to_chat_session(session_id)
    return session.to_dict()


@app.patch("/api/sessions/{session_id}")
async def rename_session_api(session_id: str, payload: dict, request: Request):
    session = await _controller(request).rename_chat_session(session_id, payload.get("title") or "")
    return session.to_dict()


@app.delete("/api/sessions/{session_id}")
async def delete_session_api(session_id: str, request: Request):
    await _controller(request).delete_chat_session(session_id)
    return {"ok": True}


@app.post("/api/messages")
async def send_api(payload: dict, request: Request):
    text = payload.get("text") or ""
    images = payload.get("images") or []
    if not text.strip() and not images:
        return _error("text required", 400)
    controller = _controller(request)
    reply = await controller.send_message(
        text,
        images=images,
        prompt_template=payload.get("prompt_template"),
        model=payload.get("model"),
    )
    return {"ok": True, "reply": reply.to_dict() if reply else None, "error": controller.error}


@app.post("/api/messages/retry")
async def retry_api(request: Request):
    controller = _controller(request)
    reply = await controller.retry_last_message()
    return {"ok": True, "reply": reply.to_dict() if reply else None, "error": controller.error}


@app.post("/api/messages/{message_id}/edit")
async def edit_api(message_id: str, payload: dict, request: Request):
    controller = _controller(request)
    reply = await controller.edit_message(message_id, payload.get("text") or "")
    return {"ok": True, "reply": reply.to_dict() if reply else None, "error": controller.error}


@app.get("/api/search")
async def search_api(request: Request, q: str = "", limit: int = 100):
    hits = _controller(request).search_messages(q, limit=limit)
    return {"messages": [m.to_dict() for m in hits]}


@app.get("/api/export")
async def export_api(request: Request, format: str = "json"):
    content = _controller(request).export_chat_data(format)
    filename = f"imagequery_chat_export_{datetime.now().strftime('%Y%m%d-%H%M%S')}.{format}"
    return Response(
        content,
        media_type=FORMATS[format],
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/export/stats")
async def export_stats_api(request: Request):
    return _controller(request).export_statistics()


@app.websocket("/ws/state")
async def websocket_state(websocket: WebSocket):
    """Push a state snapshot on connect and after every change."""
    await websocket.accept()
    controller: ConversationController = websocket.app.state.controller

    async def _push() -> None:
        async for state in controller.stream.updates():
            await websocket.send_json({"type": "state", "state": state.to_dict()})

    pusher = asyncio.ensure_future(_push())
    try:
        # client messages are ignored; receiving is how a disconnect is noticed
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        pusher.cancel()
        await asyncio.gather(pusher, return_exceptions=True)
