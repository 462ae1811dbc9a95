import logging
from typing import Optional

import statsd
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from chatrelay.controller import ChatController
from chatrelay.errors import ClientInputError, StoreUnavailable
from chatrelay.llm import ChatModelClient
from chatrelay.models import ChatMessage, ChatSession
from chatrelay.ocr import OcrClient
from chatrelay.settings import Settings
from chatrelay.store import SessionStore, create_tables, make_engine

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _session_summary(chat_session: ChatSession) -> dict:
    return {
        "id": chat_session.id,
        "user_id": chat_session.user_id,
        "title": chat_session.title,
        "created_at": chat_session.created_at,
        "updated_at": chat_session.updated_at,
    }


def _message_out(record: ChatMessage) -> dict:
    return {
        "role": record.role,
        "content": record.content,
        "type": record.type,
        "created_at": record.created_at,
    }


def create_app(
    settings: Settings,
    store: Optional[SessionStore] = None,
    model: Optional[ChatModelClient] = None,
    ocr: Optional[OcrClient] = None,
    metrics: Optional[statsd.StatsClient] = None,
) -> FastAPI:
    if metrics is None:
        metrics = statsd.StatsClient(host=settings.graphite_host, port=settings.graphite_port, prefix=settings.metrics_prefix)

    if store is None:
        engine = make_engine(settings.database_url)
        if engine is None:
            logger.warning("DATABASE_URL is not set, sessions will not be saved")
        elif settings.create_tables:
            create_tables(engine)
        store = SessionStore(engine)

    if model is None:
        model = ChatModelClient(
            metrics=metrics,
            api_key=settings.openai_api_key,
            model=settings.model_name,
            base_url=settings.openai_base_url,
            idle_timeout=settings.model_idle_timeout,
        )
    if not model.available:
        logger.error("OPENAI_API_KEY is not set, chat replies are disabled")

    if ocr is None:
        ocr = OcrClient(
            metrics=metrics,
            api_key=settings.ocr_api_key,
            api_url=settings.ocr_api_url,
            language=settings.ocr_language,
            timeout=settings.ocr_timeout,
        )

    controller = ChatController(settings=settings, store=store, model=model, ocr=ocr, metrics=metrics)

    app = FastAPI()
    app.state.controller = controller
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ClientInputError)
    async def _client_input_error(req: Request, exc: ClientInputError):
        metrics.incr("chat.rejected")
        return JSONResponse(status_code=400, content={"success": False, "error": exc.message})

    @app.exception_handler(StoreUnavailable)
    async def _store_unavailable(req: Request, exc: StoreUnavailable):
        return JSONResponse(status_code=503, content={"success": False, "error": "Database is unavailable."})

    @app.get("/")
    def _health():
        return {"success": True}

    @app.post("/chat")
    async def _chat(req: Request):
        form = await req.form()

        upload = form.get("file")
        image = filename = media_type = None
        if isinstance(upload, UploadFile):
            image = await upload.read()
            filename = upload.filename
            media_type = upload.content_type

        turn = controller.validate(
            user_id=form.get("userId"),
            kind=form.get("type"),
            message=form.get("message"),
            session_id=form.get("sessionId"),
            image=image,
            filename=filename,
            media_type=media_type,
            mode=form.get("mode"),
        )

        return StreamingResponse(
            controller.handle(turn, is_disconnected=req.is_disconnected),
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
        )

    @app.post("/session")
    async def _create_session(req: Request):
        try:
            body = await req.json()
        except ValueError:
            raise ClientInputError("request body must be JSON")
        user_id = str(body.get("userId") or "").strip() if isinstance(body, dict) else ""
        if not user_id:
            raise ClientInputError("userId is required")
        chat_session = await run_in_threadpool(store.create_session, user_id)
        return _session_summary(chat_session)

    @app.get("/sessions/{user_id}")
    async def _list_sessions(user_id: str):
        sessions = await run_in_threadpool(store.get_sessions_for_user, user_id)
        return [_session_summary(chat_session) for chat_session in sessions]

    @app.get("/messages/{session_id}")
    async def _list_messages(session_id: int):
        records = await run_in_threadpool(store.get_messages, session_id)
        return [_message_out(record) for record in records]

    @app.delete("/session/{session_id}")
    async def _delete_session(session_id: int):
        await run_in_threadpool(store.delete_session, session_id)
        return {"success": True}

    return app
