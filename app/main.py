from __future__ import annotations

import logging
import socket
import sys
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from advisor.core.errors import (
    AdvisorError,
    MalformedRequest,
    PersistenceFailure,
    SessionNotFound,
)
from advisor.core.memory import SessionStore
from advisor.core.models import SystemInstruction, Turn
from advisor.core.prompt import INSURANCE_ADVISOR
from advisor.llm import GeminiClient, LLMClient
from advisor.orchestrator import ConversationOrchestrator
from config.settings import Settings, get_settings


LOG_FORMAT = "[%(asctime)s] %(levelname)s - %(message)s"
logger = logging.getLogger("advisor")

ERROR_MESSAGES = {
    "read_failure": "Could not read the session.",
    "write_failure": "Could not save the session.",
    "upstream_failure": "The assistant could not produce a reply. Please try again.",
    "persistence_failure": "The assistant replied, but the conversation could not be saved.",
    "internal_error": "Internal server error.",
}


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(None, alias="sessionId")
    contents: Optional[List[Turn]] = None


def _history_json(history: List[Turn]) -> List[Dict[str, Any]]:
    return [turn.model_dump(exclude_none=True) for turn in history]


def _error_body(code: str) -> Dict[str, str]:
    return {"message": ERROR_MESSAGES.get(code, ERROR_MESSAGES["internal_error"]), "error": code}


def get_orchestrator(request: Request) -> ConversationOrchestrator:
    return request.app.state.orchestrator


def get_system_instruction(request: Request) -> SystemInstruction:
    return request.app.state.system_instruction


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        where = ".".join(str(p) for p in errors[0].get("loc", ())) if errors else "body"
        logger.warning("Rejected malformed request on %s: %s", request.url.path, where)
        return JSONResponse(status_code=400, content={"message": f"Malformed request: invalid {where}"})

    @app.exception_handler(MalformedRequest)
    async def _malformed(request: Request, exc: MalformedRequest):
        logger.warning("Rejected malformed request on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"message": str(exc)})

    @app.exception_handler(SessionNotFound)
    async def _not_found(request: Request, exc: SessionNotFound):
        logger.warning("Unknown session on %s: %s", request.url.path, exc.session_id)
        return JSONResponse(status_code=404, content={"message": "Session not found."})

    @app.exception_handler(PersistenceFailure)
    async def _not_persisted(request: Request, exc: PersistenceFailure):
        logger.error("Reply not persisted: %s (cause: %r)", exc, exc.__cause__)
        body: Dict[str, Any] = _error_body(exc.code)
        body["aiResponse"] = exc.ai_response
        body["conversationHistory"] = _history_json(exc.conversation_history)
        return JSONResponse(status_code=500, content=body)

    @app.exception_handler(AdvisorError)
    async def _advisor_error(request: Request, exc: AdvisorError):
        logger.error("%s on %s: %s (cause: %r)", exc.code, request.url.path, exc, exc.__cause__)
        return JSONResponse(status_code=500, content=_error_body(exc.code))

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content=_error_body("internal_error"))


def create_app(
    settings: Settings,
    llm: Optional[LLMClient] = None,
    store: Optional[SessionStore] = None,
    system_instruction: SystemInstruction = INSURANCE_ADVISOR,
) -> FastAPI:
    app = FastAPI(title="Insurance Advisor Chat", version="1.0.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    store = store or SessionStore(settings.sessions_dir)
    llm = llm or GeminiClient(settings)
    app.state.settings = settings
    app.state.store = store
    app.state.orchestrator = ConversationOrchestrator(store, llm)
    app.state.system_instruction = system_instruction

    _register_error_handlers(app)

    @app.get("/test")
    async def test_endpoint():
        return {"message": "test successful from the advisor backend!"}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/session")
    async def get_session(
        response: Response,
        session_id: Optional[str] = Query(None, alias="sessionId"),
        orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
    ):
        if session_id:
            try:
                session = await orchestrator.load_session(session_id)
            except SessionNotFound:
                logger.warning("Session lookup miss: %s", session_id)
                return JSONResponse(status_code=400, content={"message": "Session not found."})
            logger.info(
                "Loaded session %s with %s turns", session_id, len(session.conversation_history)
            )
            return session.to_document()

        session = await orchestrator.create_session()
        logger.info("Created session %s", session.session_id)
        response.status_code = 201
        return session.to_document()

    @app.post("/chat")
    async def chat(
        req: ChatRequest,
        orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
        instruction: SystemInstruction = Depends(get_system_instruction),
    ) -> Dict[str, Any]:
        if not req.session_id:
            raise MalformedRequest("sessionId is required.")
        if not req.contents:
            raise MalformedRequest("contents must contain at least one turn.")

        new_turn = req.contents[-1]
        text = new_turn.first_text
        if new_turn.role != "user" or not isinstance(text, str) or not text.strip():
            raise MalformedRequest("The last turn must be a user turn with parts[0].text.")
        for index, turn in enumerate(req.contents[:-1]):
            if not turn.texts():
                raise MalformedRequest(f"contents[{index}] has no text.")

        logger.info(
            "Incoming chat: session=%s history_turns=%s", req.session_id, len(req.contents) - 1
        )
        result = await orchestrator.interact(
            req.session_id,
            req.contents[:-1],
            new_turn.parts,
            instruction,
        )
        logger.info(
            "Model responded for session %s: %s chars", req.session_id, len(result.ai_response)
        )
        return {
            "aiResponse": result.ai_response,
            "conversationHistory": _history_json(result.updated_conversation_history),
        }

    return app


def port_in_use(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        # Same option uvicorn sets, so TIME_WAIT leftovers don't count as taken.
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return True
    return False


def main() -> None:
    import uvicorn

    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    if not settings.google_api_key:
        logger.error("API_KEY not set. Please configure it in environment or .env")
        sys.exit(1)

    if port_in_use(settings.host, settings.port):
        logger.error(
            "PORT %s is already in use. Please choose a different port or stop other application.",
            settings.port,
        )
        sys.exit(1)

    app = create_app(settings)
    logger.info("Server is listening at http://localhost:%s.", settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
