"""
FastAPI server exposing the agent bridge.

This module builds the HTTP surface around a ``BridgeRuntime``: WebRTC signaling for
client legs, start/stop of the shared upstream session, prompt/pause/compact/reset for
each coding agent, the verbosity toggle, stored conversations, and a server-sent-events
feed multiplexing agent, transcript and connection events.

Malformed input is rejected with 400 at this boundary; everything behind it reports
outcomes through status discriminators rather than exceptions.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from agentbridge.agents.turn_controller import TurnController
from agentbridge.config.logging_config import configure_logging
from agentbridge.config.settings import Settings
from agentbridge.exceptions import AdmissionRefusedError, BridgeError, SignalingError
from agentbridge.runtime import BridgeRuntime

# Configure logging
logger = configure_logging()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def _read_body(request: Request) -> Dict[str, Any]:
    """
    Decode a JSON object from the request body.

    ``text/plain`` bodies holding JSON are accepted too (``navigator.sendBeacon`` sends
    them that way). An empty body decodes to an empty dict.
    """
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


def create_app(settings: Optional[Settings] = None, runtime: Optional[BridgeRuntime] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to build a runtime from (defaults to the environment)
        runtime: A prebuilt runtime; takes precedence over ``settings``

    Returns:
        FastAPI: The application, with the runtime on ``app.state.runtime``
    """
    if runtime is None:
        runtime = BridgeRuntime(settings or Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Agent bridge starting")
        yield
        await runtime.shutdown()
        logger.info("Agent bridge stopped")

    app = FastAPI(
        title="Agent Voice Bridge",
        description="Voice sessions over the OpenAI Realtime API with Codex and Claude Code as tools",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    def get_agent(agent: str) -> TurnController:
        controller = runtime.agent(agent)
        if controller is None:
            raise HTTPException(status_code=404, detail=f"Unknown agent: {agent}")
        return controller

    @app.get("/")
    async def root():
        """Basic information about the API."""
        return {
            "name": "Agent Voice Bridge",
            "version": "1.0.0",
            "agents": sorted(runtime.agents),
            "endpoints": {
                "/signal": "WebRTC offer/answer for a client leg",
                "/events": "Server-sent events feed",
                "/session/status": "Upstream session and client legs",
                "/healthz": "Health check endpoint",
            },
        }

    @app.get("/healthz")
    async def health_check():
        """Health check endpoint for monitoring system status."""
        return {
            "status": "ok",
            "openai_api_key_configured": bool(runtime.settings.openai_api_key),
            "active_connections": runtime.registry.connection_count(),
        }

    # Signaling

    @app.post("/signal")
    async def signal(request: Request):
        """Admit a client leg: ``{offer}`` in, ``{answer, connectionId}`` out."""
        body = await _read_body(request)
        offer = body.get("offer")
        if not isinstance(offer, str) or not offer.strip():
            logger.error("Invalid request: missing or invalid offer")
            raise HTTPException(status_code=400, detail="Missing offer")

        logger.info(f"Valid offer received, SDP length: {len(offer)}")
        try:
            admission = await runtime.registry.admit_offer(offer)
        except AdmissionRefusedError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except SignalingError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"answer": admission.answer, "connectionId": admission.connection_id}

    @app.post("/disconnect")
    async def disconnect(request: Request):
        """Drop one client leg. Accepts JSON or a text body carrying JSON."""
        body = await _read_body(request)
        connection_id = body.get("connectionId")
        if not isinstance(connection_id, str) or not connection_id:
            logger.error("Invalid request: missing or invalid connectionId")
            raise HTTPException(status_code=400, detail="Missing connectionId")
        result = await runtime.registry.drop_leg(connection_id)
        logger.info(f"Disconnect result: {result['status']}")
        return result

    @app.get("/session/status")
    async def session_status():
        return runtime.session_status()

    @app.post("/services/start")
    async def start_services():
        try:
            return await runtime.start_services()
        except BridgeError as e:
            logger.error(f"Error starting services: {e}")
            raise HTTPException(status_code=500, detail=f"Failed to start services: {e}")

    @app.post("/services/stop")
    async def stop_services():
        return await runtime.stop_services()

    # Inner thoughts visibility

    @app.get("/agents/inner-thoughts")
    async def get_inner_thoughts():
        return {"showInnerThoughts": runtime.verbosity.show_inner_thoughts}

    @app.post("/agents/inner-thoughts")
    async def set_inner_thoughts(request: Request):
        body = await _read_body(request)
        show = body.get("show")
        if not isinstance(show, bool):
            raise HTTPException(status_code=400, detail="show must be a boolean")
        return runtime.verbosity.set(show)

    # Agents

    @app.post("/{agent}/prompt")
    async def agent_prompt(agent: str, request: Request):
        controller = get_agent(agent)
        body = await _read_body(request)
        prompt = body.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            raise HTTPException(status_code=400, detail="Missing prompt")
        result = await controller.prompt(prompt)
        return result.model_dump()

    @app.post("/{agent}/pause")
    async def agent_pause(agent: str):
        return (await get_agent(agent).pause()).model_dump()

    @app.post("/{agent}/compact")
    async def agent_compact(agent: str):
        return (await get_agent(agent).compact()).model_dump()

    @app.post("/{agent}/reset")
    async def agent_reset(agent: str):
        return (await get_agent(agent).reset()).model_dump()

    @app.get("/{agent}/status")
    async def agent_status(agent: str):
        return get_agent(agent).status().model_dump()

    # Events

    @app.get("/events")
    @app.get("/codex/events")
    async def events():
        """Live feed of agent, transcript and connection events (no replay)."""
        return StreamingResponse(
            runtime.events.sse_records(),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    # Conversations

    @app.get("/conversations")
    async def list_conversations():
        conversations = await runtime.conversations.list_async()
        return {
            "conversations": [summary.model_dump() for summary in conversations],
            "currentId": runtime.conversations.current_id,
        }

    @app.post("/conversations")
    async def create_conversation():
        conversation = await asyncio.to_thread(runtime.conversations.create)
        return conversation.model_dump()

    @app.get("/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str):
        conversation = await asyncio.to_thread(runtime.conversations.load, conversation_id)
        if conversation is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return conversation.model_dump()

    @app.post("/conversations/{conversation_id}/select")
    async def select_conversation(conversation_id: str):
        conversation = await asyncio.to_thread(runtime.conversations.select, conversation_id)
        if conversation is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return {"status": "ok", "conversation": conversation.model_dump()}

    @app.delete("/conversations/{conversation_id}")
    async def delete_conversation(conversation_id: str):
        deleted = await asyncio.to_thread(runtime.conversations.delete, conversation_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return {"status": "ok"}

    return app


app = create_app()


def run() -> None:
    import uvicorn

    settings: Settings = app.state.runtime.settings
    logger.info(f"Starting server on http://{settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port, http="h11")


if __name__ == "__main__":
    run()
