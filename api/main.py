"""
FastAPI Application: WhatsApp webhook + conversation read model.

Provides:
- Webhook endpoints for the WhatsApp Cloud API (verify + inbound events)
- Conversation read model for the admin panel
- Resume / close actions for human agents
- Health check
"""
from __future__ import annotations

import json
import structlog
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

from channels.whatsapp_adapter import WhatsAppCloudTransport
from config.settings import get_settings
from core.orchestrator import ConversationEngine
from core.session import BotSession
from database.session import close_db, init_db
from database.store_factory import create_store
from utils.logging import setup_logging
from utils.text import normalize_phone

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

settings = get_settings()
setup_logging(settings)

store = create_store(settings.database)
transport = WhatsAppCloudTransport(settings.whatsapp)
session = BotSession(store, transport, settings)
engine = ConversationEngine(session)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.database.store_backend == "sql":
        await init_db()
    logger.info("flowbot_started",
                store=settings.database.store_backend,
                phone_number_id=settings.whatsapp.phone_number_id)
    yield

    await session.shutdown()
    if settings.database.store_backend == "sql":
        await close_db()
    logger.info("flowbot_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="FlowBot API",
    description="WhatsApp conversation flow engine",
    version="1.0.0",
    lifespan=lifespan,
)


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "store": type(engine.store).__name__,
        "transport": await engine.transport.health_check(),
        "phones_in_flight": len(engine.session.locks),
    }


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS: WhatsApp
# ══════════════════════════════════════════════════════════════

@app.get("/webhook")
async def whatsapp_verify(request: Request):
    challenge = transport.verify_webhook(dict(request.query_params))
    if challenge is None:
        logger.warning("whatsapp_webhook_verify_failed")
        raise HTTPException(403, "Verification failed")
    return PlainTextResponse(challenge)


@app.post("/webhook")
async def whatsapp_webhook(request: Request, background: BackgroundTasks):
    """Accept a webhook delivery and process its events after responding."""
    body_bytes = await request.body()

    signature = request.headers.get("X-Hub-Signature-256", "")
    if not transport.verify_signature(body_bytes, signature):
        logger.warning("whatsapp_webhook_signature_invalid")
        raise HTTPException(403, "Invalid signature")

    try:
        body = json.loads(body_bytes or b"{}")
    except json.JSONDecodeError:
        raise HTTPException(400, "Invalid JSON")

    events = transport.parse_webhook(body)
    for event in events:
        background.add_task(engine.handle_event, event)
    return {"status": "accepted", "events": len(events)}


# ══════════════════════════════════════════════════════════════
#  CONVERSATIONS
# ══════════════════════════════════════════════════════════════

@app.get("/conversations/{phone}")
async def get_conversation(phone: str):
    view = await engine.get_conversation_view(normalize_phone(phone))
    if view is None:
        raise HTTPException(404, "Conversation not found")
    return view


@app.post("/conversations/{phone}/resume")
async def resume_conversation(phone: str):
    resumed = await engine.resume_conversation(normalize_phone(phone))
    if resumed is None:
        raise HTTPException(409, "No paused conversation for this phone")
    return {"status": "resumed", "conversation_id": resumed.id, "step_id": resumed.current_step_id}


@app.post("/conversations/{phone}/close")
async def close_conversation(phone: str):
    closed = await engine.close_conversation(normalize_phone(phone))
    if closed is None:
        raise HTTPException(404, "No open conversation for this phone")
    return {"status": "closed", "conversation_id": closed.id}


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
