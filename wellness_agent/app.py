from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .business_hours import BusinessHoursOracle
from .catalog import ProductCatalog, load_catalog
from .config import Settings, load_settings
from .errors import AuthenticationError, ConcurrentUpdateError
from .escalation import EscalationRouter, NotificationChannel, build_channel
from .escalation_queue import EscalationQueue
from .gemini_client import GeminiClient
from .lexicon import load_lexicon
from .models import ChatRequest, ChatResponse, ResolveRequest
from .pipeline import ConversationPipeline, TextGenerator
from .prompt_loader import SYSTEM_PROMPT_FILE, load_prompt
from .relevance_scorer import RelevanceScorer
from .response_validator import ResponseValidator
from .session_store import ConversationStore
from .term_extractor import TermExtractor
from .utils import mask_contact_value

BASE_DIR = Path(__file__).resolve().parent

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("wellness").setLevel(log_level)
logger = logging.getLogger("wellness.app")

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)


@dataclass
class Services:
    """Everything the HTTP handlers need, built once per process."""
    settings: Settings
    catalog: ProductCatalog
    pipeline: ConversationPipeline
    queue: EscalationQueue
    oracle: BusinessHoursOracle
    channel: NotificationChannel


def build_services(
    settings: Settings,
    generator: Optional[TextGenerator] = None,
    channel: Optional[NotificationChannel] = None,
    oracle: Optional[BusinessHoursOracle] = None,
) -> Services:
    """Purpose: Load resources and wire the conversation pipeline.
    Inputs/Outputs: Inputs are Settings plus optional generator, channel and oracle
        overrides; output is a Services container.
    Side Effects / State: Reads the catalog, lexicon and prompt files; creates the data
        directory for conversation and escalation files.
    Dependencies: Every core module; GeminiClient when no generator is given.
    Failure Modes: Missing GEMINI_API_KEY raises ValueError when no generator is given;
        malformed resource files raise ValueError.
    If Removed: The app has no pipeline to serve.
    Testing Notes: Pass fakes for generator, channel and oracle with tmp_path data_dir.
    """
    # Read-only resources first, then stores, then the pipeline.
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    catalog = load_catalog(settings.catalog_path)
    lexicon = load_lexicon(settings.lexicon_path)
    prompt_template = load_prompt(settings.prompts_dir / SYSTEM_PROMPT_FILE)

    oracle = oracle or BusinessHoursOracle.from_settings(settings)
    channel = channel or build_channel(settings.admin_webhook_url, settings.notify_timeout_sec)
    queue = EscalationQueue(settings.data_dir / "escalations.json")
    store = ConversationStore(
        settings.data_dir / "conversations.json",
        ttl_sec=settings.conversation_ttl_sec,
        history_limit=settings.history_limit,
    )
    router = EscalationRouter(oracle, queue, channel, settings.admin_phone)
    pipeline = ConversationPipeline(
        catalog=catalog,
        extractor=TermExtractor(lexicon),
        scorer=RelevanceScorer(lexicon),
        validator=ResponseValidator(catalog),
        router=router,
        store=store,
        generator=generator or GeminiClient(settings),
        prompt_template=prompt_template,
        admin_phone=settings.admin_phone,
        recommendation_limit=settings.recommendation_limit,
        history_limit=settings.history_limit,
    )
    logger.info(
        "services_ready products=%s catalog_sha=%s model=%s",
        len(catalog.products),
        catalog.meta.sha256[:12] if catalog.meta else "-",
        settings.gemini_model,
    )
    return Services(settings=settings, catalog=catalog, pipeline=pipeline, queue=queue, oracle=oracle, channel=channel)


_services: Optional[Services] = None


def get_services() -> Services:
    # Built on first request so importing the module needs no API key.
    global _services
    if _services is None:
        _services = build_services(load_settings())
    return _services


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    if _services is not None:
        _services.pipeline.router.shutdown(wait=True)


app = FastAPI(title="Wellness Sales Assistant", lifespan=lifespan)


@app.exception_handler(AuthenticationError)
async def handle_auth_error(request: Request, exc: AuthenticationError) -> JSONResponse:
    # Operator problem: logged in full, hidden from the customer.
    logger.error("generation_auth_error path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Layanan sedang tidak tersedia"})


@app.exception_handler(ConcurrentUpdateError)
async def handle_concurrent_update(request: Request, exc: ConcurrentUpdateError) -> JSONResponse:
    logger.warning("conversation_conflict customer=%s", mask_contact_value(exc.customer_id))
    return JSONResponse(status_code=409, content={"detail": "Percakapan sedang diperbarui, coba lagi"})


@app.post("/api/chat", response_model=ChatResponse)
def chat(request: ChatRequest, services: Services = Depends(get_services)) -> ChatResponse:
    """Purpose: Handle one customer message and return the reply to send.
    Inputs/Outputs: Input is ChatRequest; output is ChatResponse with reply, state and the
        escalation flag.
    Side Effects / State: Updates the conversation store; may enqueue or notify an escalation.
    Dependencies: ConversationPipeline.handle_message.
    Failure Modes: Blank messages are rejected with 422 by the request model; auth errors
        from the generator become 503.
    If Removed: Core chat functionality is unavailable.
    Testing Notes: Override get_services with a fake generator and post a sample message.
    """
    # Run the pipeline; it owns locking and persistence.
    result = services.pipeline.handle_message(request.customer_id, request.message)
    return ChatResponse(reply=result.reply, state=result.state, escalated=result.escalated)


@app.delete("/api/conversations/{customer_id}")
def reset_conversation(customer_id: str, services: Services = Depends(get_services)) -> dict:
    """Start over: the next message begins at GREETING."""
    existed = services.pipeline.reset(customer_id)
    return {"customer_id": customer_id, "reset": existed}


@app.get("/api/escalations")
def list_escalations(status: Optional[str] = None, services: Services = Depends(get_services)) -> List[dict]:
    """Purpose: Return escalation entries for the admin team.
    Inputs/Outputs: Optional status filter (pending, sent, resolved); output is a list of
        entries with record, status, attempts and status history.
    Side Effects / State: None.
    Dependencies: EscalationQueue.list_entries.
    Failure Modes: Unknown status values return 400.
    If Removed: Humans cannot see what needs follow-up.
    Testing Notes: Escalate one turn off-hours and expect one pending entry.
    """
    # Validate the filter before touching the queue.
    if status is not None and status not in ("pending", "sent", "resolved"):
        raise HTTPException(status_code=400, detail="status must be pending, sent or resolved")
    return services.queue.list_entries(status)


@app.post("/api/escalations/{escalation_id}/resolve")
def resolve_escalation(
    escalation_id: str, request: ResolveRequest, services: Services = Depends(get_services)
) -> dict:
    if not services.queue.mark_resolved(escalation_id, request.notes):
        raise HTTPException(status_code=404, detail="escalation not found")
    return {"id": escalation_id, "status": "resolved"}


@app.post("/api/escalations/drain")
def drain_escalations(services: Services = Depends(get_services)) -> dict:
    """Deliver pending escalations now if the team is available."""
    report = services.queue.drain(services.channel, services.oracle)
    return {"delivered": report.delivered, "failed": report.failed, "skipped_closed": report.skipped_closed}


@app.get("/api/health")
def health(services: Services = Depends(get_services)) -> dict:
    status = services.oracle.is_business_hours()
    return {
        "status": "ok",
        "business_hours": {
            "is_open": status.is_open,
            "next_open_time": status.next_open_time,
            "current_time": status.current_time,
        },
        "escalations": services.queue.status_counts(),
    }
