# main.py
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request

from transfer_orchestrator import __version__
from transfer_orchestrator.adk_adapter import GeminiAdapter
from transfer_orchestrator.clients import FlutterwaveClient, MonoClient
from transfer_orchestrator.config import ServiceConfig, load_and_validate_config
from transfer_orchestrator.db import OrchestratorDb
from transfer_orchestrator.middleware import (
    add_process_time_header, central_exception_handler, configure_logging, correlation_id_middleware, get_logger,
)
from transfer_orchestrator.schemas import HealthResponse, InboundMessage, MessageReply, MonoWebhook, WebhookAck
from transfer_orchestrator.services.accounts import AccountService
from transfer_orchestrator.services.bank_registry import BankRegistry
from transfer_orchestrator.services.confirmation import ConfirmationStateMachine
from transfer_orchestrator.services.executor import TransferExecutor
from transfer_orchestrator.services.flow import ConversationFlow
from transfer_orchestrator.services.mandates import MandateManager
from transfer_orchestrator.services.recipient_resolver import RecipientResolver

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 3600

# Global resources (initialized in lifespan)
CONFIG: ServiceConfig = None
db: OrchestratorDb = None
mono_client: MonoClient = None
flutterwave_client: FlutterwaveClient = None
bank_registry: BankRegistry = None
mandate_manager: MandateManager = None
account_service: AccountService = None
flow: ConversationFlow = None

# --- Application Lifecycle ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown"""
    global CONFIG, db, mono_client, flutterwave_client, bank_registry, mandate_manager, account_service, flow

    CONFIG = load_and_validate_config()
    configure_logging(CONFIG.log_level)
    logger.info("Starting transfer orchestrator...")
    logger.info(f"Configuration: {CONFIG.to_dict(mask_secrets=True)}")

    try:
        db = OrchestratorDb(CONFIG.database_url, logger)
        mono_client = MonoClient(CONFIG.mono_base_url, CONFIG.mono_secret_key, CONFIG.http_timeout_seconds)
        flutterwave_client = FlutterwaveClient(
            CONFIG.flutterwave_base_url, CONFIG.flutterwave_secret_key, CONFIG.http_timeout_seconds
        )
        bank_registry = BankRegistry(bank_source=mono_client, ttl_seconds=CONFIG.bank_registry_ttl_seconds)
        resolver = RecipientResolver(bank_registry, mono_client, flutterwave_client)
        mandate_manager = MandateManager(
            db, mono_client, default_address=CONFIG.default_customer_address, description=CONFIG.mandate_description
        )
        executor = TransferExecutor(db, resolver, mandate_manager, mono_client, bank_registry)
        confirmation = ConfirmationStateMachine(db, executor, window_seconds=CONFIG.confirmation_window_seconds)
        account_service = AccountService(
            db, mono_client, CONFIG.account_link_redirect_url, default_address=CONFIG.default_customer_address
        )
        flow = ConversationFlow(
            db,
            GeminiAdapter(CONFIG.gemini_api_key, CONFIG.gemini_model, timeout=CONFIG.http_timeout_seconds),
            confirmation,
            resolver,
            account_service,
            max_conversation_turns=CONFIG.max_conversation_turns,
            session_ttl_seconds=CONFIG.session_ttl_seconds,
        )

        db_health = db.health_check()
        if db_health["status"] != "healthy":
            raise RuntimeError(f"Database health check failed: {db_health}")

        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {str(e)}")
        raise

    cleanup_task = asyncio.create_task(periodic_cleanup())

    yield

    logger.info("Shutting down transfer orchestrator...")
    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass
    await mono_client.aclose()
    await flutterwave_client.aclose()
    logger.info("Transfer orchestrator shutdown complete")

async def periodic_cleanup():
    """Background task purging sessions idle past their TTL"""
    while True:
        try:
            await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
            deleted_count = db.cleanup_expired_sessions(CONFIG.session_ttl_seconds)
            if deleted_count > 0:
                logger.info(f"Cleaned up {deleted_count} expired sessions")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Error during periodic cleanup: {str(e)}")

# --- FastAPI App ---
app = FastAPI(
    title="Transfer Orchestrator",
    version=__version__,
    description="Conversational banking assistant with confirmed, mandate-backed transfers",
    lifespan=lifespan,
)

app.middleware("http")(central_exception_handler)
app.middleware("http")(add_process_time_header)
app.middleware("http")(correlation_id_middleware)

# --- API Endpoints ---
@app.post("/v1/messages", response_model=MessageReply)
async def handle_message(event: InboundMessage, request: Request):
    """One inbound chat message, one reply"""
    correlation_id = getattr(request.state, "correlation_id", None)
    reply = await flow.handle_message(event, correlation_id)
    return MessageReply(user_id=event.user_id, reply=reply.text, awaiting_confirmation=reply.awaiting_confirmation)

@app.post("/v1/webhooks/mono", response_model=WebhookAck)
async def mono_webhook(payload: MonoWebhook, request: Request,
                       mono_webhook_secret: Optional[str] = Header(None)):
    """Account-connected and mandate-approved notifications from the aggregation provider"""
    correlation_id = getattr(request.state, "correlation_id", None)
    log = get_logger(correlation_id)

    if CONFIG.mono_webhook_secret and mono_webhook_secret != CONFIG.mono_webhook_secret:
        log.warning("Rejected webhook with an invalid secret")
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    event = payload.event
    data = payload.data
    log.info(f"Webhook received: {event}")

    if event == "mono.events.account_connected":
        account = await account_service.link_from_webhook(data, correlation_id)
        if account is None:
            return WebhookAck(status="ignored", detail="account could not be linked")
        return WebhookAck(status="processed")

    if "mandate" in event:
        approved = data.get("status") in ("approved", "ready") or bool(data.get("approved")) or bool(data.get("ready_to_debit"))
        if not approved:
            return WebhookAck(status="ignored", detail=f"mandate status {data.get('status')}")
        account = mandate_manager.activate_from_webhook(data.get("reference"), data.get("id"), correlation_id)
        if account is None:
            return WebhookAck(status="ignored", detail="no account for mandate")
        return WebhookAck(status="processed")

    return WebhookAck(status="ignored", detail=f"unhandled event {event}")

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    dependencies = {"database": db.health_check()}
    dependencies["bank_registry"] = {"extended_banks_cached": len(bank_registry.extended_banks())}
    status = "healthy" if dependencies["database"]["status"] == "healthy" else "unhealthy"
    return HealthResponse(
        status=status,
        service="transfer-orchestrator",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=__version__,
        dependencies=dependencies,
    )

@app.post("/admin/bank-registry/reset")
async def reset_bank_registry():
    """Drop the cached extended bank list"""
    bank_registry.reset()
    return {"status": "success", "message": "Bank registry cache cleared"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8080)
