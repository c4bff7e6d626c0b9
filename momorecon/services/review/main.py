"""Admin HTTP surface: manual review queue, parser prompts, payment actions, audit.

Every route resolves the caller through the external admin session gate and
requires one permission from the returned capability set.
"""

from typing import Literal

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from momorecon.common.auth import (
    AUDIT_VIEW,
    PAYMENTS_REVERSE,
    SMS_ATTACH,
    SMS_PARSER_UPDATE,
    AdminPrincipal,
    require_permission,
)
from momorecon.common.circuit_breaker import CircuitBreakerRegistry
from momorecon.common.config import settings
from momorecon.common.db import SessionLocal
from momorecon.common.errors import ReconciliationError, http_status_for
from momorecon.common.logging import configure_logging, logger
from momorecon.common.metrics import metrics_response
from momorecon.common.realtime import RealtimeNotifier
from momorecon.common.startup import log_startup_config
from momorecon.common.tracing import instrument_app, setup_tracing
from momorecon.services.audit.service import AuditLog
from momorecon.services.reconciler.matcher import Matcher, MatchPolicy
from momorecon.services.reconciler.parser import SmsParser
from momorecon.services.reconciler.prompts import ParserPromptService
from momorecon.services.reconciler.service import ReconciliationPipeline
from momorecon.services.review.schemas import (
    AttachRequest,
    AuditEntryResponse,
    DismissRequest,
    ParsedSmsResponse,
    ParserTestRequest,
    ParserTestResponse,
    PaymentActionRequest,
    PaymentResponse,
    PromptCreateRequest,
    PromptResponse,
    RawSmsResponse,
    RematchResponse,
    ResolutionResponse,
    ReviewItemResponse,
)
from momorecon.services.review.service import ManualReviewService
from momorecon.services.settlement.service import SettlementStateMachine

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    ["postgres_dsn", "redis_url", "admin_session_url", "classifier_url", "manual_review_max_limit"],
)
audit = AuditLog()
breakers = CircuitBreakerRegistry.from_settings(settings)
realtime = RealtimeNotifier.from_url(settings.redis_url)
state_machine = SettlementStateMachine(SessionLocal, audit=audit, realtime=realtime)
parser = SmsParser.from_settings(settings, breakers)
pipeline = ReconciliationPipeline(
    SessionLocal,
    parser=parser,
    matcher=Matcher(MatchPolicy.from_settings(settings)),
    state_machine=state_machine,
    realtime=realtime,
)
review = ManualReviewService(SessionLocal, state_machine, pipeline=pipeline, audit=audit)
prompts = ParserPromptService(SessionLocal, audit=audit)

app = FastAPI(title="MoMo Reconciliation Admin")
instrument_app(app)


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(_: Request, exc: ReconciliationError):
    """Map domain errors to HTTP status codes in one place."""

    status_code = http_status_for(exc)
    if status_code >= 500:
        logger.error("admin_action_failed error=%s", exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})


@app.get("/admin/sms/manual", response_model=list[ReviewItemResponse])
def list_manual(
    limit: int | None = Query(default=None),
    lane: Literal["worklist", "triage"] = "worklist",
    principal: AdminPrincipal = Depends(require_permission(SMS_ATTACH)),
):
    """SMS waiting for an operator, newest first, with open candidate payments."""

    items = review.list_pending(principal, limit=limit, lane=lane)
    return [
        ReviewItemResponse(
            sms=RawSmsResponse.model_validate(item.record),
            parsed=ParsedSmsResponse.model_validate(item.parsed) if item.parsed is not None else None,
            candidates=[PaymentResponse.model_validate(payment) for payment in item.candidates],
        )
        for item in items
    ]


@app.post("/admin/sms/manual/{sms_id}/attach", response_model=PaymentResponse)
def attach(sms_id: str, req: AttachRequest, principal: AdminPrincipal = Depends(require_permission(SMS_ATTACH))):
    """Settle a payment with this SMS."""

    return review.attach(sms_id, req.payment_id, principal)


@app.post("/admin/sms/manual/{sms_id}/dismiss", response_model=ResolutionResponse)
def dismiss(sms_id: str, req: DismissRequest, principal: AdminPrincipal = Depends(require_permission(SMS_ATTACH))):
    """Close the SMS with a terminal resolution; no payment is touched."""

    return review.dismiss(sms_id, req.resolution, req.note, principal)


@app.post("/admin/sms/manual/{sms_id}/rematch", response_model=RematchResponse)
def rematch(sms_id: str, principal: AdminPrincipal = Depends(require_permission(SMS_ATTACH))):
    decision = review.rematch(sms_id, principal)
    return RematchResponse(
        decision=decision.name,
        candidate_payment_ids=list(getattr(decision, "candidate_ids", ())),
        payment_id=getattr(decision, "payment_id", None),
    )


@app.get("/admin/sms/parser/prompts", response_model=list[PromptResponse])
def list_prompts(principal: AdminPrincipal = Depends(require_permission(SMS_PARSER_UPDATE))):
    return prompts.list_prompts(principal)


@app.post("/admin/sms/parser/prompts", response_model=PromptResponse)
def create_prompt(req: PromptCreateRequest, principal: AdminPrincipal = Depends(require_permission(SMS_PARSER_UPDATE))):
    """Store a new prompt version, optionally activating it."""

    return prompts.create_prompt(req.label, req.body, principal, activate=req.activate)


@app.post("/admin/sms/parser/prompts/{prompt_id}/activate", response_model=PromptResponse)
def activate_prompt(prompt_id: str, principal: AdminPrincipal = Depends(require_permission(SMS_PARSER_UPDATE))):
    return prompts.activate_prompt(prompt_id, principal)


@app.post("/admin/sms/parser/test", response_model=ParserTestResponse)
async def parser_test(req: ParserTestRequest, _: AdminPrincipal = Depends(require_permission(SMS_PARSER_UPDATE))):
    """Dry-run the parser on sample text; nothing is stored."""

    result = await parser.parse_sample(req.text, req.prompt_body)
    return ParserTestResponse(
        amount=result.amount,
        currency=result.currency,
        reference=result.reference,
        payer_mask=result.payer_mask,
        confidence=result.confidence,
        parser=result.parser,
        parser_version=result.parser_version,
        degraded=result.degraded,
    )


@app.post("/admin/payments/{payment_id}/fail", response_model=PaymentResponse)
def fail_payment(
    payment_id: str, req: PaymentActionRequest, principal: AdminPrincipal = Depends(require_permission(SMS_ATTACH))
):
    """manual_review -> failed."""

    return review.fail_payment(payment_id, req.reason, principal)


@app.post("/admin/payments/{payment_id}/reverse", response_model=PaymentResponse)
def reverse_payment(
    payment_id: str, req: PaymentActionRequest, principal: AdminPrincipal = Depends(require_permission(PAYMENTS_REVERSE))
):
    """Administrative refund of a confirmed payment."""

    return review.reverse_payment(payment_id, req.reason, principal)


@app.get("/admin/audit", response_model=list[AuditEntryResponse])
def list_audit(
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    _: AdminPrincipal = Depends(require_permission(AUDIT_VIEW)),
):
    with SessionLocal() as db:
        return audit.list_entries(db, entity_type=entity_type, entity_id=entity_id, limit=limit)


@app.get("/breakers")
def breaker_status():
    """Current circuit breaker state per dependency."""

    return {"breakers": breakers.snapshot()}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
