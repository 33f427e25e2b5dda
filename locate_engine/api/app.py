"""
Locate Engine API

FastAPI application with:
- Ticket intake and status ("can I dig?")
- Utility responses and field verification
- Conflict resolution
- Alert acknowledgement and delivery callbacks
- Sweep triggers for external schedulers
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..config import configure_logging, get_settings
from ..engine import LocateEngine, build_engine
from ..models.alert import AckAction, AlertDelivery, DeliveryStatus, TicketAlert
from ..models.ticket import (
    AuditEvent,
    AuditEventType,
    ConflictResolutionType,
    ResponseEvidence,
    ResponseType,
    Ticket,
)
from ..repositories import ConcurrentUpdateError, NotFoundError
from ..services.deadline import DeadlineComputationError
from ..services.state_machine import InvalidTransition
from ..services.tickets import CreateTicket, TicketStatusView


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class RecordResponseRequest(BaseModel):
    utility_code: str
    response_type: ResponseType
    evidence: Optional[ResponseEvidence] = None
    actor: str = "api"


class FieldVerificationRequest(BaseModel):
    utility_code: str
    verified_by: UUID
    marks_match: bool
    notes: Optional[str] = None
    photo_refs: List[str] = Field(default_factory=list)


class CancelTicketRequest(BaseModel):
    actor: str
    reason: Optional[str] = None


class RenewTicketRequest(BaseModel):
    actor: str
    ticket_number: Optional[str] = None


class EmergencyRequest(BaseModel):
    reported_by: str
    description: str


class ResolveConflictRequest(BaseModel):
    resolved_by: UUID
    resolution_type: ConflictResolutionType
    notes: Optional[str] = None


class AcknowledgeRequest(BaseModel):
    user_id: UUID
    action: Optional[AckAction] = None


class AlertOpenedRequest(BaseModel):
    user_id: UUID


class DeliveryStatusRequest(BaseModel):
    status: DeliveryStatus
    provider_message_id: Optional[str] = None
    reason: Optional[str] = None


class ResponseRecorded(BaseModel):
    ticket: TicketStatusView
    alert: Optional[TicketAlert] = None


class ConflictResolved(BaseModel):
    ticket: Ticket
    previous_status: str
    entered: List[str]


class DueAlertView(BaseModel):
    ticket_id: UUID
    ticket_number: str
    alert_type: str
    priority: str
    occurrence_key: str


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_engine(request: Request) -> LocateEngine:
    return request.app.state.engine


router = APIRouter()


# =============================================================================
# HEALTH CHECK
# =============================================================================

@router.get("/health")
async def health_check(engine: LocateEngine = Depends(get_engine)):
    return {
        "status": "healthy",
        "service": engine.settings.app_name,
        "version": __version__,
        "one_call_center": engine.settings.one_call_center,
    }


# =============================================================================
# TICKET ENDPOINTS
# =============================================================================

@router.post("/tickets", status_code=status.HTTP_201_CREATED, response_model=Ticket)
async def create_ticket(request: CreateTicket, actor: str = "api", engine: LocateEngine = Depends(get_engine)):
    """
    File a locate ticket.

    Deadlines are computed here and never change afterwards.
    """
    return await engine.create_ticket(request, actor=actor)


@router.get("/tickets/review", response_model=List[Ticket])
async def list_tickets_for_review(
    organization_id: Optional[UUID] = None,
    engine: LocateEngine = Depends(get_engine)
):
    """Flagged tickets, including intakes whose deadlines could not be computed."""
    return await engine.list_tickets_for_review(organization_id)


@router.get("/tickets/{ticket_id}", response_model=TicketStatusView)
async def get_ticket(ticket_id: UUID, engine: LocateEngine = Depends(get_engine)):
    """Status, risk and dig readiness as of now."""
    return await engine.get_ticket_status(ticket_id)


@router.get("/tickets/{ticket_id}/timeline", response_model=List[AuditEvent])
async def get_timeline(
    ticket_id: UUID,
    event_type: Optional[List[AuditEventType]] = Query(default=None),
    engine: LocateEngine = Depends(get_engine)
):
    return await engine.get_timeline(ticket_id, event_type)


@router.post("/tickets/{ticket_id}/responses", response_model=ResponseRecorded)
async def record_response(
    ticket_id: UUID,
    request: RecordResponseRequest,
    engine: LocateEngine = Depends(get_engine)
):
    alert = await engine.record_utility_response(
        ticket_id,
        request.utility_code,
        request.response_type,
        evidence=request.evidence,
        actor=request.actor,
    )
    return ResponseRecorded(ticket=await engine.get_ticket_status(ticket_id), alert=alert)


@router.post("/tickets/{ticket_id}/verifications", response_model=Ticket)
async def record_verification(
    ticket_id: UUID,
    request: FieldVerificationRequest,
    engine: LocateEngine = Depends(get_engine)
):
    return await engine.record_field_verification(
        ticket_id,
        request.utility_code,
        request.verified_by,
        request.marks_match,
        notes=request.notes,
        photo_refs=request.photo_refs,
    )


@router.post("/tickets/{ticket_id}/cancel", response_model=Ticket)
async def cancel_ticket(ticket_id: UUID, request: CancelTicketRequest, engine: LocateEngine = Depends(get_engine)):
    return await engine.cancel_ticket(ticket_id, request.actor, reason=request.reason)


@router.post("/tickets/{ticket_id}/renew", status_code=status.HTTP_201_CREATED, response_model=Ticket)
async def renew_ticket(ticket_id: UUID, request: RenewTicketRequest, engine: LocateEngine = Depends(get_engine)):
    """Renewal is always human-initiated."""
    return await engine.renew_ticket(ticket_id, request.actor, ticket_number=request.ticket_number)


@router.post("/tickets/{ticket_id}/emergency", status_code=status.HTTP_201_CREATED, response_model=TicketAlert)
async def report_emergency(ticket_id: UUID, request: EmergencyRequest, engine: LocateEngine = Depends(get_engine)):
    return await engine.report_emergency(ticket_id, request.reported_by, request.description)


# =============================================================================
# CONFLICT ENDPOINTS
# =============================================================================

@router.post("/conflicts/{conflict_id}/resolve", response_model=ConflictResolved)
async def resolve_conflict(
    conflict_id: UUID,
    request: ResolveConflictRequest,
    engine: LocateEngine = Depends(get_engine)
):
    result = await engine.resolve_conflict(
        conflict_id, request.resolved_by, request.resolution_type, notes=request.notes
    )
    return ConflictResolved(
        ticket=result.ticket,
        previous_status=result.previous_status.value,
        entered=[s.value for s in result.entered],
    )


# =============================================================================
# ALERT ENDPOINTS
# =============================================================================

@router.post("/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(alert_id: UUID, request: AcknowledgeRequest, engine: LocateEngine = Depends(get_engine)):
    outcome = await engine.acknowledge_alert(alert_id, request.user_id, action=request.action)
    return {"alert_id": alert_id, "outcome": outcome.value}


@router.post("/alerts/{alert_id}/opened")
async def alert_opened(alert_id: UUID, request: AlertOpenedRequest, engine: LocateEngine = Depends(get_engine)):
    row = await engine.mark_alert_opened(alert_id, request.user_id)
    if row is None:
        raise HTTPException(status_code=404, detail="No acknowledgement tracked for this recipient")
    return {"alert_id": alert_id, "status": row.status.value}


@router.post("/deliveries/{delivery_id}/status", response_model=AlertDelivery)
async def delivery_status(
    delivery_id: UUID,
    request: DeliveryStatusRequest,
    engine: LocateEngine = Depends(get_engine)
):
    """Delivery callback from an SMS / email / push provider."""
    return await engine.record_delivery_status(
        delivery_id,
        request.status,
        provider_message_id=request.provider_message_id,
        reason=request.reason,
    )


@router.get("/alerts/due", response_model=List[DueAlertView])
async def list_due_alerts(at: Optional[datetime] = None, engine: LocateEngine = Depends(get_engine)):
    due = await engine.list_due_alerts(at)
    return [
        DueAlertView(
            ticket_id=item.ticket.id,
            ticket_number=item.ticket.ticket_number,
            alert_type=item.alert_type.value,
            priority=item.rule.priority.value,
            occurrence_key=item.occurrence_key,
        )
        for item in due
    ]


# =============================================================================
# SWEEPS
# =============================================================================

@router.post("/sweeps/run")
async def run_sweep(kind: Optional[str] = None, engine: LocateEngine = Depends(get_engine)):
    """Run one sweep kind (expiry, alerts, escalation, digest) or all of them."""
    try:
        reports = await engine.run_sweep(kind)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return [
        {
            "kind": r.kind,
            "examined": r.examined,
            "changed": r.changed,
            "emitted": r.emitted,
            "suppressed": r.suppressed,
            "failed_dispatches": r.failed_dispatches,
            "errors": [{"subject_id": e.subject_id, "error": e.error} for e in r.errors],
            "aborted": r.aborted,
            "abort_reason": r.abort_reason,
        }
        for r in reports
    ]


# =============================================================================
# APP SETUP
# =============================================================================

def create_app(engine: Optional[LocateEngine] = None) -> FastAPI:
    engine = engine or build_engine()

    app = FastAPI(
        title="Locate Engine",
        description="Call-before-you-dig ticket lifecycle and compliance alerting",
        version=__version__,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InvalidTransition)
    async def invalid_transition(request: Request, exc: InvalidTransition):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ConcurrentUpdateError)
    async def concurrent_update(request: Request, exc: ConcurrentUpdateError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(DeadlineComputationError)
    async def bad_deadline(request: Request, exc: DeadlineComputationError):
        content = {"detail": str(exc)}
        if exc.ticket_id is not None:
            content["ticket_id"] = str(exc.ticket_id)
        return JSONResponse(status_code=422, content=content)

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    configure_logging(settings)
    uvicorn.run(
        "locate_engine.api.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
