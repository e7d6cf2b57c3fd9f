import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from circulation.database import connect
from circulation.engine import CirculationEngine
from circulation.errors import (
    CirculationError,
    InvalidRequest,
    NotFound,
    PersistenceError,
)
from circulation.models import format_ts
from config import settings

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

engine = CirculationEngine()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("%s %s using %s", settings.app_name, settings.app_version, engine.db_file)
    try:
        yield
    finally:
        engine.close()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")

def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the API key."""
    if api_key == settings.api_key:
        return api_key
    else:
        raise HTTPException(
            status_code=403,
            detail="Could not validate credentials",
        )

# --- Error mapping ---
def status_for(exc: CirculationError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, InvalidRequest):
        return 422
    if isinstance(exc, PersistenceError):
        return 503
    # business rule refusals and concurrent modifications
    return 409

@app.exception_handler(CirculationError)
async def circulation_error_handler(request: Request, exc: CirculationError):
    status = status_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content=exc.to_dict())

# --- Models ---
class CheckoutRequest(BaseModel):
    copy_id: str = Field(..., min_length=1)
    member_id: str = Field(..., min_length=1)
    operator_id: str = Field(..., min_length=1)

class ReturnRequest(BaseModel):
    copy_id: str = Field(..., min_length=1)
    operator_id: str = Field(..., min_length=1)

class OperatorRequest(BaseModel):
    operator_id: str = Field(..., min_length=1)

class BanRequest(BaseModel):
    cause: str = Field(..., min_length=1)
    operator_id: str = Field(..., min_length=1)

class PolicyUpdateRequest(BaseModel):
    operator_id: str = Field(..., min_length=1)
    loan_duration_days: Optional[int] = None
    max_renewals: Optional[int] = None
    max_concurrent_loans: Optional[int] = None

class LoanModel(BaseModel):
    loan_id: str
    copy_id: str
    member_id: str
    checkout_at: str
    due_at: str
    returned_at: Optional[str] = None
    renewal_count: int = 0
    checkout_operator: str = ""
    return_operator: Optional[str] = None
    was_late: Optional[bool] = None
    title: Optional[str] = None
    isbn: Optional[str] = None
    card_number: Optional[str] = None
    member_name: Optional[str] = None
    is_overdue: bool = False
    days_overdue: int = 0

class CheckoutResponse(BaseModel):
    loan_id: str
    due_date: str
    loan: dict

class ReturnResponse(BaseModel):
    loan_id: str
    was_late: bool
    loan: dict

class RenewResponse(BaseModel):
    new_due_date: str
    renewals_remaining: int
    loan: dict

class AckResponse(BaseModel):
    ok: bool = True
    member_id: str
    action: str
    changed: bool = True

class CopyStatusResponse(BaseModel):
    copy_id: str
    isbn: str
    title: Optional[str] = None
    state: str
    current_loan: Optional[LoanModel] = None
    is_late: bool = False

class MemberSheetResponse(BaseModel):
    member_id: str
    card_number: str
    name: str
    membership_start: str
    membership_end: str
    membership_valid: bool
    banned: bool
    ban_cause: Optional[str] = None
    banned_at: Optional[str] = None
    total_loans: int
    late_return_count: int
    open_loans: List[LoanModel] = []
    overdue_loans: List[LoanModel] = []
    can_borrow: bool
    is_late: bool = False

class PolicyModel(BaseModel):
    loan_duration_days: int
    max_renewals: int
    max_concurrent_loans: int
    version: int
    updated_at: Optional[str] = None
    updated_by: Optional[str] = None

class AuditEntryModel(BaseModel):
    id: int
    timestamp: str
    actor: str
    action: str
    target: str
    before: dict = {}
    after: dict = {}

# --- Health ---
@app.get("/health")
def health():
    """Liveness check with a quick database round trip."""
    db_ok = True
    try:
        with connect(engine.db_file) as conn:
            conn.execute("SELECT 1")
    except PersistenceError:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": format_ts(engine.clock()),
        "db": db_ok,
        "version": settings.app_version,
    }

# --- Circulation ---
@app.post("/circulation/checkout", response_model=CheckoutResponse, dependencies=[Depends(get_api_key)])
def checkout(request: CheckoutRequest):
    result = engine.checkout(request.copy_id, request.member_id, request.operator_id)
    return {"loan_id": result.loan_id, "due_date": format_ts(result.due_date), "loan": result.loan.to_dict()}

@app.post("/circulation/return", response_model=ReturnResponse, dependencies=[Depends(get_api_key)])
def return_copy(request: ReturnRequest):
    result = engine.return_copy(request.copy_id, request.operator_id)
    return {"loan_id": result.loan_id, "was_late": result.was_late, "loan": result.loan.to_dict()}

@app.post("/loans/{loan_id}/renew", response_model=RenewResponse, dependencies=[Depends(get_api_key)])
def renew(loan_id: str, request: OperatorRequest):
    result = engine.renew(loan_id, request.operator_id)
    return {
        "new_due_date": format_ts(result.new_due_date),
        "renewals_remaining": result.renewals_remaining,
        "loan": result.loan.to_dict(),
    }

@app.get("/loans", response_model=List[LoanModel])
def list_loans(
    status: str = Query("all", description="all | open | overdue | returned"),
    q: Optional[str] = Query(None, description="Title, card number, operator or copy id"),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    offset: int = Query(0, ge=0),
):
    return [view.to_dict() for view in engine.list_loans(status=status, search=q, limit=limit, offset=offset)]

# --- Members ---
@app.post("/members/{member_id}/ban", response_model=AckResponse, dependencies=[Depends(get_api_key)])
def ban_member(member_id: str, request: BanRequest):
    ack = engine.ban(member_id, request.cause, request.operator_id)
    return {"ok": ack.ok, "member_id": ack.member_id, "action": ack.action, "changed": ack.changed}

@app.post("/members/{member_id}/unban", response_model=AckResponse, dependencies=[Depends(get_api_key)])
def unban_member(member_id: str, request: OperatorRequest):
    ack = engine.unban(member_id, request.operator_id)
    return {"ok": ack.ok, "member_id": ack.member_id, "action": ack.action, "changed": ack.changed}

@app.get("/members/{member_id}/loans", response_model=List[LoanModel])
def member_loans(member_id: str, open_only: bool = False):
    return [view.to_dict() for view in engine.query_member_loans(member_id, open_only=open_only)]

@app.get("/members/card/{card_number}", response_model=MemberSheetResponse)
def member_by_card(card_number: str):
    return engine.member_sheet(card_number).to_dict()

# --- Copies and books ---
@app.get("/copies/{copy_id}", response_model=CopyStatusResponse)
def copy_status(copy_id: str):
    return engine.query_copy_status(copy_id).to_dict()

@app.get("/books/{isbn}/return-info", response_model=List[LoanModel])
def return_info(isbn: str):
    """Copies of a title currently on loan, with borrower and due date."""
    return [view.to_dict() for view in engine.return_info(isbn)]

# --- Policy ---
@app.get("/policy", response_model=PolicyModel)
def get_policy():
    return engine.current_policy().to_dict()

@app.put("/policy", response_model=PolicyModel, dependencies=[Depends(get_api_key)])
def update_policy(request: PolicyUpdateRequest):
    policy = engine.update_policy(
        request.operator_id,
        loan_duration_days=request.loan_duration_days,
        max_renewals=request.max_renewals,
        max_concurrent_loans=request.max_concurrent_loans,
    )
    return policy.to_dict()

# --- Audit log ---
def _day_start(day: date) -> str:
    return format_ts(datetime.combine(day, time.min, tzinfo=timezone.utc))

@app.get("/logs/recent", response_model=List[AuditEntryModel])
def logs_recent(limit: int = Query(15, ge=1, le=settings.max_page_size)):
    return [entry.to_dict() for entry in engine.audit_recent(limit)]

@app.get("/logs/today", response_model=List[AuditEntryModel])
def logs_today():
    return [entry.to_dict() for entry in engine.audit_for_date(engine.clock().date())]

@app.get("/logs/date/{day}", response_model=List[AuditEntryModel])
def logs_for_date(day: date):
    return [entry.to_dict() for entry in engine.audit_for_date(day)]

@app.get("/logs/search", response_model=List[AuditEntryModel])
def logs_search(
    eventType: Optional[str] = Query(None, description="checkout, return, renew, ban, unban, policy_update"),
    username: Optional[str] = Query(None, description="Operator id, partial match"),
    startDate: Optional[date] = None,
    endDate: Optional[date] = Query(None, description="Inclusive"),
    query: Optional[str] = None,
    limit: int = Query(50, ge=1, le=settings.max_page_size),
    offset: int = Query(0, ge=0),
):
    entries = engine.audit_search(
        action=eventType,
        actor=username,
        start=_day_start(startDate) if startDate else None,
        end=_day_start(endDate + timedelta(days=1)) if endDate else None,
        query=query,
        limit=limit,
        offset=offset,
    )
    return [entry.to_dict() for entry in entries]
