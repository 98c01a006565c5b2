import logging
import os
from datetime import date

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

load_dotenv()

from db.base import Base
from db.deps import get_lending_db
from db.session import engine_lending
from schemas.borrow import ApproveRequestDto, CreateBorrowRequestDto, RejectRequestDto, ReturnRequestDto
from services.availability_service import find_capacity_violations, is_available, reconcile_available_quantity
from services.borrow_service import (
    approve,
    count_by_status,
    get_by_id,
    list_by_requester,
    list_by_status,
    list_with_filters,
    mark_returned,
    reject,
    serialize_borrow_request,
    submit,
)
from services.catalog_service import require_item, serialize_equipment
from services.lending_errors import LendingError
from services.user_directory_service import has_right, normalize_role


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


logging.basicConfig(
    level=(os.environ.get("LENDING_LOG_LEVEL") or "INFO").strip().upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
API_LOGGER = logging.getLogger("equipment_lending.api")

if _env_flag("LENDING_AUTO_CREATE_SCHEMA", "false"):
    Base.metadata.create_all(bind=engine_lending)

app = FastAPI(title="Equipment Lending")

_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LendingError)
async def handle_lending_error(request: Request, exc: LendingError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.kind})


@app.exception_handler(SQLAlchemyError)
async def handle_persistence_error(request: Request, exc: SQLAlchemyError):
    API_LOGGER.error("Unexpected persistence error path=%s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal error. Please retry later.", "error": "Internal"})


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    errors: dict[str, str] = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in {"body", "query", "path", "header"}]
        errors[".".join(location) or "request"] = str(error.get("msg") or "Invalid value")
    API_LOGGER.warning("Validation error path=%s errors=%s", request.url.path, errors)
    return JSONResponse(status_code=400, content={"detail": "Validation failed", "errors": errors})


def require_caller(
    x_user_id: str | None = Header(None, alias="X-User-ID"),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
) -> dict:
    raw_id = str(x_user_id or "").strip()
    role = normalize_role(x_user_role)
    if not raw_id.isdigit() or int(raw_id) <= 0 or not role:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return {"userID": int(raw_id), "role": role}


def _require_right_or_403(caller: dict, right: str) -> None:
    if not has_right(caller.get("role"), right):
        raise HTTPException(status_code=403, detail=f"Role {caller.get('role')} is not allowed to perform this action.")


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_lending_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/requests")
def create_borrow_request(
    payload: CreateBorrowRequestDto,
    db: Session = Depends(get_lending_db),
    caller: dict = Depends(require_caller),
):
    _require_right_or_403(caller, "borrow")
    API_LOGGER.info("Borrow request creation received equipment_id=%s user_id=%s", payload.equipmentID, caller["userID"])
    created = submit(
        db,
        payload.equipmentID,
        caller["userID"],
        payload.quantity,
        payload.fromDate,
        payload.toDate,
        payload.reason,
    )
    body = serialize_borrow_request(created)
    body["message"] = "Request submitted for approval"
    return body


@app.get("/api/requests/my")
def get_my_requests(db: Session = Depends(get_lending_db), caller: dict = Depends(require_caller)):
    return [serialize_borrow_request(row) for row in list_by_requester(db, caller["userID"])]


@app.get("/api/requests/pending")
def get_pending_requests(db: Session = Depends(get_lending_db), caller: dict = Depends(require_caller)):
    _require_right_or_403(caller, "manageRequests")
    return [serialize_borrow_request(row) for row in list_by_status(db, "PENDING")]


@app.get("/api/requests/summary")
def get_request_summary(db: Session = Depends(get_lending_db), caller: dict = Depends(require_caller)):
    _require_right_or_403(caller, "manageRequests")
    return count_by_status(db)


@app.get("/api/requests")
def get_requests(
    status: str | None = Query(None),
    user_id: int | None = Query(None, alias="userID"),
    db: Session = Depends(get_lending_db),
    caller: dict = Depends(require_caller),
):
    _require_right_or_403(caller, "manageRequests")
    return [serialize_borrow_request(row) for row in list_with_filters(db, status=status, requester_id=user_id)]


@app.get("/api/requests/{request_id}")
def get_request(request_id: int, db: Session = Depends(get_lending_db), caller: dict = Depends(require_caller)):
    return serialize_borrow_request(get_by_id(db, request_id))


@app.put("/api/requests/{request_id}/approve")
def approve_request(
    request_id: int,
    payload: ApproveRequestDto,
    db: Session = Depends(get_lending_db),
    caller: dict = Depends(require_caller),
):
    _require_right_or_403(caller, "manageRequests")
    approver_id = payload.approvedBy if payload.approvedBy is not None else caller["userID"]
    API_LOGGER.info("Approve request received request_id=%s approver_id=%s", request_id, approver_id)
    return serialize_borrow_request(approve(db, request_id, approver_id, payload.remarks))


@app.put("/api/requests/{request_id}/reject")
def reject_request(
    request_id: int,
    payload: RejectRequestDto,
    db: Session = Depends(get_lending_db),
    caller: dict = Depends(require_caller),
):
    _require_right_or_403(caller, "manageRequests")
    API_LOGGER.info("Reject request received request_id=%s", request_id)
    return serialize_borrow_request(reject(db, request_id, payload.remarks, actor_id=caller["userID"]))


@app.put("/api/requests/{request_id}/return")
def return_request(
    request_id: int,
    payload: ReturnRequestDto,
    db: Session = Depends(get_lending_db),
    caller: dict = Depends(require_caller),
):
    _require_right_or_403(caller, "manageRequests")
    API_LOGGER.info("Return request received request_id=%s", request_id)
    returned = mark_returned(
        db,
        request_id,
        payload.returnDate,
        payload.conditionAfterUse,
        actor_id=caller["userID"],
    )
    return serialize_borrow_request(returned)


@app.get("/api/equipment/{equipment_id}/availability")
def get_equipment_availability(
    equipment_id: int,
    from_date: date = Query(..., alias="fromDate"),
    to_date: date = Query(..., alias="toDate"),
    quantity: int = Query(1),
    db: Session = Depends(get_lending_db),
    caller: dict = Depends(require_caller),
):
    available = is_available(db, equipment_id, quantity, from_date, to_date)
    payload = serialize_equipment(require_item(db, equipment_id))
    payload.update(
        {
            "fromDate": from_date,
            "toDate": to_date,
            "requestedQuantity": quantity,
            "available": available,
        }
    )
    return payload


@app.post("/api/ledger/{equipment_id}/reconcile")
def reconcile_ledger(equipment_id: int, db: Session = Depends(get_lending_db), caller: dict = Depends(require_caller)):
    _require_right_or_403(caller, "manageLedger")
    require_item(db, equipment_id, for_update=True)
    result = reconcile_available_quantity(db, equipment_id, user_id=caller["userID"])
    result["capacityViolations"] = find_capacity_violations(db, equipment_id)
    db.commit()
    API_LOGGER.info(
        "Ledger reconciled equipment_id=%s before=%s after=%s",
        equipment_id,
        result["before"],
        result["after"],
    )
    return result
