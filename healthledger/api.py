import base64
import binascii
import logging
import time
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from healthledger.access import AccessControlEngine
from healthledger.activity import ActivityLog
from healthledger.auth import AuthGate, require_role
from healthledger.constants import ADMIN_SUBJECT, ROLES
from healthledger.content_store import ContentStoreClient
from healthledger.database import Cache, User, normalize_wallet
from healthledger.errors import (
    CacheWriteError,
    Conflict,
    Forbidden,
    HealthLedgerError,
    IdentityMismatch,
    InvalidSignature,
    NotFound,
    PayloadRejected,
    RoleNotGranted,
    Unauthorized,
    Unavailable,
)
from healthledger.ledger import LedgerClient
from healthledger.models import (
    AdminTokenRequest,
    EmailLookup,
    GrantRequest,
    LoginRequest,
    PatientProfileUpdate,
    Principal,
    RegistrationCheck,
    SearchResponse,
    UploadRequest,
)
from healthledger.profiles import profile_kind
from healthledger.records import RecordIndex
from healthledger.sync import SyncEngine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="HealthLedger API")

# Enable CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class Services:
    """The wired core components one process serves requests with."""

    def __init__(self, cache, ledger, content_store, auth=None):
        self.cache = cache
        self.ledger = ledger
        self.content_store = content_store
        self.activity = ActivityLog(cache)
        self.access = AccessControlEngine(cache, self.activity)
        self.records = RecordIndex(cache, self.access, self.activity, content_store)
        self.sync = SyncEngine(ledger, cache, self.records, self.activity)
        self.auth = auth or AuthGate(ledger, cache)


_services = None


def get_services() -> Services:
    global _services
    if _services is None:
        cache = Cache()
        cache.init_schema()
        _services = Services(cache, LedgerClient(), ContentStoreClient())
        logger.info("HealthLedger services initialized")
    return _services


bearer = HTTPBearer(auto_error=False)


def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    services: Services = Depends(get_services),
) -> Principal:
    if credentials is None:
        raise Unauthorized()
    return services.auth.verify(credentials.credentials)


# Error mapping, most specific first
STATUS_CODES = (
    (NotFound, 404),
    (Unavailable, 503),
    (Unauthorized, 401),
    (InvalidSignature, 401),
    (RoleNotGranted, 403),
    (Forbidden, 403),
    (PayloadRejected, 400),
    (IdentityMismatch, 409),
    (Conflict, 409),
    (CacheWriteError, 500),
)


@app.exception_handler(HealthLedgerError)
async def healthledger_error_handler(request: Request, exc: HealthLedgerError):
    status_code = 500
    for error_type, code in STATUS_CODES:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc}")
    content = {"status": "error", "error": str(exc)}
    if isinstance(exc, Unavailable):
        content["dependency"] = exc.dependency
    return JSONResponse(status_code=status_code, content=content)


# Standard API response helper
def success_response(data=None, message=None):
    """
    Create a standardized success response.

    Args:
        data: Optional data to include in the response
        message: Optional message to include in the response

    Returns:
        dict: A standardized success response
    """
    response = {"status": "success"}

    if data is not None:
        response["data"] = data

    if message is not None:
        response["message"] = message

    return response


def _kind(role):
    try:
        return profile_kind(role)
    except ValueError as e:
        raise PayloadRejected(str(e)) from None


def _origin(request: Request):
    return request.client.host if request.client else None


def _require_admin(principal: Principal):
    return require_role(principal, ADMIN_SUBJECT)


# Health check endpoint
@app.get("/health")
@app.get("/api/health")
async def health_check():
    """Health check endpoint for Docker healthcheck"""
    return success_response(
        data={"timestamp": int(time.time())},
        message="Service is healthy"
    )


# Authentication

@app.post("/api/users/login")
def login(request: LoginRequest, services: Services = Depends(get_services)):
    result = services.auth.login(
        request.role, request.numeric_id, request.wallet_address, request.signature, request.message
    )
    return success_response(data=result, message="Login successful")


@app.post("/api/auth/token")
def admin_token(request: AdminTokenRequest, services: Services = Depends(get_services)):
    return success_response(data=services.auth.issue_admin_token(request.api_key, request.api_secret))


# Profiles

@app.post("/api/users/{role}/{numeric_id}/register")
def register_profile(role: str, numeric_id: int, services: Services = Depends(get_services)):
    """Mirror an entity just registered on the ledger into the cache."""
    result = services.sync.register(_kind(role).role, numeric_id)
    return success_response(data=result.as_dict(), message=f"{result.kind.role.capitalize()} registered")


@app.get("/api/users/{role}/{numeric_id}")
def get_profile(
    role: str,
    numeric_id: int,
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_principal),
):
    """
    Role-scoped profile fetch.

    Doctor and diagnostic profiles are public and may be served from the
    cache when the ledger is down (``cached: true``). Patient profiles need
    an authorized caller and are never served stale.
    """
    kind = _kind(role)
    if kind.role != ROLES["PATIENT"]:
        result = services.sync.reconcile_profile(kind.role, numeric_id, allow_stale=True)
        data = result.as_dict()
        data["cached"] = result.stale
        return success_response(data=data)

    result = services.sync.reconcile_profile(kind.role, numeric_id, allow_stale=False)
    if principal.role != ADMIN_SUBJECT and not services.access.is_authorized(
        principal.wallet_address, principal.role, result.identity.wallet_address, principal.numeric_id
    ):
        logger.warning(f"Denied patient {numeric_id} profile to {principal.role} {principal.wallet_address}")
        raise Forbidden("Not authorized to view this patient")
    return success_response(data=result.as_dict())


@app.put("/api/patients/{numeric_id}/profile")
def update_patient_profile(
    numeric_id: int,
    updates: PatientProfileUpdate,
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_principal),
):
    require_role(principal, ROLES["PATIENT"])
    if principal.numeric_id != numeric_id:
        raise Forbidden("Patients can only update their own profile")
    data = services.sync.update_patient_profile(numeric_id, updates.model_dump(exclude_none=True))
    return success_response(data=data, message="Profile updated successfully")


@app.post("/api/profile/check-registration")
def check_registration(request: RegistrationCheck, services: Services = Depends(get_services)):
    data = services.sync.check_registration(request.wallet_address, request.role, request.numeric_id)
    return success_response(data=data)


@app.post("/api/profile/forgot-numeric-id")
def forgot_numeric_id(request: EmailLookup, services: Services = Depends(get_services)):
    return success_response(data=services.sync.lookup_by_email(request.email))


# Access grants

@app.post("/api/access/grant")
def grant_access(
    request: GrantRequest,
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_principal),
):
    require_role(principal, ROLES["PATIENT"])
    grant = services.access.grant(principal.wallet_address, request.doctor_wallet)
    return success_response(data=grant.as_dict(), message="Access granted")


@app.post("/api/access/revoke")
def revoke_access(
    request: GrantRequest,
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_principal),
):
    require_role(principal, ROLES["PATIENT"])
    grant = services.access.revoke(principal.wallet_address, request.doctor_wallet)
    return success_response(data=grant.as_dict() if grant else None, message="Access revoked")


@app.get("/api/doctors/patients")
def list_patients(services: Services = Depends(get_services), principal: Principal = Depends(get_principal)):
    require_role(principal, ROLES["DOCTOR"])
    patients = services.access.list_patients_for(principal.wallet_address, principal.numeric_id)
    return success_response(data={"patients": patients, "count": len(patients)})


@app.get("/api/patients/doctors")
def list_doctors(services: Services = Depends(get_services), principal: Principal = Depends(get_principal)):
    require_role(principal, ROLES["PATIENT"])
    grants = [grant.as_dict() for grant in services.access.list_doctors_for(principal.wallet_address)]
    return success_response(data={"doctors": grants, "count": len(grants)})


# Records

@app.get("/api/search/records")
def search_records(
    request: Request,
    q: str = "",
    limit: int = 50,
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_principal),
):
    if principal.role == ADMIN_SUBJECT:
        scope = {"scope_wallet": None, "scope_role": None, "scope_numeric_id": None}
    else:
        scope = {
            "scope_wallet": principal.wallet_address,
            "scope_role": principal.role,
            "scope_numeric_id": principal.numeric_id,
        }
    results = services.records.search(
        q, limit=limit, origin=_origin(request), user_agent=request.headers.get("user-agent"), **scope
    )
    response = SearchResponse(
        results=[RecordIndex.serialize(entry) for entry in results], count=len(results), query=q
    )
    return success_response(data=response.model_dump())


@app.get("/api/search/patient/{wallet_address}")
def list_patient_records(
    wallet_address: str,
    limit: int = 50,
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_principal),
):
    if principal.role == ROLES["DIAGNOSTIC"]:
        # Diagnostic centers only see the records they created
        entries = services.records.list_by_patient(wallet_address, limit, creator_wallet=principal.wallet_address)
    elif principal.role == ADMIN_SUBJECT or services.access.is_authorized(
        principal.wallet_address, principal.role, wallet_address, principal.numeric_id
    ):
        entries = services.records.list_by_patient(wallet_address, limit)
    else:
        logger.warning(f"Denied records of {wallet_address} to {principal.role} {principal.wallet_address}")
        raise Forbidden("Not authorized to view this patient's records")
    records = [RecordIndex.serialize(entry) for entry in entries]
    return success_response(data={"records": records, "count": len(records)})


@app.post("/api/records/upload")
def upload_record(
    request: UploadRequest,
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_principal),
):
    """Pin an encrypted payload; the caller records the returned CID on the ledger."""
    require_role(principal, ROLES["PATIENT"], ROLES["DOCTOR"], ROLES["DIAGNOSTIC"])
    try:
        data = base64.b64decode(request.content_base64, validate=True)
    except (binascii.Error, ValueError):
        raise PayloadRejected("content_base64 is not valid base64") from None
    metadata = {str(k): str(v) for k, v in (request.metadata or {}).items()}
    metadata["uploadedBy"] = principal.wallet_address
    result = services.content_store.put_file(data, request.file_name, metadata)
    return success_response(data=result, message="File uploaded successfully")


@app.post("/api/records/{record_id}/sync")
def sync_record(
    record_id: str,
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_principal),
):
    _require_admin(principal)
    entry = services.sync.reconcile_record(record_id)
    return success_response(data=RecordIndex.serialize(entry))


@app.get("/api/records/{record_id}/content")
def record_content(
    record_id: str,
    request: Request,
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_principal),
):
    data = services.records.fetch_content(
        record_id,
        principal.wallet_address,
        principal.role,
        principal.numeric_id,
        origin=_origin(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Response(content=data, media_type="application/octet-stream")


@app.get("/api/records/{record_id}/access-logs")
def record_access_logs(
    record_id: str,
    limit: int = 100,
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_principal),
):
    if record_id != "search":
        entry = services.records.get(record_id)
        owner = normalize_wallet(principal.wallet_address) == entry.patient_wallet
    else:
        owner = False
    if principal.role != ADMIN_SUBJECT and not owner:
        raise Forbidden("Only the record owner can view its access logs")
    logs = [log.as_dict() for log in services.activity.list_access_logs(record_id, limit)]
    return success_response(data={"logs": logs, "count": len(logs)})


# Notifications

@app.get("/api/notifications")
def list_notifications(
    unread_only: bool = False,
    limit: int = 50,
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_principal),
):
    notifications = [
        n.as_dict() for n in services.activity.list_notifications(principal.wallet_address, unread_only, limit)
    ]
    return success_response(data={"notifications": notifications, "count": len(notifications)})


@app.post("/api/notifications/{notification_id}/read")
def mark_notification_read(
    notification_id: int,
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_principal),
):
    require_role(principal, *ROLES.values())
    notification = services.activity.mark_read(notification_id, principal.wallet_address)
    return success_response(data=notification.as_dict())


@app.get("/api/users/me")
def current_user(services: Services = Depends(get_services), principal: Principal = Depends(get_principal)):
    identity = None
    if principal.wallet_address:
        identity = services.cache.get(User, wallet_address=normalize_wallet(principal.wallet_address))
    return success_response(data={
        "principal": principal.model_dump(),
        "identity": identity.as_dict() if identity else None,
    })
