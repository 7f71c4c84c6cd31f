"""
Face Check-In API

Thin HTTP layer over the check-in service.

Endpoints:
- POST /identities - Register a new identity from a face image
- GET /identities - List enrolled identities
- POST /checkins - Verify a captured face and record the attempt
- GET /checkins - Recent attempts with dashboard statistics
"""
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from face_checkin.audit import AuditLogger
from face_checkin.config import (
    API_DESCRIPTION,
    API_TITLE,
    API_VERSION,
    RECOGNITION_PROVIDER,
    SUPPORTED_FORMATS,
)
from face_checkin.database import async_session_maker, close_db, init_db
from face_checkin.models import utc_now
from face_checkin.exceptions import (
    CaptureRejected,
    DuplicateError,
    InputError,
    NotFoundError,
    ProviderUnavailable,
)
from face_checkin.providers import build_provider
from face_checkin.registry import IdentityRegistry
from face_checkin.schemas import (
    CheckInLog,
    ErrorResponse,
    IdentityList,
    IdentityRecord,
    RegistrationResponse,
    VerificationOutcome,
    VerificationResponse,
)
from face_checkin.service import CheckInService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# HTTP status for every non-success verification outcome
OUTCOME_STATUS = {
    VerificationOutcome.NO_FACE_DETECTED: 422,
    VerificationOutcome.MULTIPLE_FACES_DETECTED: 422,
    VerificationOutcome.LOW_QUALITY: 422,
    VerificationOutcome.NOT_RECOGNIZED: 404,
    VerificationOutcome.LOW_CONFIDENCE: 404,
    VerificationOutcome.PROVIDER_ERROR: 503,
}


def build_service() -> CheckInService:
    registry = IdentityRegistry(async_session_maker)
    return CheckInService(
        provider=build_provider(RECOGNITION_PROVIDER),
        registry=registry,
        audit=AuditLogger(async_session_maker)
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Face Check-In API...")
    logger.info(f"Recognition provider: {RECOGNITION_PROVIDER}")

    await init_db()
    app.state.service = build_service()
    yield

    # Shutdown
    await close_db()
    logger.info("Shutting down Face Check-In API...")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=API_DESCRIPTION,
    version=API_VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_service(request: Request) -> CheckInService:
    """Dependency returning the service created at startup."""
    return request.app.state.service


def validate_image_file(file: UploadFile) -> None:
    """Validate uploaded image file."""
    if file.filename and "." in file.filename:
        ext = "." + file.filename.lower().split(".")[-1]
        if ext not in SUPPORTED_FORMATS:
            raise HTTPException(
                status_code=400,
                detail=f"Unsupported file format. Supported: {', '.join(sorted(SUPPORTED_FORMATS))}"
            )

    # Check content type
    if file.content_type and not file.content_type.startswith("image/"):
        raise HTTPException(
            status_code=400,
            detail="File must be an image"
        )


async def read_image(file: UploadFile) -> bytes:
    validate_image_file(file)
    try:
        image_bytes = await file.read()
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"Failed to read image: {str(e)}")
    if len(image_bytes) == 0:
        raise HTTPException(status_code=400, detail="Image is required")
    return image_bytes


@app.get("/health")
async def health_check(service: CheckInService = Depends(get_service)):
    """Health check endpoint."""
    try:
        total = await service.registry.count()
        db_status = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        total = 0
        db_status = "unhealthy"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "provider": service.provider.name,
        "database_status": db_status,
        "total_identities": total,
        "audit_write_failures": service.audit.failed_writes
    }


# ============================================================================
# REGISTRATION
# ============================================================================
@app.post(
    "/identities",
    response_model=RegistrationResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid input"},
        409: {"model": ErrorResponse, "description": "Identity already exists"},
        422: {"model": ErrorResponse, "description": "No usable face in the image"},
        503: {"model": ErrorResponse, "description": "Recognition provider unavailable"}
    },
    summary="Register a new identity"
)
async def register_identity(
    image: UploadFile = File(..., description="Face image file"),
    identity_id: str = Form(..., description="Externally assigned identifier"),
    name: str = Form(..., description="Display name"),
    service: CheckInService = Depends(get_service)
):
    image_bytes = await read_image(image)

    result = await service.register(identity_id, name, image_bytes)
    identity = result.identity

    return RegistrationResponse(
        success=True,
        message="Employee registered successfully",
        identity_id=identity.identity_id,
        name=identity.display_name,
        face_quality=identity.enrollment_quality.quality,
        group_token=result.group_token
    )


@app.get(
    "/identities",
    response_model=IdentityList,
    summary="List enrolled identities"
)
async def list_identities(service: CheckInService = Depends(get_service)):
    identities = await service.registry.list()
    records = [
        IdentityRecord(identity_id=i.identity_id, name=i.display_name, enrolled_at=i.enrolled_at)
        for i in reversed(identities)
    ]
    return IdentityList(total_count=len(records), identities=records)


# ============================================================================
# CHECK-IN
# ============================================================================
@app.post(
    "/checkins",
    response_model=VerificationResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid input"},
        404: {"model": ErrorResponse, "description": "Face not recognized, or matched face not linked to an identity"},
        422: {"model": ErrorResponse, "description": "No usable face in the image"},
        503: {"model": ErrorResponse, "description": "Recognition provider unavailable"}
    },
    summary="Check in with a captured face"
)
async def check_in(
    image: UploadFile = File(..., description="Captured face image"),
    service: CheckInService = Depends(get_service)
):
    image_bytes = await read_image(image)

    result = await service.verify(image_bytes)
    if result.identity_unresolved:
        raise NotFoundError(result.message)
    if not result.success:
        raise HTTPException(status_code=OUTCOME_STATUS[result.outcome], detail=result.message)

    return VerificationResponse(
        success=True,
        message=result.message,
        outcome=result.outcome,
        identity_id=result.identity.identity_id,
        name=result.identity.display_name,
        confidence=result.confidence,
        face_quality=result.face_quality,
        match_path=result.match_path,
        timestamp=result.attempt.occurred_at if result.attempt else utc_now()
    )


@app.get(
    "/checkins",
    response_model=CheckInLog,
    summary="Recent check-in attempts and statistics"
)
async def check_in_log(service: CheckInService = Depends(get_service)):
    attempts = await service.audit.recent()
    stats = await service.audit.summary()
    return CheckInLog(attempts=attempts, stats=stats)


# Exception handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Custom HTTP exception handler."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTPException",
            "detail": exc.detail
        }
    )


@app.exception_handler(CaptureRejected)
async def capture_rejected_handler(request, exc):
    return JSONResponse(status_code=422, content={"error": exc.outcome.value, "detail": str(exc)})


@app.exception_handler(InputError)
async def input_error_handler(request, exc):
    return JSONResponse(status_code=400, content={"error": "InputError", "detail": str(exc)})


@app.exception_handler(DuplicateError)
async def duplicate_error_handler(request, exc):
    return JSONResponse(status_code=409, content={"error": "DuplicateError", "detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc):
    return JSONResponse(status_code=404, content={"error": "NotFoundError", "detail": str(exc)})


@app.exception_handler(ProviderUnavailable)
async def provider_unavailable_handler(request, exc):
    logger.error(f"Recognition provider unavailable: {exc}")
    return JSONResponse(status_code=503, content={"error": "ProviderUnavailable", "detail": str(exc)})


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """General exception handler."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "InternalServerError",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("face_checkin.main:app", host="0.0.0.0", port=8000)
