import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from metaobjects.config import get_settings
from metaobjects.database import init_metadata_tables
from metaobjects.routers import api_router
from metaobjects.schemas import ErrorBody, ErrorResponse, FieldErrorDetail
from metaobjects.services import ErrorKind, MetadataError

settings = get_settings()
log_level_name = (settings.log_level or "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
logging.getLogger("metaobjects").setLevel(log_level)

app = FastAPI(title=settings.app_name)

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.DUPLICATE_ERROR: 409,
    ErrorKind.CONSTRAINT_ERROR: 409,
    ErrorKind.INTERNAL_ERROR: 500,
}

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(api_router, prefix="/api")


def _error_response(
    status_code: int, code: ErrorKind, message: str, details: list[FieldErrorDetail] | None = None
) -> JSONResponse:
    body = ErrorResponse(error=ErrorBody(code=code.value, message=message, details=details or []))
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@app.exception_handler(MetadataError)
async def handle_metadata_error(_request: Request, exc: MetadataError) -> JSONResponse:
    return _error_response(STATUS_BY_KIND.get(exc.kind, 500), exc.kind, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    details = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        details.append(
            FieldErrorDetail(
                field=".".join(location) or "body",
                message=error.get("msg", "Invalid value"),
                value=jsonable_encoder(error.get("input")),
            )
        )
    return _error_response(400, ErrorKind.VALIDATION_ERROR, "Request validation failed", details)


@app.exception_handler(Exception)
async def handle_unexpected_error(_request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error: %s", exc)
    return _error_response(500, ErrorKind.INTERNAL_ERROR, "Internal server error")


@app.get("/health", tags=["Health"])
def health_check() -> dict[str, str]:
    return {"status": "ok"}


@app.on_event("startup")
async def create_metadata_tables() -> None:
    if settings.auto_create_metadata_tables:
        logger.info("Creating metadata tables")
        init_metadata_tables()
