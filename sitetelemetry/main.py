import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import config
from .database import check_db, engine
from .errors import ProcessingError, TenantContextMissing, ValidationFailure
from .models import Base
from .routers import alerts, anomalies, live, readings, streams, telemetry

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

if config.CREATE_TABLES:
    Base.metadata.create_all(bind=engine)

app = FastAPI(title="Site Telemetry API", version="0.3.0")
# Cors
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TenantContextMissing)
def tenant_missing_handler(request: Request, exc: TenantContextMissing):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ValidationFailure)
def validation_failure_handler(request: Request, exc: ValidationFailure):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ProcessingError)
def processing_error_handler(request: Request, exc: ProcessingError):
    # details are already logged with the traceback by the ingestor
    return JSONResponse(status_code=500, content={"detail": "Telemetry processing failed"})


@app.get("/healthz")
def healthz():
    ok, msg = check_db()
    return {"status": "ok" if ok else "error", "db": msg}


app.include_router(telemetry.router, prefix="/v1")
app.include_router(readings.router, prefix="/v1")
app.include_router(streams.router, prefix="/v1")
app.include_router(alerts.router, prefix="/v1")
app.include_router(anomalies.router, prefix="/v1")
app.include_router(live.router, prefix="/v1")
