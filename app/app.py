import os
import time
import traceback
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

import logging

from app.observability import init_opentelemetry, otel_enabled
from app.utils import optional_auth, require_admin, require_auth
from db.models import FeedbackRequest, LANGUAGES, PerformanceRecord, PerformanceRequest, TextRequest
from db.store import DEFAULT_PAGE_SIZE, MongoRecordStore
from inference.config import PipelineConfig
from inference.errors import PipelineError
from inference.orchestrator import CallerInfo, PredictionOrchestrator
from inference.policy import Authenticated, Principal

# Load environment variables from .env file
load_dotenv()

# Initialize OpenTelemetry (console logging only when OTEL_ENABLED=false)
init_opentelemetry()

logger = logging.getLogger(__name__)

# Read environment mode (defaults to prod for safety)
ENV = os.getenv("ENV", "prod").lower()
logger.info(f"Running in {ENV} mode")

"""
FastAPI Setup
"""

@asynccontextmanager
async def lifespan(app: FastAPI):
    if STORE is not None:
        try:
            STORE.ensure_indexes()
            logger.info("Database indexes ensured")
        except PyMongoError as e:
            logger.error(f"Failed to create indexes: {str(e)}")
    yield


README = Path(__file__).parent / "README.md"
description = README.read_text(encoding="utf-8") if README.exists() else "HATA prediction API"

app = FastAPI(
    title="HATA Prediction API",
    description=description,
    version="1.0.0",
    docs_url="/docs",        # Swagger UI
    redoc_url="/redoc",      # ReDoc
    lifespan=lifespan,
)

if otel_enabled():
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    FastAPIInstrumentor().instrument_app(app)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    logger.info(f"Incoming request: {request.method} {request.url.path}")
    response = await call_next(request)
    process_time = time.time() - start_time
    logger.info(f"Response: {response.status_code} - Time: {process_time:.3f}s")
    return response


origins = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOW_ORIGINS", "http://localhost,http://localhost:3000").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

"""
Error handling
"""


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append({"field": ".".join(location), "message": error.get("msg", "Invalid value")})
    return JSONResponse(status_code=400, content={"success": False, "errors": errors})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error(f"Database error on {request.url.path}: {exc}")
    logger.error(traceback.format_exc())
    return JSONResponse(status_code=500, content={"success": False, "error": "Database error"})


"""
Services
"""

STORE = None
ORCHESTRATOR = None
try:
    STORE = MongoRecordStore.from_env()
    ORCHESTRATOR = PredictionOrchestrator(PipelineConfig.load(), STORE)
except Exception as e:
    logger.error(f"Failed to initialise prediction pipeline: {str(e)}")
    logger.error(traceback.format_exc())


def get_orchestrator() -> PredictionOrchestrator:
    if ORCHESTRATOR is None:
        raise PipelineError("Prediction service not available")
    return ORCHESTRATOR


def get_store() -> MongoRecordStore:
    if STORE is None:
        raise PipelineError("Database not available")
    return STORE


"""
Routes
"""
# Blocking routes are plain ``def``: FastAPI runs them in its threadpool, so a
# client disconnect never interrupts a backend call or an insert half-way.


@app.get("/", tags=["Root"])
def read_root():
    return {
        "message": f"HATA Prediction API is running in {ENV} mode. Check /redoc for more info."
    }


@app.get("/health", tags=["Root"])
def health():
    return {
        "success": True,
        "environment": ENV,
        "backend": ORCHESTRATOR.backend.name if ORCHESTRATOR else None,
    }


@app.post("/predictions/predict", tags=["Predictions"])
def predict(body: TextRequest, request: Request,
            principal: Principal = Depends(optional_auth),
            orchestrator: PredictionOrchestrator = Depends(get_orchestrator)):
    caller = CallerInfo(
        address=request.client.host if request.client else None,
        agent=request.headers.get("user-agent"),
    )
    record = orchestrator.handle_predict(body.text, body.language, principal, caller)
    outcome = record.outcome
    return {
        "success": True,
        "data": {
            "predictionId": record.id,
            "prediction": {
                "label": outcome.label,
                "label_text": outcome.label_text,
                "confidence": outcome.confidence,
                "probabilities": outcome.probabilities,
                "needs_review": outcome.needs_review,
            },
            "explanation": outcome.explanation.model_dump(mode="json"),
            "biasScore": outcome.bias_scores.model_dump(mode="json"),
            "language": record.language,
            "language_name": LANGUAGES[record.language],
            "processing_time": record.metadata.processing_time_ms / 1000,
        }
    }


@app.get("/predictions/history", tags=["Predictions"])
def prediction_history(page: int = 1, limit: int = DEFAULT_PAGE_SIZE,
                       principal: Authenticated = Depends(require_auth),
                       orchestrator: PredictionOrchestrator = Depends(get_orchestrator)):
    history = orchestrator.get_history(principal, page, limit)
    return {"success": True, "data": history.model_dump(mode="json")}


@app.get("/predictions/{prediction_id}", tags=["Predictions"])
def get_prediction(prediction_id: str,
                   principal: Principal = Depends(optional_auth),
                   orchestrator: PredictionOrchestrator = Depends(get_orchestrator)):
    record = orchestrator.get_by_id(prediction_id, principal)
    return {"success": True, "data": record.model_dump(mode="json")}


@app.post("/feedback", status_code=201, tags=["Feedback"])
def submit_feedback(body: FeedbackRequest,
                    principal: Principal = Depends(optional_auth),
                    orchestrator: PredictionOrchestrator = Depends(get_orchestrator)):
    feedback = orchestrator.submit_feedback(body, principal)
    return {"success": True, "data": feedback.model_dump(mode="json")}


@app.get("/feedback", tags=["Feedback"])
def list_feedback(page: int = 1, limit: int = DEFAULT_PAGE_SIZE,
                  admin: Authenticated = Depends(require_admin),
                  store: MongoRecordStore = Depends(get_store)):
    return {"success": True, "data": store.list_feedback(page, limit).model_dump(mode="json")}


@app.get("/feedback/prediction/{prediction_id}", tags=["Feedback"])
def prediction_feedback(prediction_id: str, store: MongoRecordStore = Depends(get_store)):
    feedback = store.feedback_for_prediction(prediction_id)
    return {"success": True, "data": [f.model_dump(mode="json") for f in feedback]}


@app.get("/statistics/overview", tags=["Statistics"])
def statistics_overview(store: MongoRecordStore = Depends(get_store)):
    return {"success": True, "data": store.overview()}


@app.get("/statistics/predictions", tags=["Statistics"])
def statistics_predictions(store: MongoRecordStore = Depends(get_store)):
    return {"success": True, "data": store.prediction_stats()}


@app.get("/statistics/bias", tags=["Statistics"])
def statistics_bias(store: MongoRecordStore = Depends(get_store)):
    return {"success": True, "data": store.bias_stats()}


@app.get("/statistics/recent", tags=["Statistics"])
def statistics_recent(limit: int = 10, store: MongoRecordStore = Depends(get_store)):
    return {"success": True, "data": store.recent(limit)}


@app.get("/admin/dashboard", tags=["Admin"])
def admin_dashboard(admin: Authenticated = Depends(require_admin),
                    store: MongoRecordStore = Depends(get_store)):
    dashboard = store.dashboard()
    dashboard["lowConfidencePredictions"] = [
        record.model_dump(mode="json") for record in dashboard["lowConfidencePredictions"]]
    return {"success": True, "data": dashboard}


@app.get("/admin/performance", tags=["Admin"])
def list_performance(admin: Authenticated = Depends(require_admin),
                     store: MongoRecordStore = Depends(get_store)):
    return {"success": True, "data": [p.model_dump(mode="json") for p in store.list_performance()]}


@app.post("/admin/performance", status_code=201, tags=["Admin"])
def add_performance(body: PerformanceRequest,
                    admin: Authenticated = Depends(require_admin),
                    store: MongoRecordStore = Depends(get_store)):
    record = PerformanceRecord(**body.model_dump())
    record.id = store.create_performance(record)
    logger.info(f"Performance metrics added by {admin.id}: {record.id}")
    return {"success": True, "data": record.model_dump(mode="json")}
