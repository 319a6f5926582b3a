"""
Prediction pipeline: validate, call the configured backend once, normalize,
persist, and serve records back under the access policy.

```
orchestrator = PredictionOrchestrator(PipelineConfig.from_env(), MongoRecordStore.from_env())
record = orchestrator.handle_predict("Wannan labari ne", "ha", ANONYMOUS)
```
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from opentelemetry import trace
from opentelemetry.metrics import get_meter

from db.models import (
    AttachedFeedback,
    FeedbackRecord,
    FeedbackRequest,
    LANGUAGES,
    MAX_TEXT_LENGTH,
    PredictionPage,
    PredictionRecord,
    RecordMetadata,
)
from db.store import DEFAULT_PAGE_SIZE, RecordStore
from inference.backends import BackendVariant, CallOptions, build_backend
from inference.config import PipelineConfig
from inference.errors import (
    AccessDenied,
    AuthRequired,
    BackendFailure,
    InvalidInput,
    NotFound,
    PersistenceError,
)
from inference.policy import AccessPolicy, Authenticated, Principal, requester_id_of

logger = logging.getLogger(__name__)

tracer = trace.get_tracer(__name__)
meter = get_meter(__name__)

prediction_count = meter.create_counter(
    "prediction_count",
    description="Number of predictions made"
)
prediction_latency = meter.create_histogram(
    "prediction_latency_seconds",
    description="Latency of backend predictions in seconds",
    unit="s"
)
backend_failure_count = meter.create_counter(
    "backend_failure_count",
    description="Number of failed backend calls"
)


@dataclass
class CallerInfo:
    address: Optional[str] = None
    agent: Optional[str] = None


def _encodable(text: str) -> bool:
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def validate_request(text, language):
    """Return the trimmed text or raise InvalidInput listing every problem."""
    errors = []
    if not isinstance(text, str) or not text.strip():
        errors.append({"field": "text", "message": "Text is required"})
    elif len(text.strip()) > MAX_TEXT_LENGTH:
        errors.append({"field": "text",
                       "message": f"Text must be at most {MAX_TEXT_LENGTH} characters"})
    elif not _encodable(text):
        errors.append({"field": "text", "message": "Text must be valid UTF-8"})
    if language not in LANGUAGES:
        errors.append({"field": "language",
                       "message": f"Language must be one of {', '.join(LANGUAGES)}"})
    if errors:
        raise InvalidInput(errors)
    return text.strip()


class PredictionOrchestrator:

    def __init__(self, config: PipelineConfig, store: RecordStore,
                 backend: Optional[BackendVariant] = None,
                 policy: Optional[AccessPolicy] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.store = store
        self.backend = backend or build_backend(config)
        self.policy = policy or AccessPolicy()
        self.clock = clock
        logger.info(f"Prediction backend: {self.backend.name} at {config.url} "
                    f"(timeout={'none' if config.timeout == 0 else config.timeout})")

    def handle_predict(self, text: str, language: str, principal: Principal,
                       caller: Optional[CallerInfo] = None) -> PredictionRecord:
        text = validate_request(text, language)
        caller = caller or CallerInfo()
        backend_name = self.backend.name
        logger.info(f"Calling {backend_name} for: {language} (text length: {len(text)})")

        with tracer.start_as_current_span("backend_inference") as span:
            span.set_attribute("backend.name", backend_name)
            span.set_attribute("input.language", language)
            span.set_attribute("input.text.length", len(text))

            start_time = self.clock()
            try:
                response = self.backend.client.call(
                    text, language, CallOptions(explain=self.config.explain, bias=self.config.bias))
                outcome = self.backend.normalizer.normalize(response.payload, text)
            except BackendFailure as e:
                # details were logged by the client, the caller only sees the kind
                backend_failure_count.add(1, {"backend": backend_name, "kind": e.kind})
                span.set_status(trace.Status(trace.StatusCode.ERROR, description=e.kind))
                logger.error(f"Prediction failed ({e.kind}) on {backend_name}: {e}")
                raise
            latency = self.clock() - start_time

            span.set_attribute("prediction.label", outcome.label)
            span.set_attribute("prediction.confidence", outcome.confidence)
            span.set_attribute("prediction.explanation_status", outcome.explanation.status)

        attributes = {"language": language, "label": outcome.label, "backend": backend_name}
        prediction_count.add(1, attributes)
        prediction_latency.record(latency, attributes)

        record = PredictionRecord(
            text=text,
            language=language,
            requester_id=requester_id_of(principal),
            outcome=outcome,
            metadata=RecordMetadata(
                caller_address=caller.address,
                caller_agent=caller.agent,
                processing_time_ms=int(round(latency * 1000)),
                backend_source=response.source,
                model_version=response.model_version,
            ),
        )
        try:
            record.id = self.store.create_prediction(record)
        except PersistenceError:
            logger.error(f"Prediction from {backend_name} could not be persisted")
            raise
        logger.info(f"Prediction saved ({backend_name}): {record.id}")
        return record

    def get_history(self, principal: Principal, page: int = 1,
                    page_size: int = DEFAULT_PAGE_SIZE) -> PredictionPage:
        if not isinstance(principal, Authenticated):
            raise AuthRequired()
        return self.store.find_predictions_by_owner(principal.id, page, page_size)

    def get_by_id(self, record_id: str, principal: Principal) -> PredictionRecord:
        record = self.store.find_prediction(record_id)
        if record is None:
            raise NotFound("Prediction not found")
        if not self.policy.can_read(record, principal):
            raise AccessDenied()
        return record

    def submit_feedback(self, request: FeedbackRequest, principal: Principal) -> FeedbackRecord:
        if self.store.find_prediction(request.prediction_id) is None:
            raise NotFound("Prediction not found")

        feedback = FeedbackRecord(
            prediction_id=request.prediction_id,
            requester_id=requester_id_of(principal),
            rating=request.rating,
            correct_label=request.correct_label,
            comment=request.comment,
            feedback_type=request.feedback_type,
        )
        feedback.id = self.store.create_feedback(feedback)
        logger.info(f"Feedback submitted: {feedback.id}")

        # best effort: the feedback collection is the source of truth
        try:
            attached = self.store.attach_feedback(request.prediction_id, AttachedFeedback(
                rating=feedback.rating,
                correct_label=feedback.correct_label,
                comment=feedback.comment,
                submitted_at=feedback.created_at,
            ))
            if not attached:
                logger.warning(f"Prediction {request.prediction_id} vanished before feedback was attached")
        except Exception as e:
            logger.error(f"Failed to attach feedback {feedback.id} to prediction {request.prediction_id}: {e}")
        return feedback
