from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

LANGUAGES = {
    "ha": "Hausa",
    "yo": "Yoruba",
    "ig": "Igbo",
    "pcm": "Nigerian Pidgin",
}
MAX_TEXT_LENGTH = 50000
MAX_COMMENT_LENGTH = 1000

LABEL_TEXT = {0: "Human-written", 1: "AI-generated"}

# Predictions below this confidence are flagged for review
REVIEW_CONFIDENCE = 0.7

# Tolerance when checking probabilities against label/confidence
PROBABILITY_TOLERANCE = 1e-6


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TextRequest(BaseModel):
    """Body of POST /predictions/predict. Content rules are checked by the orchestrator."""
    text: str
    language: str


class ExplanationStatus(str, Enum):
    GENUINE = "genuine"
    SYNTHESIZED = "synthesized"


class ExplanationMethod(str, Enum):
    LIME = "lime"
    SHAP = "shap"
    ATTENTION = "attention"
    ML_SERVICE = "ml-service"
    FALLBACK = "fallback-attribution"


class Explanation(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    tokens: List[str]
    importances: List[float]
    method: ExplanationMethod
    status: ExplanationStatus

    @model_validator(mode="after")
    def _same_length(self):
        if len(self.tokens) != len(self.importances):
            raise ValueError(
                f"explanation has {len(self.tokens)} tokens but {len(self.importances)} importances")
        return self


class BiasScores(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    # overall is supplied independently, it is not derived from the other three
    gender: float = Field(ge=0, le=1)
    ethnic: float = Field(ge=0, le=1)
    religious: float = Field(ge=0, le=1)
    overall: float = Field(ge=0, le=1)
    status: ExplanationStatus


class PredictionOutcome(BaseModel):
    label: Literal[0, 1]
    confidence: float = Field(ge=0, le=1)
    probabilities: List[float] = Field(min_length=2, max_length=2)
    explanation: Explanation
    bias_scores: BiasScores

    @model_validator(mode="after")
    def _consistent_probabilities(self):
        if abs(self.probabilities[self.label] - self.confidence) > PROBABILITY_TOLERANCE or \
                abs(self.probabilities[1 - self.label] - (1 - self.confidence)) > PROBABILITY_TOLERANCE:
            raise ValueError(
                f"probabilities {self.probabilities} inconsistent with "
                f"label={self.label}, confidence={self.confidence}")
        return self

    @computed_field
    @property
    def label_text(self) -> str:
        return LABEL_TEXT[self.label]

    @computed_field
    @property
    def needs_review(self) -> bool:
        return self.confidence < REVIEW_CONFIDENCE or self.bias_scores.overall > 0.5


class RecordMetadata(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    caller_address: Optional[str] = None
    caller_agent: Optional[str] = None
    processing_time_ms: int
    backend_source: str
    model_version: str


class AttachedFeedback(BaseModel):
    """Denormalized copy of the latest feedback, kept on the prediction."""
    rating: int = Field(ge=1, le=5)
    correct_label: Optional[Literal[0, 1]] = None
    comment: Optional[str] = None
    submitted_at: datetime = Field(default_factory=utcnow)


class PredictionRecord(BaseModel):
    id: Optional[str] = None
    text: str
    language: str
    requester_id: Optional[str] = None
    outcome: PredictionOutcome
    metadata: RecordMetadata
    feedback: Optional[AttachedFeedback] = None
    created_at: datetime = Field(default_factory=utcnow)

    def to_document(self) -> Dict:
        return self.model_dump(exclude={"id"})


class FeedbackRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prediction_id: str = Field(alias="predictionId")
    rating: int = Field(ge=1, le=5)
    correct_label: Optional[Literal[0, 1]] = Field(default=None, alias="correctLabel")
    comment: Optional[str] = Field(default=None, max_length=MAX_COMMENT_LENGTH)
    feedback_type: Literal["accuracy", "explanation", "bias", "general"] = Field(
        default="general", alias="feedbackType")

    @field_validator("prediction_id")
    @classmethod
    def _valid_object_id(cls, value: str) -> str:
        if not ObjectId.is_valid(value):
            raise ValueError("predictionId must be a valid id")
        return value

    @field_validator("comment")
    @classmethod
    def _strip_comment(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        try:
            value.encode("utf-8")
        except UnicodeEncodeError:
            raise ValueError("comment must be valid UTF-8")
        return value.strip()


class FeedbackRecord(BaseModel):
    id: Optional[str] = None
    prediction_id: str
    requester_id: Optional[str] = None
    rating: int = Field(ge=1, le=5)
    correct_label: Optional[Literal[0, 1]] = None
    comment: Optional[str] = None
    feedback_type: str = "general"
    is_resolved: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    def to_document(self) -> Dict:
        return self.model_dump(exclude={"id"})


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class PredictionPage(BaseModel):
    predictions: List[PredictionRecord]
    pagination: Pagination


class FeedbackPage(BaseModel):
    feedback: List[FeedbackRecord]
    pagination: Pagination


class PerformanceMetrics(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    accuracy: float = Field(ge=0, le=1)
    f1_score: float = Field(ge=0, le=1, alias="f1Score")
    precision: float = Field(ge=0, le=1)
    recall: float = Field(ge=0, le=1)
    auc: Optional[float] = Field(default=None, ge=0, le=1)


class FairnessMetrics(BaseModel):
    # equalized odds difference and average absolute odds difference
    eod: float = Field(default=0, ge=0, le=1)
    aaod: float = Field(default=0, ge=0, le=1)


class ConfusionMatrix(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    true_positive: int = Field(default=0, ge=0, alias="truePositive")
    true_negative: int = Field(default=0, ge=0, alias="trueNegative")
    false_positive: int = Field(default=0, ge=0, alias="falsePositive")
    false_negative: int = Field(default=0, ge=0, alias="falseNegative")


class PerformanceRequest(BaseModel):
    """Evaluation results of a model version, posted by an admin."""
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model_version: str = Field(default="v1.0", min_length=1, alias="modelVersion")
    language: Literal["ha", "yo", "ig", "pcm", "all"]
    metrics: PerformanceMetrics
    fairness_metrics: FairnessMetrics = Field(default_factory=FairnessMetrics, alias="fairnessMetrics")
    confusion_matrix: ConfusionMatrix = Field(default_factory=ConfusionMatrix, alias="confusionMatrix")
    sample_size: int = Field(ge=0, alias="sampleSize")
    evaluation_date: datetime = Field(default_factory=utcnow, alias="evaluationDate")
    notes: Optional[str] = None

    @field_validator("language", mode="before")
    @classmethod
    def _lowercase_language(cls, value):
        return value.lower() if isinstance(value, str) else value

    @field_validator("notes")
    @classmethod
    def _strip_notes(cls, value: Optional[str]) -> Optional[str]:
        return value.strip() if value is not None else None


class PerformanceRecord(PerformanceRequest):
    id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def to_document(self) -> Dict:
        return self.model_dump(exclude={"id"})
