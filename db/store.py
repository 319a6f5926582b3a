"""
Persistence of prediction and feedback records in MongoDB.
"""
import logging
import math
from typing import Dict, List, Optional

from bson import ObjectId
from bson.errors import BSONError
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from db.engine import collection_name, get_mongo_collection
from db.models import (
    AttachedFeedback,
    FeedbackPage,
    FeedbackRecord,
    Pagination,
    PerformanceRecord,
    PredictionPage,
    PredictionRecord,
    REVIEW_CONFIDENCE,
)
from inference.errors import PersistenceError

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]

GENUINE_BIAS = {"outcome.bias_scores.status": "genuine"}

# encoding problems surface from the driver before anything reaches the server
STORE_ERRORS = (PyMongoError, BSONError, UnicodeEncodeError)


def page_bounds(page: int, limit: int):
    page = max(int(page), 1)
    limit = min(max(int(limit), 1), MAX_PAGE_SIZE)
    return page, limit, (page - 1) * limit


def pagination(page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit))


def _object_id(record_id: str) -> Optional[ObjectId]:
    if not isinstance(record_id, str) or not ObjectId.is_valid(record_id):
        return None
    return ObjectId(record_id)


def _with_id(doc: Dict) -> Dict:
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


def _genuine_only(field: str) -> Dict:
    # $avg skips nulls, so placeholder bias never enters an average
    return {"$cond": [{"$eq": ["$outcome.bias_scores.status", "genuine"]}, field, None]}


class RecordStore:
    """Storage boundary used by the orchestrator."""

    def create_prediction(self, record: PredictionRecord) -> str:
        raise NotImplementedError

    def find_prediction(self, record_id: str) -> Optional[PredictionRecord]:
        raise NotImplementedError

    def find_predictions_by_owner(self, owner_id: str, page: int = 1,
                                  limit: int = DEFAULT_PAGE_SIZE) -> PredictionPage:
        raise NotImplementedError

    def attach_feedback(self, prediction_id: str, feedback: AttachedFeedback) -> bool:
        raise NotImplementedError

    def create_feedback(self, record: FeedbackRecord) -> str:
        raise NotImplementedError


class MongoRecordStore(RecordStore):

    def __init__(self, predictions, feedback, performance):
        self.predictions = predictions
        self.feedback = feedback
        self.performance = performance

    @classmethod
    def from_env(cls) -> "MongoRecordStore":
        return cls(
            predictions=get_mongo_collection(collection_name("predictions")),
            feedback=get_mongo_collection(collection_name("feedback")),
            performance=get_mongo_collection(collection_name("performance")),
        )

    def ensure_indexes(self):
        self.predictions.create_index([("requester_id", ASCENDING), ("created_at", DESCENDING)])
        self.predictions.create_index([("language", ASCENDING)])
        self.predictions.create_index([("outcome.label", ASCENDING)])
        self.predictions.create_index([("created_at", DESCENDING)])
        self.feedback.create_index([("prediction_id", ASCENDING)])
        self.feedback.create_index([("created_at", DESCENDING)])
        self.performance.create_index([("model_version", ASCENDING), ("language", ASCENDING)])
        self.performance.create_index([("evaluation_date", DESCENDING)])

    # -------------------------------------------------------
    # Predictions
    # -------------------------------------------------------
    def create_prediction(self, record: PredictionRecord) -> str:
        try:
            result = self.predictions.insert_one(record.to_document())
        except STORE_ERRORS as e:
            logger.error(f"Failed to store prediction: {e}")
            raise PersistenceError()
        return str(result.inserted_id)

    def find_prediction(self, record_id: str) -> Optional[PredictionRecord]:
        oid = _object_id(record_id)
        if oid is None:
            return None
        doc = self.predictions.find_one({"_id": oid})
        if doc is None:
            return None
        return PredictionRecord.model_validate(_with_id(doc))

    def find_predictions_by_owner(self, owner_id: str, page: int = 1,
                                  limit: int = DEFAULT_PAGE_SIZE) -> PredictionPage:
        page, limit, skip = page_bounds(page, limit)
        query = {"requester_id": owner_id}
        cursor = self.predictions.find(query).sort(NEWEST_FIRST).skip(skip).limit(limit)
        records = [PredictionRecord.model_validate(_with_id(doc)) for doc in cursor]
        total = self.predictions.count_documents(query)
        return PredictionPage(predictions=records, pagination=pagination(page, limit, total))

    def attach_feedback(self, prediction_id: str, feedback: AttachedFeedback) -> bool:
        oid = _object_id(prediction_id)
        if oid is None:
            return False
        # only the feedback field is touched, last write wins
        result = self.predictions.update_one({"_id": oid}, {"$set": {"feedback": feedback.model_dump()}})
        return result.matched_count > 0

    # -------------------------------------------------------
    # Feedback
    # -------------------------------------------------------
    def create_feedback(self, record: FeedbackRecord) -> str:
        try:
            result = self.feedback.insert_one(record.to_document())
        except STORE_ERRORS as e:
            logger.error(f"Failed to store feedback: {e}")
            raise PersistenceError("Failed to submit feedback")
        return str(result.inserted_id)

    def list_feedback(self, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> FeedbackPage:
        page, limit, skip = page_bounds(page, limit)
        cursor = self.feedback.find({}).sort(NEWEST_FIRST).skip(skip).limit(limit)
        records = [FeedbackRecord.model_validate(_with_id(doc)) for doc in cursor]
        total = self.feedback.count_documents({})
        return FeedbackPage(feedback=records, pagination=pagination(page, limit, total))

    def feedback_for_prediction(self, prediction_id: str) -> List[FeedbackRecord]:
        cursor = self.feedback.find({"prediction_id": prediction_id}).sort(NEWEST_FIRST)
        return [FeedbackRecord.model_validate(_with_id(doc)) for doc in cursor]

    # -------------------------------------------------------
    # Statistics (read side)
    # -------------------------------------------------------
    def overview(self) -> Dict:
        language_stats = self.predictions.aggregate([
            {"$group": {
                "_id": "$language",
                "count": {"$sum": 1},
                "avgConfidence": {"$avg": "$outcome.confidence"},
            }},
            {"$sort": {"_id": 1}},
        ])
        return {
            "totalPredictions": self.predictions.count_documents({}),
            "totalFeedback": self.feedback.count_documents({}),
            "languageStats": list(language_stats),
        }

    def prediction_stats(self) -> List[Dict]:
        return list(self.predictions.aggregate([
            {"$group": {
                "_id": {"language": "$language", "label": "$outcome.label"},
                "count": {"$sum": 1},
                "avgConfidence": {"$avg": "$outcome.confidence"},
                "avgBias": {"$avg": _genuine_only("$outcome.bias_scores.overall")},
            }},
            {"$sort": {"_id.language": 1, "_id.label": 1}},
        ]))

    def bias_stats(self) -> List[Dict]:
        return list(self.predictions.aggregate([
            {"$match": GENUINE_BIAS},
            {"$group": {
                "_id": "$language",
                "avgGenderBias": {"$avg": "$outcome.bias_scores.gender"},
                "avgEthnicBias": {"$avg": "$outcome.bias_scores.ethnic"},
                "avgReligiousBias": {"$avg": "$outcome.bias_scores.religious"},
                "avgOverallBias": {"$avg": "$outcome.bias_scores.overall"},
                "count": {"$sum": 1},
            }},
            {"$sort": {"_id": 1}},
        ]))

    def recent(self, limit: int = 10) -> List[Dict]:
        limit = min(max(int(limit), 1), MAX_PAGE_SIZE)
        projection = {"language": 1, "outcome.label": 1, "outcome.confidence": 1, "created_at": 1}
        cursor = self.predictions.find({}, projection).sort(NEWEST_FIRST).limit(limit)
        return [_with_id(doc) for doc in cursor]

    # -------------------------------------------------------
    # Admin
    # -------------------------------------------------------
    def dashboard(self, low_confidence_limit: int = 10) -> Dict:
        by_language = self.predictions.aggregate([
            {"$group": {"_id": "$language", "count": {"$sum": 1}}},
            {"$sort": {"_id": 1}},
        ])
        cursor = self.predictions.find({"outcome.confidence": {"$lt": REVIEW_CONFIDENCE}}) \
            .sort(NEWEST_FIRST).limit(low_confidence_limit)
        return {
            "totalPredictions": self.predictions.count_documents({}),
            "predictionsByLanguage": list(by_language),
            "lowConfidencePredictions": [PredictionRecord.model_validate(_with_id(doc)) for doc in cursor],
        }

    def create_performance(self, record: PerformanceRecord) -> str:
        try:
            result = self.performance.insert_one(record.to_document())
        except STORE_ERRORS as e:
            logger.error(f"Failed to store performance metrics: {e}")
            raise PersistenceError("Failed to add performance metrics")
        return str(result.inserted_id)

    def list_performance(self, limit: int = 50) -> List[PerformanceRecord]:
        cursor = self.performance.find({}).sort([("evaluation_date", DESCENDING), ("_id", DESCENDING)]).limit(limit)
        return [PerformanceRecord.model_validate(_with_id(doc)) for doc in cursor]
