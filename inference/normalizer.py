"""
Normalization of backend responses into a PredictionOutcome.

Each backend variant has its own normalizer. When a backend does not supply an
explanation or bias scores, placeholders are synthesized and tagged
``synthesized`` so they can never be mistaken for measured values.
"""
import logging
from typing import Dict, List, Optional

from pydantic import ValidationError

from db.models import (
    BiasScores,
    Explanation,
    ExplanationMethod,
    ExplanationStatus,
    PredictionOutcome,
    PROBABILITY_TOLERANCE,
)
from inference.errors import BackendError

logger = logging.getLogger(__name__)

FALLBACK_TOKEN_LIMIT = 50
SYNTHESIZED_BIAS_SCORE = 0.0

BIAS_CATEGORIES = ("gender", "ethnic", "religious", "overall")

# Label vocabulary of the dedicated ML service
ML_SERVICE_LABELS = {
    0: 0,
    1: 1,
    "0": 0,
    "1": 1,
    "human": 0,
    "Human-written": 0,
    "ai": 1,
    "AI-generated": 1,
    "machine": 1,
}


def probabilities_for(label: int, confidence: float) -> List[float]:
    """Probability pair where index ``label`` holds ``confidence``."""
    probabilities = [0.0, 0.0]
    probabilities[label] = confidence
    probabilities[1 - label] = 1 - confidence
    return probabilities


def synthesize_explanation(text: str) -> Explanation:
    tokens = text.split()[:FALLBACK_TOKEN_LIMIT]
    importance = 1.0 / len(tokens) if tokens else 0.0
    return Explanation(
        tokens=tokens,
        importances=[importance] * len(tokens),
        method=ExplanationMethod.FALLBACK,
        status=ExplanationStatus.SYNTHESIZED,
    )


def synthesize_bias() -> BiasScores:
    return BiasScores(
        gender=SYNTHESIZED_BIAS_SCORE,
        ethnic=SYNTHESIZED_BIAS_SCORE,
        religious=SYNTHESIZED_BIAS_SCORE,
        overall=SYNTHESIZED_BIAS_SCORE,
        status=ExplanationStatus.SYNTHESIZED,
    )


def _malformed(source: str, payload, reason: str) -> BackendError:
    logger.error(f"Malformed response from {source}: {reason}")
    return BackendError(backend_status=None, raw_body=f"{reason}: {str(payload)[:1000]}")


def _as_probability(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    if not 0.0 <= value <= 1.0:
        return None
    return value


class ResponseNormalizer:
    """Maps one backend's raw payload to a PredictionOutcome."""

    source = None

    def normalize(self, payload, text: str) -> PredictionOutcome:
        raise NotImplementedError

    def build_outcome(self, label: int, confidence: float, explanation: Explanation,
                      bias_scores: BiasScores, payload) -> PredictionOutcome:
        try:
            return PredictionOutcome(
                label=label,
                confidence=confidence,
                probabilities=probabilities_for(label, confidence),
                explanation=explanation,
                bias_scores=bias_scores,
            )
        except ValidationError as e:
            raise _malformed(self.source, payload, str(e))


class MLServiceNormalizer(ResponseNormalizer):
    """
    Dedicated inference service. Expected payload::

        {"prediction": {"label": 1, "confidence": 0.93, "probabilities": [0.07, 0.93]},
         "explanation": {"tokens": [...], "importances": [...], "method": "lime"},
         "biasScore": {"gender": 0.1, "ethnic": 0.0, "religious": 0.05, "overall": 0.2},
         "language_name": "Hausa", "model_version": "afro-xlmr-v2"}

    Labels are mapped through ``ML_SERVICE_LABELS``. Missing or malformed
    explanation and bias sections are synthesized independently of each other.
    """

    source = "ml-service"

    def normalize(self, payload, text: str) -> PredictionOutcome:
        if not isinstance(payload, dict) or not isinstance(payload.get("prediction"), dict):
            raise _malformed(self.source, payload, "missing prediction")
        prediction = payload["prediction"]

        raw_label = prediction.get("label")
        if isinstance(raw_label, bool) or not isinstance(raw_label, (int, str)) or \
                raw_label not in ML_SERVICE_LABELS:
            raise _malformed(self.source, payload, f"unknown label {raw_label!r}")
        label = ML_SERVICE_LABELS[raw_label]

        confidence = _as_probability(prediction.get("confidence"))
        if confidence is None:
            raise _malformed(self.source, payload, f"invalid confidence {prediction.get('confidence')!r}")

        self._check_probabilities(prediction.get("probabilities"), label, confidence)

        explanation = self._explanation(payload.get("explanation"), text)
        bias_scores = self._bias(payload.get("biasScore") or payload.get("bias_scores"))
        return self.build_outcome(label, confidence, explanation, bias_scores, payload)

    def _check_probabilities(self, supplied, label: int, confidence: float):
        # The canonical pair is always derived from label and confidence
        if not isinstance(supplied, list) or len(supplied) != 2:
            return
        expected = probabilities_for(label, confidence)
        try:
            consistent = all(abs(float(a) - b) <= PROBABILITY_TOLERANCE for a, b in zip(supplied, expected))
        except (TypeError, ValueError):
            consistent = False
        if not consistent:
            logger.warning(
                f"{self.source} probabilities {supplied} disagree with label={label}, "
                f"confidence={confidence}; using {expected}")

    def _explanation(self, raw, text: str) -> Explanation:
        if not isinstance(raw, dict):
            logger.info(f"{self.source} returned no explanation, synthesizing fallback")
            return synthesize_explanation(text)
        tokens = raw.get("tokens")
        importances = raw.get("importances")
        if not isinstance(tokens, list) or not isinstance(importances, list) or \
                len(tokens) != len(importances) or not tokens:
            logger.warning(f"{self.source} returned an unusable explanation, synthesizing fallback")
            return synthesize_explanation(text)
        try:
            return Explanation(
                tokens=[str(token) for token in tokens],
                importances=importances,
                method=self._method(raw.get("method")),
                status=ExplanationStatus.GENUINE,
            )
        except ValidationError as e:
            logger.warning(f"{self.source} explanation rejected ({e}), synthesizing fallback")
            return synthesize_explanation(text)

    @staticmethod
    def _method(raw) -> ExplanationMethod:
        try:
            method = ExplanationMethod(str(raw).lower())
        except ValueError:
            return ExplanationMethod.ML_SERVICE
        # a backend cannot claim the local fallback method
        if method == ExplanationMethod.FALLBACK:
            return ExplanationMethod.ML_SERVICE
        return method

    def _bias(self, raw) -> BiasScores:
        if not isinstance(raw, dict):
            logger.info(f"{self.source} returned no bias scores, synthesizing placeholders")
            return synthesize_bias()
        scores = {}
        for category in BIAS_CATEGORIES:
            # older service builds use genderBias, ethnicBias, ...
            value = raw.get(category, raw.get(f"{category}Bias"))
            scores[category] = _as_probability(value)
        if any(value is None for value in scores.values()):
            logger.warning(f"{self.source} returned incomplete bias scores {raw}, synthesizing placeholders")
            return synthesize_bias()
        return BiasScores(status=ExplanationStatus.GENUINE, **scores)


class HuggingFaceNormalizer(ResponseNormalizer):
    """
    Generic hosted text-classification endpoint. Payload is a list of label
    scores, optionally nested one level per input::

        [[{"label": "LABEL_0", "score": 0.12}, {"label": "LABEL_1", "score": 0.88}]]

    Labels are mapped by name through an explicit label map, never by position.
    Explanation and bias scores are always synthesized.
    """

    source = "huggingface"

    def __init__(self, label_map: Dict[str, int]):
        self.label_map = label_map

    def normalize(self, payload, text: str) -> PredictionOutcome:
        if isinstance(payload, dict) and "error" in payload:
            raise _malformed(self.source, payload, f"endpoint error {payload['error']!r}")
        if isinstance(payload, list) and payload and isinstance(payload[0], list):
            payload = payload[0]
        if not isinstance(payload, list) or not payload:
            raise _malformed(self.source, payload, "expected a list of label scores")

        scores = {}
        for item in payload:
            if not isinstance(item, dict) or "label" not in item:
                raise _malformed(self.source, payload, f"invalid label score {item!r}")
            name = item["label"]
            if not isinstance(name, str) or name not in self.label_map:
                raise _malformed(self.source, payload, f"label {name!r} missing from label map")
            score = _as_probability(item.get("score"))
            if score is None:
                raise _malformed(self.source, payload, f"invalid score for {name!r}")
            target = self.label_map[name]
            if target in scores:
                raise _malformed(self.source, payload, f"class {target} scored more than once")
            scores[target] = score

        if len(scores) == 1:
            (only_label, only_score), = scores.items()
            scores[1 - only_label] = 1.0 - only_score
        total = scores[0] + scores[1]
        if total <= 0:
            raise _malformed(self.source, payload, "scores sum to zero")

        label = 1 if scores[1] > scores[0] else 0
        confidence = scores[label] / total
        return self.build_outcome(label, confidence, synthesize_explanation(text), synthesize_bias(), payload)
