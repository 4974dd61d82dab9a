"""
Verification Scoring Engine.

Three stages, cheapest first:
    1. Fast-path validation (structural, hard failures reject immediately)
    2. Fraud pattern detection
    3. Confidence scoring (heuristic, or an external model that degrades to the heuristic)
The verdict is resolved from the three outputs.
"""
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from .ai_services import extract_confidence, invoke_sagemaker_endpoint
from .config import config
from .exceptions import ScorerUnavailableError
from .fraud_detection import FraudDetector
from .logging import logger
from .models import RiskLevel, ScoringMethod, Verdict
from .utils import utc_now

# Fast-path bounds
MAX_FUTURE_SKEW = timedelta(minutes=5)
MAX_COMPLETION_AGE = timedelta(hours=24)
MIN_AMOUNT = Decimal('0.01')
MAX_AMOUNT = Decimal('1000')
MIN_DURATION_MINUTES = 1
MAX_DURATION_MINUTES = 480

# Verdict thresholds
REJECT_BELOW_CONFIDENCE = 50
AUTO_APPROVE_CONFIDENCE = 90
AUTO_APPROVE_MAX_AMOUNT = Decimal('200')
FLAG_CONFIDENCE = 70

# Heuristic scorer
BASE_CONFIDENCE = 50
MAX_POSITIVE = 85
MAX_NEGATIVE = -120

# Stage budgets (milliseconds)
FAST_PATH_BUDGET_MS = 50
FRAUD_BUDGET_MS = 100
SCORING_BUDGET_MS = 300
TOTAL_BUDGET_MS = 500


@dataclass(frozen=True)
class ScoreResult:
    confidence: int
    method: str
    signals: Tuple[str, ...] = field(default_factory=tuple)


def check_fast_path(task, now: Optional[datetime] = None) -> List[str]:
    """
    Structural checks only. Returns the list of failures (empty = passed).
    """
    now = now or utc_now()
    errors = []

    if not task.worker_id:
        errors.append('workerId is required')
    if not task.task_ref:
        errors.append('taskId or externalTaskId is required')
    if not task.platform_id:
        errors.append('platformId is required')

    if task.completed_at > now + MAX_FUTURE_SKEW:
        errors.append('completedAt is more than 5 minutes in the future')
    elif task.completed_at < now - MAX_COMPLETION_AGE:
        errors.append('completedAt is more than 24 hours in the past')

    if task.amount < MIN_AMOUNT or task.amount > MAX_AMOUNT:
        errors.append(f"amount {task.amount} outside [{MIN_AMOUNT}, {MAX_AMOUNT}]")

    duration = task.completion_proof.duration
    if duration is not None and not MIN_DURATION_MINUTES <= duration <= MAX_DURATION_MINUTES:
        errors.append(f"duration {duration} outside [{MIN_DURATION_MINUTES}, {MAX_DURATION_MINUTES}] minutes")

    gps = task.completion_proof.gps_coordinates
    if gps is not None:
        if not -90 <= gps.lat <= 90:
            errors.append(f"latitude {gps.lat} out of range")
        if not -180 <= gps.lng <= 180:
            errors.append(f"longitude {gps.lng} out of range")

    return errors


class HeuristicScorer:
    """Explainable rule-based confidence. Always available."""

    method = ScoringMethod.HEURISTIC

    def score(self, task, history) -> ScoreResult:
        positives = []
        negatives = []

        # Reputation
        if history.reputation_score >= 800:
            positives.append((30, f"high reputation {history.reputation_score}"))
        elif history.reputation_score >= 600:
            positives.append((20, f"good reputation {history.reputation_score}"))
        elif history.reputation_score >= 400:
            positives.append((10, f"fair reputation {history.reputation_score}"))

        # Completion rate
        if history.completion_rate >= 0.95:
            positives.append((15, f"completion rate {history.completion_rate:.0%}"))
        elif history.completion_rate >= 0.85:
            positives.append((10, f"completion rate {history.completion_rate:.0%}"))
        elif history.completion_rate >= 0.75:
            positives.append((5, f"completion rate {history.completion_rate:.0%}"))

        # Disputes
        if history.dispute_count == 0 and history.total_tasks_completed > 10:
            positives.append((5, 'no disputes'))
        elif history.dispute_count > 5:
            negatives.append((-30, f"{history.dispute_count} disputes"))
        elif history.dispute_count > 2:
            negatives.append((-20, f"{history.dispute_count} disputes"))
        elif history.dispute_count > 0:
            negatives.append((-10, f"{history.dispute_count} disputes"))

        # Task value
        amount = float(task.amount)
        if amount < 50:
            positives.append((5, 'low-value task'))
        if history.average_task_amount > 0 and amount > history.average_task_amount * 2:
            negatives.append((-15, f"amount {amount:.2f} above 2x average {history.average_task_amount:.2f}"))

        # Evidence
        proof = task.completion_proof
        if proof.photo_count >= 2:
            positives.append((10, f"{proof.photo_count} photos attached"))
        elif proof.photo_count == 1:
            positives.append((5, 'photo attached'))
        if proof.gps_coordinates is not None:
            positives.append((5, 'GPS present'))

        # Duration
        if proof.duration is not None:
            if proof.duration < 5:
                negatives.append((-20, f"completed in {proof.duration:g} minutes"))
            elif 10 <= proof.duration <= 240:
                positives.append((5, 'plausible duration'))

        if task.rating is not None and task.rating >= 4:
            positives.append((5, f"rated {task.rating}/5"))

        # Account maturity
        if history.account_age_days < 3:
            negatives.append((-15, f"account {history.account_age_days} days old"))
        elif history.account_age_days < 7:
            negatives.append((-10, f"account {history.account_age_days} days old"))
        if history.total_tasks_completed < 5 and amount > 100:
            negatives.append((-20, f"{history.total_tasks_completed} prior tasks with amount {amount:.2f}"))
        if history.account_age_days < 7 and amount > 100:
            negatives.append((-20, 'young account with high-value task'))

        positive = min(MAX_POSITIVE, sum(points for points, _ in positives))
        negative = max(MAX_NEGATIVE, sum(points for points, _ in negatives))
        confidence = max(0, min(100, BASE_CONFIDENCE + positive + negative))

        signals = tuple(
            [f"+{points} {label}" for points, label in positives]
            + [f"{points} {label}" for points, label in negatives]
        )
        return ScoreResult(confidence=int(confidence), method=self.method, signals=signals)


class ExternalModelScorer:
    """
    Confidence from a hosted model. Any failure, timeout or unreadable output
    falls back to the heuristic for that task.
    """

    method = ScoringMethod.EXTERNAL_MODEL

    def __init__(
        self,
        endpoint_name: str = None,
        fallback: Optional[HeuristicScorer] = None,
        invoke: Callable[..., Any] = invoke_sagemaker_endpoint,
    ):
        self.endpoint_name = endpoint_name if endpoint_name is not None else config.SAGEMAKER_ENDPOINT_NAME
        self.fallback = fallback or HeuristicScorer()
        self.invoke = invoke

    @staticmethod
    def features(task, history) -> Dict[str, Any]:
        proof = task.completion_proof
        return {
            'amount': float(task.amount),
            'duration': proof.duration,
            'photoCount': proof.photo_count,
            'hasGps': proof.gps_coordinates is not None,
            'rating': task.rating,
            'hour': task.completed_at.hour,
            **history.to_dict(),
        }

    def score(self, task, history) -> ScoreResult:
        try:
            result = self.invoke(self.features(task, history), endpoint_name=self.endpoint_name)
            confidence = extract_confidence(result)
            if confidence is None:
                raise ScorerUnavailableError(f"No confidence in model response: {result}")
        except ScorerUnavailableError as e:
            logger.warning(f"External scorer unavailable, using heuristic: {e.message}")
            return self.fallback.score(task, history)
        except Exception as e:
            logger.warning(f"External scorer failed, using heuristic: {e}")
            return self.fallback.score(task, history)

        confidence = int(round(max(0.0, min(100.0, confidence))))
        return ScoreResult(confidence=confidence, method=self.method, signals=('model',))


def default_scorer():
    """External model when an endpoint is configured, heuristic otherwise."""
    if config.SAGEMAKER_ENDPOINT_NAME:
        return ExternalModelScorer()
    return HeuristicScorer()


def resolve_verdict(confidence: int, risk_level: str, amount: Decimal, fast_path_passed: bool = True) -> str:
    """First matching rule wins."""
    if not fast_path_passed:
        return Verdict.REJECT
    if risk_level == RiskLevel.HIGH or confidence < REJECT_BELOW_CONFIDENCE:
        return Verdict.REJECT
    if confidence >= AUTO_APPROVE_CONFIDENCE and risk_level == RiskLevel.LOW and amount <= AUTO_APPROVE_MAX_AMOUNT:
        return Verdict.APPROVE
    if confidence >= FLAG_CONFIDENCE:
        return Verdict.FLAG
    return Verdict.REJECT


def describe_verdict(verdict: str, confidence: int, fraud: Optional[dict], fast_path_errors: List[str]) -> str:
    if fast_path_errors:
        return f"Validation failed: {'; '.join(fast_path_errors)}"
    if fraud and FraudDetector.should_reject(fraud):
        return FraudDetector.get_rejection_reason(fraud)
    if verdict == Verdict.APPROVE:
        return f"Auto-approved with {confidence}% confidence"
    if verdict == Verdict.FLAG:
        return f"Queued for manual review ({confidence}% confidence, {fraud['risk_level']} risk)"
    return f"Confidence {confidence}% below approval threshold"


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


class VerificationEngine:
    """Runs the three stages for one task and returns the VerificationResult record."""

    def __init__(self, scorer=None, clock: Callable[[], datetime] = utc_now):
        self.scorer = scorer or default_scorer()
        self.clock = clock

    def verify(self, task, history) -> Dict[str, Any]:
        started = time.perf_counter()
        now = self.clock()
        timings = {}

        stage = time.perf_counter()
        fast_path_errors = check_fast_path(task, now)
        timings['fastPathMs'] = _elapsed_ms(stage)

        fraud = None
        score = None
        if not fast_path_errors:
            stage = time.perf_counter()
            fraud = FraudDetector.check_task(task, history)
            timings['fraudMs'] = _elapsed_ms(stage)

            stage = time.perf_counter()
            score = self.scorer.score(task, history)
            timings['scoringMs'] = _elapsed_ms(stage)

        confidence = score.confidence if score else 0
        risk_level = fraud['risk_level'] if fraud else RiskLevel.HIGH
        verdict = resolve_verdict(confidence, risk_level, task.amount, fast_path_passed=not fast_path_errors)
        latency_ms = _elapsed_ms(started)
        timings['totalMs'] = latency_ms
        self._check_budgets(task.task_ref, timings)

        result = {
            'verificationId': str(uuid.uuid4()),
            'taskId': task.task_ref,
            'workerId': task.worker_id,
            'platformId': task.platform_id,
            'verdict': verdict,
            'confidence': confidence,
            'riskScore': fraud['score'] if fraud else None,
            'riskLevel': fraud['risk_level'] if fraud else None,
            'suspicious': fraud['suspicious'] if fraud else False,
            'patterns': [{'name': p['name'], 'severity': p['severity']} for p in fraud['patterns']] if fraud else [],
            'fastPathErrors': fast_path_errors,
            'method': score.method if score else ScoringMethod.HEURISTIC,
            'signals': list(score.signals) if score else [],
            'reason': describe_verdict(verdict, confidence, fraud, fast_path_errors),
            'latencyMs': latency_ms,
            'timings': timings,
            'createdAt': now.isoformat(),
        }
        logger.info(
            f"Task {task.task_ref} verified: {verdict} confidence={confidence} "
            f"risk={result['riskLevel']} method={result['method']} in {latency_ms:.1f}ms"
        )
        return result

    @staticmethod
    def _check_budgets(task_ref: str, timings: Dict[str, float]) -> None:
        budgets = (
            ('fastPathMs', FAST_PATH_BUDGET_MS),
            ('fraudMs', FRAUD_BUDGET_MS),
            ('scoringMs', SCORING_BUDGET_MS),
            ('totalMs', TOTAL_BUDGET_MS),
        )
        for name, budget in budgets:
            if timings.get(name, 0) > budget:
                logger.warning(f"Verification of {task_ref} exceeded {name} budget: {timings[name]:.1f}ms > {budget}ms")


def verification_stats(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Summary over a batch of verification results."""
    total = len(results)
    if not total:
        return {
            'total': 0,
            'autoApprovalRate': 0.0,
            'averageLatencyMs': 0.0,
            'verdicts': {Verdict.APPROVE: 0, Verdict.FLAG: 0, Verdict.REJECT: 0},
            'fraudDetectionRate': 0.0,
        }

    verdicts = Counter(r['verdict'] for r in results)
    return {
        'total': total,
        'autoApprovalRate': round(verdicts[Verdict.APPROVE] / total, 4),
        'averageLatencyMs': round(sum(float(r.get('latencyMs') or 0) for r in results) / total, 3),
        'verdicts': {v: verdicts[v] for v in (Verdict.APPROVE, Verdict.FLAG, Verdict.REJECT)},
        'fraudDetectionRate': round(sum(1 for r in results if r.get('patterns')) / total, 4),
    }
