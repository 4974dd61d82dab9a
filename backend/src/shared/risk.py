"""
Risk Estimator.
Creditworthiness score (0-1000) over worker history, plus the advance-eligibility
decision that combines it with the 7-day earnings forecast.

Scoring factors:
    - Reputation: 30% (300 points)
    - Account maturity: 15% (150 points)
    - Task history: 25% (250 points)
    - Performance metrics: 20% (200 points)
    - Dispute history: 10% (100 points)
    - Loan history: bonus/penalty (±50 points)
    - Earnings consistency: bonus/penalty (±30 points)
"""
import math
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Any, Callable, Dict, List, Optional

from .cache import TTLStore
from .config import config
from .history import build_snapshot, earning_tasks
from .logging import logger
from .models import LoanStatus, ReputationCause
from .utils import CENT, parse_timestamp, to_decimal, utc_now

MIN_ELIGIBLE_SCORE = 600
MIN_ACCOUNT_AGE_DAYS = 7
MIN_COMPLETION_RATE = 0.8

FEE_RATE_LOW_RISK = Decimal('2.0')
FEE_RATE_MEDIUM_RISK = Decimal('3.5')
FEE_RATE_HIGH_RISK = Decimal('5.0')

# Share of the 7-day forecast that may be advanced, by forecast confidence
FORECAST_ADVANCE_RATIO = {
    'high': Decimal('0.8'),
    'medium': Decimal('0.65'),
    'low': Decimal('0.5'),
}

FACTOR_DESCRIPTIONS = {
    'reputation': 'Reputation score',
    'maturity': 'Account age and experience',
    'taskHistory': 'Total tasks completed',
    'performance': 'Completion rate and ratings',
    'disputes': 'Dispute history (negative)',
    'loanHistory': 'Loan repayment history',
    'consistency': 'Earnings stability',
}


@dataclass(frozen=True)
class RiskInputs:
    reputation_score: int
    account_age_days: int
    total_tasks_completed: int
    completion_rate: float
    on_time_rate: float
    average_rating: float
    dispute_count: int
    active_loans: int
    total_loans: int
    loan_repayment_history: float
    earnings_volatility: float
    last_30_days_earnings: Decimal


def _std_dev(values: List[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


def weekly_earnings(tasks: List[Dict[str, Any]]) -> List[float]:
    """Earnings grouped by week (weeks start on Sunday)."""
    weeks = defaultdict(float)
    for task in tasks:
        completed_at = parse_timestamp(task.get('completedAt'))
        if not completed_at:
            continue
        week_start = completed_at.date() - timedelta(days=(completed_at.weekday() + 1) % 7)
        weeks[week_start] += float(to_decimal(task.get('amount')))
    return list(weeks.values())


def _repaid_on_time(loan: Dict[str, Any]) -> bool:
    repaid_at = parse_timestamp(loan.get('repaidAt'))
    due = parse_timestamp(loan.get('dueDate'))
    return loan.get('status') == LoanStatus.REPAID and repaid_at is not None and due is not None and repaid_at <= due


def collect_risk_inputs(worker_id: str, activity: Dict[str, Any], now: Optional[datetime] = None) -> RiskInputs:
    """Derive the scoring inputs from one aggregate read."""
    now = now or utc_now()
    snapshot = build_snapshot(worker_id, activity, now)
    events = activity.get('reputationEvents') or []
    loans = activity.get('loans') or []
    earned = earning_tasks(activity)

    ratings = [
        float(e['rating']) for e in events
        if e.get('cause') == ReputationCause.RATING_RECEIVED and e.get('rating') is not None
    ]
    late = sum(1 for e in events if e.get('cause') == ReputationCause.TASK_LATE)
    dispute_events = sum(1 for e in events if e.get('cause') == ReputationCause.DISPUTE)
    total_completed = snapshot.total_tasks_completed

    return RiskInputs(
        reputation_score=snapshot.reputation_score,
        account_age_days=snapshot.account_age_days,
        total_tasks_completed=total_completed,
        completion_rate=snapshot.completion_rate,
        on_time_rate=max(0.0, 1 - late / total_completed) if total_completed else 1.0,
        average_rating=sum(ratings) / len(ratings) if ratings else 0.0,
        dispute_count=max(snapshot.dispute_count, dispute_events),
        active_loans=sum(1 for loan in loans if loan.get('status') == LoanStatus.ACTIVE),
        total_loans=len(loans),
        loan_repayment_history=(sum(1 for loan in loans if _repaid_on_time(loan)) / len(loans)) if loans else 1.0,
        earnings_volatility=_std_dev(weekly_earnings(earned)),
        last_30_days_earnings=sum((to_decimal(t.get('amount')) for t in earned), Decimal('0')),
    )


def fee_rate_for(score: int) -> Decimal:
    """Advance fee in percent: 2% (800+), 3.5% (600-799), 5% otherwise."""
    if score >= 800:
        return FEE_RATE_LOW_RISK
    if score >= MIN_ELIGIBLE_SCORE:
        return FEE_RATE_MEDIUM_RISK
    return FEE_RATE_HIGH_RISK


def risk_confidence(inputs: RiskInputs) -> float:
    """More data, more confidence."""
    confidence = 0.5
    if inputs.total_tasks_completed >= 10:
        confidence += 0.1
    if inputs.account_age_days >= 30:
        confidence += 0.1
    if inputs.total_tasks_completed >= 30:
        confidence += 0.1
    if inputs.account_age_days >= 60:
        confidence += 0.1
    if inputs.total_loans > 0:
        confidence += 0.1
    return round(min(confidence, 1.0), 2)


def risk_based_advance(score: int, last_30_days_earnings: Decimal) -> Decimal:
    """50-80% of trailing 30-day earnings, scaled by score."""
    if last_30_days_earnings <= 0:
        return Decimal('0.00')
    ratio = Decimal('0.5') + Decimal(score) / Decimal(1000) * Decimal('0.3')
    return (last_30_days_earnings * ratio).quantize(CENT, rounding=ROUND_DOWN)


def calculate_risk_score(inputs: RiskInputs) -> Dict[str, Any]:
    factors = {}

    factors['reputation'] = inputs.reputation_score / 1000 * 300

    # Maturity caps at 90 days
    factors['maturity'] = min(inputs.account_age_days / 90, 1) * 150

    # Task history caps at 50 tasks
    factors['taskHistory'] = min(inputs.total_tasks_completed / 50, 1) * 250

    performance = (
        inputs.completion_rate * 0.4
        + inputs.on_time_rate * 0.4
        + (inputs.average_rating / 5) * 0.2
    )
    factors['performance'] = performance * 200

    # Each dispute costs 20 points
    factors['disputes'] = 100 - min(inputs.dispute_count * 20, 100)

    if inputs.loan_repayment_history == 1 and inputs.total_loans > 0:
        factors['loanHistory'] = 50
    elif inputs.loan_repayment_history < 0.8:
        factors['loanHistory'] = -50
    else:
        factors['loanHistory'] = 0

    if inputs.earnings_volatility < 50 and inputs.last_30_days_earnings > 100:
        factors['consistency'] = 30
    elif inputs.earnings_volatility > 150:
        factors['consistency'] = -30
    else:
        factors['consistency'] = 0

    score = max(0, min(1000, int(round(sum(factors.values())))))

    return {
        'score': score,
        'factors': {name: round(value, 2) for name, value in factors.items()},
        'feeRate': fee_rate_for(score),
        'confidence': risk_confidence(inputs),
        'riskBasedMaxAdvance': risk_based_advance(score, inputs.last_30_days_earnings),
        'activeLoans': inputs.active_loans,
        'accountAgeDays': inputs.account_age_days,
        'completionRate': round(inputs.completion_rate, 4),
        'last30DaysEarnings': inputs.last_30_days_earnings,
        'algorithmUsed': 'heuristic',
    }


def evaluate_advance_eligibility(
    risk: Dict[str, Any],
    forecast: Dict[str, Any],
    hard_cap: Decimal = None,
    min_forecast: Decimal = None,
) -> Dict[str, Any]:
    """
    Combine the risk score and the 7-day forecast into an advance decision.

    Eligible when score >= 600, no active loans, account age >= 7 days,
    completion rate >= 80% and forecast >= $50. Max advance is the smaller of
    the risk-based and forecast-based caps, hard-capped.
    """
    hard_cap = to_decimal(hard_cap if hard_cap is not None else config.ADVANCE_HARD_CAP)
    min_forecast = to_decimal(min_forecast if min_forecast is not None else config.ADVANCE_MIN_FORECAST)
    score = int(risk['score'])
    predicted = to_decimal(forecast.get('next7Days'))

    reasons = []
    if score < MIN_ELIGIBLE_SCORE:
        reasons.append(f"Risk score {score} below {MIN_ELIGIBLE_SCORE}")
    if int(risk.get('activeLoans') or 0) > 0:
        reasons.append('Worker has an active advance')
    if int(risk.get('accountAgeDays') or 0) < MIN_ACCOUNT_AGE_DAYS:
        reasons.append(f"Account younger than {MIN_ACCOUNT_AGE_DAYS} days")
    if float(risk.get('completionRate') or 0) < MIN_COMPLETION_RATE:
        reasons.append(f"Completion rate below {MIN_COMPLETION_RATE:.0%}")
    if predicted < min_forecast:
        reasons.append(f"7-day earnings forecast ${predicted} below ${min_forecast}")

    eligible = not reasons
    max_advance = Decimal('0.00')
    if eligible:
        risk_cap = to_decimal(risk.get('riskBasedMaxAdvance'))
        ratio = FORECAST_ADVANCE_RATIO.get(forecast.get('confidence'), FORECAST_ADVANCE_RATIO['low'])
        forecast_cap = (predicted * ratio).quantize(CENT, rounding=ROUND_DOWN)
        max_advance = max(Decimal('0.00'), min(risk_cap, forecast_cap, hard_cap))

    return {
        'eligible': eligible,
        'reasons': reasons,
        'maxAdvance': max_advance,
        'feeRate': fee_rate_for(score),
        'riskScore': score,
        'forecast7Days': predicted,
    }


def format_risk_breakdown(risk: Dict[str, Any]) -> Dict[str, Any]:
    """Human-readable grade and factor list."""
    score = risk['score']
    if score >= 800:
        grade = 'Excellent'
    elif score >= 700:
        grade = 'Very Good'
    elif score >= 600:
        grade = 'Good'
    elif score >= 500:
        grade = 'Fair'
    else:
        grade = 'Poor'

    return {
        'score': score,
        'grade': grade,
        'factors': [
            {'name': name, 'value': int(round(value)), 'description': FACTOR_DESCRIPTIONS.get(name, name)}
            for name, value in risk.get('factors', {}).items()
        ],
    }


class RiskEstimator:
    """Risk scores per worker, cached for a few minutes."""

    def __init__(self, aggregator, cache: Optional[TTLStore] = None, clock: Callable[[], datetime] = utc_now):
        self.aggregator = aggregator
        self.cache = cache if cache is not None else TTLStore(config.RISK_CACHE_TTL_SECONDS)
        self.clock = clock

    def score(self, worker_id: str, refresh: bool = False) -> Dict[str, Any]:
        key = f"risk:{worker_id}:{self.aggregator.version(worker_id)}"
        if not refresh:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        now = self.clock()
        inputs = collect_risk_inputs(worker_id, self.aggregator.activity(worker_id, refresh=refresh), now)
        result = calculate_risk_score(inputs)
        result['workerId'] = worker_id
        result['inputs'] = {
            k: (float(v) if isinstance(v, Decimal) else v) for k, v in asdict(inputs).items()
        }
        result['calculatedAt'] = now.isoformat()
        self.cache.set(key, result)
        logger.info(f"Risk score for worker {worker_id}: {result['score']} (fee {result['feeRate']}%)")
        return result

    def invalidate(self, worker_id: str) -> None:
        self.cache.delete_prefix(f"risk:{worker_id}:")
