"""
Fraud Detection Module.
Detects suspicious completion patterns such as velocity spikes and location farming.
Stateless: works only on the validated task and an already-fetched worker history.
"""
import time
from decimal import Decimal

from .models import RiskLevel

# Fraud thresholds
VELOCITY_MAX_TASKS_24H = 50           # More than this in 24h = velocity pattern
AMOUNT_SPIKE_RATIO = 3                # Amount above 3x trailing average
LOCATION_FARMING_MIN_MATCHES = 10     # More than 10 recent tasks at one spot
LOCATION_MATCH_DEGREES = 0.001        # ~100m at the equator
OFF_HOURS_START = 2                   # 02:00 local
OFF_HOURS_END = 5                     # 05:00 local (exclusive)
NEW_ACCOUNT_DAYS = 7
NEW_ACCOUNT_HIGH_VALUE = Decimal('100')
LOW_REPUTATION = 500
REPUTATION_DISPUTES_MIN = 2           # More than 2 disputes
LOW_COMPLETION_RATE = 0.8
DURATION_ANOMALY_RATIO = 0.3          # Below 30% of historical average

MAX_RISK_SCORE = 100
MEDIUM_RISK_THRESHOLD = 25
HIGH_RISK_THRESHOLD = 50

# Patterns that on their own put a task in the high-risk band
CRITICAL_PATTERNS = frozenset({'velocity'})

PATTERN_POINTS = {
    'velocity': 30,
    'amount_spike': 25,
    'location_farming': 25,
    'off_hours': 10,
    'new_account_high_value': 20,
    'reputation_disputes': 20,
    'low_completion': 15,
    'duration_anomaly': 15,
}


def risk_level_for(score: int, critical: bool = False) -> str:
    """Low (<25), medium (25-49), high (>=50 or any critical pattern)."""
    if critical or score >= HIGH_RISK_THRESHOLD:
        return RiskLevel.HIGH
    if score >= MEDIUM_RISK_THRESHOLD:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class FraudDetector:
    """Detects fraudulent task completions. Patterns are independent and additive."""

    @staticmethod
    def check_task(task, history) -> dict:
        """
        Run all pattern checks on a task completion.

        Args:
            task: Validated TaskCompletion
            history: WorkerHistorySnapshot for the task's worker

        Returns:
            dict: {
                'score': int (0-100),
                'risk_level': 'low' | 'medium' | 'high',
                'suspicious': bool,
                'patterns': list of {'name', 'severity', 'detail'},
                'duration_ms': float
            }
        """
        started = time.perf_counter()
        checks = (
            ('velocity', FraudDetector.check_velocity(history)),
            ('amount_spike', FraudDetector.check_amount_spike(task, history)),
            ('location_farming', FraudDetector.check_location_farming(task, history)),
            ('off_hours', FraudDetector.check_off_hours(task)),
            ('new_account_high_value', FraudDetector.check_new_account_high_value(task, history)),
            ('reputation_disputes', FraudDetector.check_reputation_disputes(history)),
            ('low_completion', FraudDetector.check_low_completion(history)),
            ('duration_anomaly', FraudDetector.check_duration_anomaly(task, history)),
        )

        patterns = []
        for name, result in checks:
            if result['detected']:
                patterns.append({
                    'name': name,
                    'severity': PATTERN_POINTS[name],
                    'detail': result['detail'],
                })

        score = min(MAX_RISK_SCORE, sum(p['severity'] for p in patterns))
        level = risk_level_for(score, critical=any(p['name'] in CRITICAL_PATTERNS for p in patterns))

        return {
            'score': score,
            'risk_level': level,
            'suspicious': level == RiskLevel.HIGH or (level == RiskLevel.MEDIUM and len(patterns) >= 2),
            'patterns': patterns,
            'duration_ms': (time.perf_counter() - started) * 1000,
        }

    @staticmethod
    def check_velocity(history) -> dict:
        count = history.tasks_last_24h
        return {
            'detected': count > VELOCITY_MAX_TASKS_24H,
            'detail': f"{count} tasks completed in trailing 24h",
        }

    @staticmethod
    def check_amount_spike(task, history) -> dict:
        average = history.average_task_amount
        if average <= 0:
            return {'detected': False, 'detail': 'No trailing average'}
        ratio = float(task.amount) / average
        return {
            'detected': ratio > AMOUNT_SPIKE_RATIO,
            'detail': f"Amount ${task.amount} is {ratio:.1f}x the trailing average ${average:.2f}",
        }

    @staticmethod
    def check_location_farming(task, history) -> dict:
        gps = task.completion_proof.gps_coordinates
        if gps is None:
            return {'detected': False, 'detail': 'No GPS provided'}
        matches = sum(
            1 for t in history.recent_tasks
            if t.has_gps
            and abs(t.lat - gps.lat) < LOCATION_MATCH_DEGREES
            and abs(t.lng - gps.lng) < LOCATION_MATCH_DEGREES
        )
        return {
            'detected': matches > LOCATION_FARMING_MIN_MATCHES,
            'detail': f"{matches} recent tasks share these GPS coordinates",
        }

    @staticmethod
    def check_off_hours(task) -> dict:
        # Hour in the caller's own offset
        hour = task.completed_at.hour
        return {
            'detected': OFF_HOURS_START <= hour < OFF_HOURS_END,
            'detail': f"Completed at {task.completed_at.strftime('%H:%M')} local time",
        }

    @staticmethod
    def check_new_account_high_value(task, history) -> dict:
        return {
            'detected': history.account_age_days < NEW_ACCOUNT_DAYS and task.amount > NEW_ACCOUNT_HIGH_VALUE,
            'detail': f"Account age {history.account_age_days} days, amount ${task.amount}",
        }

    @staticmethod
    def check_reputation_disputes(history) -> dict:
        return {
            'detected': history.reputation_score < LOW_REPUTATION and history.dispute_count > REPUTATION_DISPUTES_MIN,
            'detail': f"Reputation {history.reputation_score} with {history.dispute_count} disputes",
        }

    @staticmethod
    def check_low_completion(history) -> dict:
        return {
            'detected': history.completion_rate < LOW_COMPLETION_RATE,
            'detail': f"Completion rate {history.completion_rate:.1%}",
        }

    @staticmethod
    def check_duration_anomaly(task, history) -> dict:
        duration = task.completion_proof.duration
        durations = [t.duration for t in history.recent_tasks if t.duration]
        if duration is None or not durations:
            return {'detected': False, 'detail': 'No duration history'}
        average = sum(durations) / len(durations)
        return {
            'detected': duration < average * DURATION_ANOMALY_RATIO,
            'detail': f"Took {duration:.0f}min vs {average:.0f}min average",
        }

    @staticmethod
    def should_reject(fraud_result: dict) -> bool:
        """High risk is always a rejection, whatever the confidence score."""
        return fraud_result.get('risk_level') == RiskLevel.HIGH

    @staticmethod
    def get_rejection_reason(fraud_result: dict) -> str:
        """Get human-readable rejection reason."""
        details = [p['detail'] for p in fraud_result.get('patterns', [])]
        if details:
            return f"Fraud detected: {'; '.join(details)}"
        return "Task flagged for suspicious activity"
