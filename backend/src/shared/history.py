"""
Worker History Aggregator.
Rolls a worker's stored tasks, loans and reputation events into the snapshot
consumed by fraud detection, confidence scoring and the risk/earnings estimators.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from .cache import TTLStore
from .config import config
from .exceptions import NotFoundError
from .logging import logger
from .models import TaskStatus, VerificationStatus
from .utils import parse_timestamp, to_decimal, utc_now

HISTORY_WINDOW_DAYS = 30
MAX_FINGERPRINTS = 50
DEFAULT_REPUTATION = 100


@dataclass(frozen=True)
class TaskFingerprint:
    """Comparable shape of a past task."""
    amount: float
    duration: Optional[float] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    completed_at: Optional[datetime] = None

    @property
    def has_gps(self) -> bool:
        return self.lat is not None and self.lng is not None


@dataclass(frozen=True)
class WorkerHistorySnapshot:
    worker_id: str
    reputation_score: int
    tasks_last_24h: int
    average_task_amount: float
    dispute_count: int
    completion_rate: float
    total_tasks_completed: int
    account_age_days: int
    recent_tasks: Tuple[TaskFingerprint, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'workerId': self.worker_id,
            'reputationScore': self.reputation_score,
            'tasksLast24h': self.tasks_last_24h,
            'averageTaskAmount': round(self.average_task_amount, 2),
            'disputes': self.dispute_count,
            'completionRate': round(self.completion_rate, 4),
            'totalTasksCompleted': self.total_tasks_completed,
            'accountAgeDays': self.account_age_days,
            'recentTaskSample': len(self.recent_tasks),
        }


def fingerprint(task: Dict[str, Any]) -> TaskFingerprint:
    proof = task.get('completionProof') or {}
    gps = proof.get('gpsCoordinates') or {}
    duration = proof.get('duration')
    lat = gps.get('lat')
    lng = gps.get('lng', gps.get('lon'))
    return TaskFingerprint(
        amount=float(to_decimal(task.get('amount'))),
        duration=float(duration) if duration is not None else None,
        lat=float(lat) if lat is not None else None,
        lng=float(lng) if lng is not None else None,
        completed_at=parse_timestamp(task.get('completedAt')),
    )


def historical_tasks(activity: Dict[str, Any]) -> list:
    """Tasks that count as history: anything not still waiting for its own verification."""
    return [
        t for t in activity.get('tasks') or []
        if t.get('verificationStatus') != VerificationStatus.PENDING
    ]


def earning_tasks(activity: Dict[str, Any]) -> list:
    """Completed tasks that count towards earnings (not rejected by verification)."""
    return [
        t for t in historical_tasks(activity)
        if t.get('status', TaskStatus.COMPLETED) == TaskStatus.COMPLETED
        and t.get('verificationStatus') != VerificationStatus.REJECTED
    ]


def account_age_days(worker: Dict[str, Any], now: datetime) -> int:
    created = parse_timestamp(worker.get('createdAt'))
    if not created:
        return 0
    return max(0, (now - created).days)


def build_snapshot(worker_id: str, activity: Dict[str, Any], now: Optional[datetime] = None) -> WorkerHistorySnapshot:
    """
    Pure function of stored state at call time.

    Raises:
        NotFoundError: No worker record exists
    """
    now = now or utc_now()
    worker = activity.get('worker')
    if not worker:
        raise NotFoundError(f"Worker {worker_id} not found")

    tasks = historical_tasks(activity)
    day_ago = now - timedelta(hours=24)

    tasks_last_24h = 0
    completed_amounts = []
    completed = cancelled = disputes = 0
    for task in tasks:
        completed_at = parse_timestamp(task.get('completedAt'))
        if completed_at and completed_at >= day_ago:
            tasks_last_24h += 1
        status = task.get('status', TaskStatus.COMPLETED)
        if status == TaskStatus.CANCELLED:
            cancelled += 1
            continue
        completed += 1
        completed_amounts.append(float(to_decimal(task.get('amount'))))
        if status == TaskStatus.DISPUTED:
            disputes += 1

    average_amount = sum(completed_amounts) / len(completed_amounts) if completed_amounts else 0.0
    completion_rate = completed / (completed + cancelled) if (completed + cancelled) else 1.0

    newest_first = sorted(
        tasks,
        key=lambda t: parse_timestamp(t.get('completedAt')) or now,
        reverse=True,
    )
    recent = tuple(fingerprint(t) for t in newest_first[:MAX_FINGERPRINTS])
    reputation = worker.get('reputationScore')
    total = worker.get('totalTasksCompleted')

    return WorkerHistorySnapshot(
        worker_id=worker_id,
        reputation_score=int(reputation) if reputation is not None else DEFAULT_REPUTATION,
        tasks_last_24h=tasks_last_24h,
        average_task_amount=average_amount,
        dispute_count=disputes,
        completion_rate=completion_rate,
        total_tasks_completed=int(total) if total is not None else completed,
        account_age_days=account_age_days(worker, now),
        recent_tasks=recent,
    )


class WorkerHistoryAggregator:
    """
    Read-only view over persistence with a short-lived cache.
    Fraud and risk decisions tolerate aggregates up to a few minutes stale.
    """

    def __init__(
        self,
        persistence,
        cache: Optional[TTLStore] = None,
        window_days: int = HISTORY_WINDOW_DAYS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.persistence = persistence
        self.cache = cache if cache is not None else TTLStore(min(config.HISTORY_CACHE_TTL_SECONDS, 300))
        self.window_days = window_days
        self.clock = clock

    def version(self, worker_id: str) -> int:
        """
        Shared per-worker version, part of every cache key. Bumping it from any
        container retires the cached entries in all of them.
        """
        return self.persistence.get_worker_version(worker_id)

    def activity(self, worker_id: str, refresh: bool = False) -> Dict[str, Any]:
        """Raw aggregate read (worker, tasks, loans, reputation events), cached."""
        key = f"activity:{worker_id}:{self.version(worker_id)}"
        if not refresh:
            cached = self.cache.get(key)
            if cached is not None:
                return cached
        activity = self.persistence.get_worker_activity(worker_id, days=self.window_days)
        self.cache.set(key, activity)
        return activity

    def snapshot(self, worker_id: str, refresh: bool = False) -> WorkerHistorySnapshot:
        key = f"snapshot:{worker_id}:{self.version(worker_id)}"
        if not refresh:
            cached = self.cache.get(key)
            if cached is not None:
                return cached
        snapshot = build_snapshot(worker_id, self.activity(worker_id, refresh=refresh), self.clock())
        self.cache.set(key, snapshot)
        logger.info(
            f"Worker {worker_id} history: rep={snapshot.reputation_score} "
            f"24h={snapshot.tasks_last_24h} disputes={snapshot.dispute_count}"
        )
        return snapshot

    def invalidate(self, worker_id: str) -> None:
        self.cache.delete_prefix(f"activity:{worker_id}:")
        self.cache.delete_prefix(f"snapshot:{worker_id}:")
