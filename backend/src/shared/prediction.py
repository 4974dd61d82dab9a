"""
Earnings Forecaster.
7-day earnings prediction from the worker's daily earnings over the trailing 30 days:
day-of-week averages blended 60/40 with the last-7-day average, adjusted by a damped
linear trend over the last 14 days.
"""
import math
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .cache import TTLStore
from .config import config
from .history import earning_tasks
from .logging import logger
from .utils import parse_timestamp, to_decimal, utc_now

HISTORY_DAYS = 30
FORECAST_DAYS = 7
MIN_SEASONAL_DAYS = 7
MIN_CONFIDENT_DAYS = 14
TREND_WINDOW_DAYS = 14
TREND_DAMPING = 0.1
SEASONAL_WEIGHT = 0.6
RECENT_WEIGHT = 0.4
CONSERVATIVE_RATIO = 0.7
DEFAULT_MAPE = 15.0
CONSERVATIVE_MAPE = 25.0

ADVANCE_RATIO = {'high': 0.8, 'medium': 0.65, 'low': 0.5}


def _round(value: float) -> float:
    return round(value, 2)


def daily_earnings(activity: Dict[str, Any], today: date, days: int = HISTORY_DAYS) -> List[Dict[str, Any]]:
    """
    Earnings per calendar day (UTC), oldest first, ending today.
    The series starts at the worker's first earning day inside the window so that
    days before they started working do not read as zero-earning days.
    """
    start = today - timedelta(days=days - 1)
    totals = {}
    for task in earning_tasks(activity):
        completed_at = parse_timestamp(task.get('completedAt'))
        if not completed_at:
            continue
        day = completed_at.date()
        if start <= day <= today:
            totals[day] = totals.get(day, 0.0) + float(to_decimal(task.get('amount')))

    if not totals:
        return []

    first = min(totals)
    return [
        {'date': first + timedelta(days=i), 'earnings': totals.get(first + timedelta(days=i), 0.0)}
        for i in range((today - first).days + 1)
    ]


def calculate_trend(series: List[Dict[str, Any]]) -> float:
    """Least-squares slope relative to the mean (fraction per day)."""
    n = len(series)
    if n < 2:
        return 0.0
    sum_x = sum_y = sum_xy = sum_x2 = 0.0
    for i, point in enumerate(series):
        sum_x += i
        sum_y += point['earnings']
        sum_xy += i * point['earnings']
        sum_x2 += i * i
    denominator = n * sum_x2 - sum_x * sum_x
    if denominator == 0:
        return 0.0
    slope = (n * sum_xy - sum_x * sum_y) / denominator
    mean = sum_y / n
    return slope / mean if mean > 0 else 0.0


def calculate_volatility(series: List[Dict[str, Any]]) -> float:
    """Coefficient of variation of daily earnings; 1.0 when undefined."""
    if len(series) < 2:
        return 1.0
    values = [p['earnings'] for p in series]
    mean = sum(values) / len(values)
    if mean == 0:
        return 1.0
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return math.sqrt(variance) / mean


def calculate_mape(test: List[Dict[str, Any]], day_of_week_avg: List[float], trend: float) -> float:
    """Mean absolute percentage error on a hold-out slice, capped at 100."""
    errors = []
    for point in test:
        actual = point['earnings']
        if actual == 0:
            continue
        predicted = day_of_week_avg[point['date'].weekday()] * (1 + trend * TREND_DAMPING)
        errors.append(abs((actual - predicted) / actual))
    if not errors:
        return DEFAULT_MAPE
    return min(sum(errors) / len(errors) * 100, 100.0)


def _empty_forecast(today: date) -> Dict[str, Any]:
    return {
        'next7Days': 0.0,
        'dailyPredictions': [
            {'date': (today + timedelta(days=i + 1)).isoformat(), 'predicted': 0.0, 'lower': 0.0, 'upper': 0.0}
            for i in range(FORECAST_DAYS)
        ],
        'confidence': 'low',
        'confidenceScore': 0.0,
        'mape': CONSERVATIVE_MAPE,
        'historyDays': 0,
        'trend': 'stable',
        'breakdown': {'weekdayEarnings': 0.0, 'weekendEarnings': 0.0, 'trendAdjustment': 0.0},
        'safeAdvanceAmount': 0.0,
        'algorithmUsed': 'heuristic',
    }


def _conservative_forecast(series: List[Dict[str, Any]], today: date) -> Dict[str, Any]:
    """Fewer than 7 days of history: 70% of the plain daily average."""
    average = sum(p['earnings'] for p in series) / len(series)
    daily = average * CONSERVATIVE_RATIO
    total = daily * FORECAST_DAYS
    predictions = []
    weekday_total = weekend_total = 0.0
    for i in range(FORECAST_DAYS):
        day = today + timedelta(days=i + 1)
        predictions.append({
            'date': day.isoformat(),
            'predicted': _round(daily),
            'lower': _round(daily * 0.5),
            'upper': _round(daily * 1.5),
        })
        if day.weekday() < 5:
            weekday_total += daily
        else:
            weekend_total += daily
    return {
        'next7Days': _round(total),
        'dailyPredictions': predictions,
        'confidence': 'low',
        'confidenceScore': 0.5,
        'mape': CONSERVATIVE_MAPE,
        'historyDays': len(series),
        'trend': 'stable',
        'breakdown': {
            'weekdayEarnings': _round(weekday_total),
            'weekendEarnings': _round(weekend_total),
            'trendAdjustment': 0.0,
        },
        'safeAdvanceAmount': _round(total * ADVANCE_RATIO['low']),
        'algorithmUsed': 'heuristic',
    }


def predict_earnings(series: List[Dict[str, Any]], today: date) -> Dict[str, Any]:
    """
    Heuristic 7-day forecast over a daily series (see daily_earnings).

    Zero history forecasts zero; under 7 days falls back to a conservative average;
    under 14 days the confidence tier is always low.
    """
    if not series or not any(p['earnings'] for p in series):
        return _empty_forecast(today)
    if len(series) < MIN_SEASONAL_DAYS:
        return _conservative_forecast(series, today)

    day_totals = [0.0] * 7
    day_counts = [0] * 7
    for point in series:
        day_totals[point['date'].weekday()] += point['earnings']
        day_counts[point['date'].weekday()] += 1
    overall = sum(p['earnings'] for p in series) / len(series)
    day_of_week_avg = [
        (day_totals[i] / day_counts[i]) if day_counts[i] and day_totals[i] else overall
        for i in range(7)
    ]

    trend = calculate_trend(series[-TREND_WINDOW_DAYS:])
    trend_multiplier = 1 + trend * TREND_DAMPING
    last_7 = series[-7:]
    last_7_avg = sum(p['earnings'] for p in last_7) / len(last_7)
    volatility = calculate_volatility(series)
    interval = 0.15 if volatility < 0.2 else 0.25 if volatility < 0.4 else 0.4

    predictions = []
    total = weekday_total = weekend_total = 0.0
    for i in range(FORECAST_DAYS):
        day = today + timedelta(days=i + 1)
        seasonal = day_of_week_avg[day.weekday()] * trend_multiplier
        predicted = _round(seasonal * SEASONAL_WEIGHT + last_7_avg * RECENT_WEIGHT)
        predictions.append({
            'date': day.isoformat(),
            'predicted': predicted,
            'lower': max(0.0, _round(predicted * (1 - interval))),
            'upper': _round(predicted * (1 + interval)),
        })
        total += predicted
        if day.weekday() < 5:
            weekday_total += predicted
        else:
            weekend_total += predicted

    history_days = len(series)
    if history_days < MIN_CONFIDENT_DAYS:
        confidence = 'low'
    elif volatility < 0.2 and history_days >= HISTORY_DAYS:
        confidence = 'high'
    elif volatility < 0.4:
        confidence = 'medium'
    else:
        confidence = 'low'

    if history_days >= HISTORY_DAYS:
        confidence_score = 0.9 - volatility
    elif history_days >= MIN_CONFIDENT_DAYS:
        confidence_score = 0.75 - volatility
    else:
        confidence_score = 0.6 - volatility

    mape = DEFAULT_MAPE
    if history_days >= MIN_CONFIDENT_DAYS:
        mape = calculate_mape(series[-14:-7], day_of_week_avg, trend)

    return {
        'next7Days': _round(total),
        'dailyPredictions': predictions,
        'confidence': confidence,
        'confidenceScore': round(max(0.0, min(1.0, confidence_score)), 4),
        'mape': _round(mape),
        'historyDays': history_days,
        'trend': 'increasing' if trend > 0.1 else 'decreasing' if trend < -0.1 else 'stable',
        'breakdown': {
            'weekdayEarnings': _round(weekday_total),
            'weekendEarnings': _round(weekend_total),
            'trendAdjustment': _round(total * trend * TREND_DAMPING),
        },
        'safeAdvanceAmount': _round(total * ADVANCE_RATIO[confidence]),
        'algorithmUsed': 'heuristic',
    }


def adjust_prediction_days(prediction: Dict[str, Any], days: int) -> Dict[str, Any]:
    """Scale a 7-day forecast to a shorter horizon."""
    if days == len(prediction['dailyPredictions']):
        return prediction
    ratio = days / len(prediction['dailyPredictions'])
    breakdown = prediction['breakdown']
    return {
        **prediction,
        'next7Days': _round(prediction['next7Days'] * ratio),
        'safeAdvanceAmount': _round(prediction['safeAdvanceAmount'] * ratio),
        'breakdown': {name: _round(value * ratio) for name, value in breakdown.items()},
        'dailyPredictions': prediction['dailyPredictions'][:days],
    }


def validate_prediction(prediction: Dict[str, Any]) -> Dict[str, Any]:
    """Sanity warnings for a forecast."""
    warnings = []
    if prediction['confidenceScore'] < 0.5:
        warnings.append('Low confidence score - prediction may be unreliable')
    if prediction['mape'] > 25:
        warnings.append('High prediction error (MAPE > 25%) - use with caution')
    if prediction['next7Days'] < 0:
        warnings.append('Negative earnings predicted - data issue or calculation error')
    if prediction['next7Days'] > 10000:
        warnings.append('Unusually high earnings predicted - verify data quality')
    if prediction['next7Days'] == 0 and prediction['confidence'] == 'high':
        warnings.append('Zero earnings predicted with high confidence - worker may be inactive')
    return {'isValid': not warnings, 'warnings': warnings}


class EarningsForecaster:
    """Forecasts per worker, cached for a day."""

    def __init__(self, aggregator, cache: Optional[TTLStore] = None, clock: Callable[[], datetime] = utc_now):
        self.aggregator = aggregator
        self.cache = cache if cache is not None else TTLStore(config.FORECAST_CACHE_TTL_SECONDS)
        self.clock = clock

    def forecast(self, worker_id: str, days: int = FORECAST_DAYS, refresh: bool = False) -> Dict[str, Any]:
        days = max(1, min(FORECAST_DAYS, days))
        key = f"forecast:{worker_id}:{self.aggregator.version(worker_id)}:{days}"
        if not refresh:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        now = self.clock()
        series = daily_earnings(self.aggregator.activity(worker_id, refresh=refresh), now.date())
        prediction = adjust_prediction_days(predict_earnings(series, now.date()), days)
        prediction['workerId'] = worker_id
        prediction['calculatedAt'] = now.isoformat()
        self.cache.set(key, prediction)
        logger.info(
            f"Earnings forecast for worker {worker_id}: ${prediction['next7Days']:.2f} "
            f"({prediction['confidence']} confidence, {prediction['historyDays']} days of history)"
        )
        return prediction

    def invalidate(self, worker_id: str) -> None:
        self.cache.delete_prefix(f"forecast:{worker_id}:")
