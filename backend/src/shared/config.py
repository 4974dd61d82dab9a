"""
Configuration module for Lambda handlers.
Loads all environment variables needed by the payout pipeline.
"""
import os


class Config:
    """Centralized configuration from environment variables."""

    # AWS Region
    AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')

    # DynamoDB Tables
    TASKS_TABLE = os.environ.get('TASKS_TABLE', 'gigstream-tasks')
    WORKERS_TABLE = os.environ.get('WORKERS_TABLE', 'gigstream-workers')
    PLATFORMS_TABLE = os.environ.get('PLATFORMS_TABLE', 'gigstream-platforms')
    TRANSACTIONS_TABLE = os.environ.get('TRANSACTIONS_TABLE', 'gigstream-transactions')
    VERIFICATIONS_TABLE = os.environ.get('VERIFICATIONS_TABLE', 'gigstream-verifications')
    REPUTATION_EVENTS_TABLE = os.environ.get('REPUTATION_EVENTS_TABLE', 'gigstream-reputation-events')
    LOANS_TABLE = os.environ.get('LOANS_TABLE', 'gigstream-loans')
    AUDIT_LOG_TABLE = os.environ.get('AUDIT_LOG_TABLE', 'gigstream-audit-log')
    DEAD_LETTER_TABLE = os.environ.get('DEAD_LETTER_TABLE', 'gigstream-dead-letters')
    IDEMPOTENCY_TABLE = os.environ.get('IDEMPOTENCY_TABLE', '')

    # SQS Queues (empty = in-process worker pool)
    TASK_COMPLETION_QUEUE_URL = os.environ.get('TASK_COMPLETION_QUEUE_URL', '')
    LOCAL_WORKER_THREADS = int(os.environ.get('LOCAL_WORKER_THREADS', '4'))

    # Payment Execution
    PAYMENT_FEE_PERCENT = os.environ.get('PAYMENT_FEE_PERCENT', '0')
    PAYMENT_MAX_ATTEMPTS = int(os.environ.get('PAYMENT_MAX_ATTEMPTS', '3'))
    PAYMENT_BASE_DELAY_SECONDS = float(os.environ.get('PAYMENT_BASE_DELAY_SECONDS', '1.0'))
    PAYMENT_MAX_DELAY_SECONDS = float(os.environ.get('PAYMENT_MAX_DELAY_SECONDS', '10.0'))
    LEDGER_ATTEMPT_TIMEOUT_SECONDS = float(os.environ.get('LEDGER_ATTEMPT_TIMEOUT_SECONDS', '2.0'))
    LEDGER_POLL_INTERVAL_SECONDS = float(os.environ.get('LEDGER_POLL_INTERVAL_SECONDS', '0.25'))
    REPUTATION_TASK_DELTA = int(os.environ.get('REPUTATION_TASK_DELTA', '10'))

    # Ledger (stablecoin wallet API)
    LEDGER_API_URL = os.environ.get('LEDGER_API_URL', 'https://api.circle.com/v1/w3s')
    LEDGER_API_KEY = os.environ.get('LEDGER_API_KEY', '')
    PLATFORM_FALLBACK_WALLET_ID = os.environ.get('PLATFORM_FALLBACK_WALLET_ID', '')

    # Cache / idempotency windows (seconds)
    IDEMPOTENCY_TTL_SECONDS = int(os.environ.get('IDEMPOTENCY_TTL_SECONDS', '3600'))
    HISTORY_CACHE_TTL_SECONDS = int(os.environ.get('HISTORY_CACHE_TTL_SECONDS', '120'))
    RISK_CACHE_TTL_SECONDS = int(os.environ.get('RISK_CACHE_TTL_SECONDS', '300'))
    FORECAST_CACHE_TTL_SECONDS = int(os.environ.get('FORECAST_CACHE_TTL_SECONDS', '86400'))

    # External scorer (SageMaker endpoint, empty = heuristic only)
    SAGEMAKER_ENDPOINT_NAME = os.environ.get('SAGEMAKER_ENDPOINT_NAME', '')
    SCORER_TIMEOUT_SECONDS = float(os.environ.get('SCORER_TIMEOUT_SECONDS', '0.25'))

    # Advance eligibility
    ADVANCE_HARD_CAP = os.environ.get('ADVANCE_HARD_CAP', '500')
    ADVANCE_MIN_FORECAST = os.environ.get('ADVANCE_MIN_FORECAST', '50')

    # Webhook acknowledgment
    ESTIMATED_PROCESSING_TIME = os.environ.get('ESTIMATED_PROCESSING_TIME', '2-5 seconds')


config = Config()
