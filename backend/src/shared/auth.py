"""
Authentication utilities for platform webhooks.
API keys identify the platform; X-Signature proves the body came from it.
Worker-facing routes use Cognito authorizer claims.
"""
import hashlib
import hmac
from typing import Any, Dict, Optional

from .exceptions import AuthenticationError, PlatformForbiddenError
from .models import PlatformStatus

API_KEY_SALT = b'gigstream-api-key-salt'
SIGNATURE_PREFIX = 'sha256='


def hash_api_key(api_key: str) -> str:
    """Keyed hash stored on the platform record; raw keys are never persisted."""
    return hmac.new(API_KEY_SALT, api_key.encode('utf-8'), hashlib.sha256).hexdigest()


def sign_body(raw_body: str, secret: str) -> str:
    """X-Signature value for a body: 'sha256=<hex hmac>'."""
    digest = hmac.new(secret.encode('utf-8'), raw_body.encode('utf-8'), hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(raw_body: str, signature_header: Optional[str], secret: str) -> bool:
    """
    Constant-time check of X-Signature against the HMAC-SHA256 of the raw body.

    Args:
        raw_body: Body exactly as received, before any JSON parsing
        signature_header: X-Signature header value
        secret: Platform webhook secret
    """
    if not signature_header or not secret:
        return False
    expected = sign_body(raw_body, secret)
    return hmac.compare_digest(expected.encode('utf-8'), signature_header.strip().encode('utf-8'))


def authenticate_platform(persistence, api_key: Optional[str], require_webhooks: bool = True) -> Dict[str, Any]:
    """
    Resolve the calling platform from its API key.

    Raises:
        AuthenticationError: Missing or unknown key
        PlatformForbiddenError: Platform inactive or webhooks disabled
    """
    if not api_key:
        raise AuthenticationError('Missing X-API-Key header')

    platform = persistence.get_platform_by_api_key_hash(hash_api_key(api_key))
    if not platform:
        raise AuthenticationError('Invalid API key')
    if platform.get('status', PlatformStatus.ACTIVE) != PlatformStatus.ACTIVE:
        raise PlatformForbiddenError('Platform is not active')
    if require_webhooks and (not platform.get('webhooksEnabled', True) or not platform.get('webhookSecret')):
        raise PlatformForbiddenError('Webhooks are not enabled for this platform')
    return platform


def get_user_sub(event: dict) -> Optional[str]:
    """Cognito user sub from the API Gateway authorizer claims (worker-facing routes)."""
    try:
        return event['requestContext']['authorizer']['claims']['sub']
    except (KeyError, TypeError):
        return None


def get_user_groups(event: dict) -> list:
    try:
        groups = event['requestContext']['authorizer']['claims'].get('cognito:groups', '')
        if isinstance(groups, str):
            return groups.split(',') if groups else []
        return groups or []
    except (KeyError, TypeError):
        return []


def is_admin(event: dict) -> bool:
    return 'admin' in get_user_groups(event)
