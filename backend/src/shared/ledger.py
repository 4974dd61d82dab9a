"""
Ledger Gateway.
Client for the stablecoin wallet API that moves value between platform and worker wallets.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from .config import config
from .exceptions import LedgerRejectedError, TransientLedgerError
from .logging import logger
from .models import TransferStatus

CONFIRMED_STATES = {'complete', 'completed', 'confirmed', 'success'}
FAILED_STATES = {'failed', 'denied', 'cancelled', 'canceled'}


def map_transfer_state(state: Optional[str]) -> str:
    """Provider state → pending | confirmed | failed."""
    state = (state or '').lower()
    if state in CONFIRMED_STATES:
        return TransferStatus.CONFIRMED
    if state in FAILED_STATES:
        return TransferStatus.FAILED
    return TransferStatus.PENDING


def resolve_wallets(platform: Optional[Dict[str, Any]], worker: Dict[str, Any]) -> Dict[str, str]:
    """
    Source and destination for a payout.

    Raises:
        LedgerRejectedError: No usable wallet on either side
    """
    source = (platform or {}).get('walletId') or config.PLATFORM_FALLBACK_WALLET_ID
    destination = worker.get('walletAddress') or worker.get('walletId')
    if not source:
        raise LedgerRejectedError('Platform has no wallet configured')
    if not destination:
        raise LedgerRejectedError(f"Worker {worker.get('workerId')} has no wallet")
    return {'from': source, 'to': destination}


class LedgerGateway:
    """
    HTTP client over requests. Network errors, timeouts, 429 and 5xx are transient;
    any other 4xx is a rejection and is never retried.
    """

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        timeout: float = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or config.LEDGER_API_URL).rstrip('/')
        self.api_key = api_key if api_key is not None else config.LEDGER_API_KEY
        self.timeout = timeout if timeout is not None else config.LEDGER_ATTEMPT_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, timeout: float = None, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {'Authorization': f"Bearer {self.api_key}", 'Content-Type': 'application/json'}
        try:
            response = self.session.request(method, url, headers=headers, timeout=timeout or self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientLedgerError(f"Ledger {method} {path} failed: {e}")
        except requests.RequestException as e:
            raise TransientLedgerError(f"Ledger {method} {path} error: {e}")

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}
        message = body.get('message') if isinstance(body, dict) else None

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientLedgerError(f"Ledger returned HTTP {response.status_code}: {message or response.reason}")
        if response.status_code >= 400:
            raise LedgerRejectedError(
                f"Ledger rejected request: {message or f'HTTP {response.status_code}'}",
                details={'status': response.status_code},
            )
        data = body.get('data', body) if isinstance(body, dict) else {}
        return data.get('transfer') or data.get('transaction') or data

    def transfer(
        self,
        from_wallet: str,
        to_wallet: str,
        amount: Decimal,
        idempotency_key: str,
        timeout: float = None,
    ) -> Dict[str, Any]:
        """
        Submit a transfer. The provider deduplicates on idempotency_key, so a
        retried attempt returns the original transfer instead of paying twice.

        Returns:
            dict: {'transferId', 'statusRef', 'status'}
        """
        payload = {
            'idempotencyKey': idempotency_key,
            'walletId': from_wallet,
            'destinationAddress': to_wallet,
            'amounts': [str(amount)],
        }
        data = self._request('POST', '/transfers', timeout=timeout, json=payload)
        transfer_id = data.get('id')
        if not transfer_id:
            raise TransientLedgerError('Ledger response missing transfer id')
        logger.info(f"Ledger transfer {transfer_id} submitted: {amount} to {to_wallet[:10]}...")
        return {
            'transferId': transfer_id,
            'statusRef': data.get('txHash') or data.get('transactionHash'),
            'status': map_transfer_state(data.get('state')),
        }

    def get_status(self, transfer_id: str, timeout: float = None) -> Dict[str, Any]:
        """Returns {'status': pending|confirmed|failed, 'statusRef': settlement hash or None}."""
        data = self._request('GET', f"/transfers/{transfer_id}", timeout=timeout)
        return {
            'status': map_transfer_state(data.get('state')),
            'statusRef': data.get('txHash') or data.get('transactionHash'),
        }
