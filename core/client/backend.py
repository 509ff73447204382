"""
HTTP client for the pipeline backend.

Wraps a blocking requests Session; every call runs in a worker thread via
``asyncio.to_thread`` so the event loop never waits on the network.
Responses use a ``{success, data}`` envelope which is unwrapped here.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from ..models.config import BackendConfig
from ..models.entities import Entity, StageResult, validate_stage_index
from ..models.normalize import normalize_entities, normalize_stage_result

logger = logging.getLogger(__name__)


class BackendError(RuntimeError):
    """Backend returned an error response"""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail or message


class AuthenticationError(BackendError):
    """Credentials missing, expired or rejected (HTTP 401)"""


class BackendUnavailableError(BackendError):
    """Transport failure: connection refused, timeout, DNS"""


class PipelineBackendClient:
    """
    Client for the product pipeline API.

    Endpoints:
    - GET  /api/products                      entity list
    - GET  /api/products/{id}                 entity with stage results
    - POST /api/products/{id}/execute-step{n} start a stage
    - POST /api/products/{id}/stop-step{n}    stop a stage
    - POST /api/notifications/                create a notification
    - GET  /api/dashboard/summary             summary text
    - GET  /api/client/info                   tenant metadata
    - POST /api/event-logs                    audit trail
    """

    def __init__(self, config: BackendConfig, session: Optional[requests.Session] = None):
        """Initialize client with configuration"""
        self.config = config
        self._session = session or requests.Session()
        self._session.headers.update(self._build_headers())

        # Performance metrics
        self._request_count = 0
        self._failed_requests = 0
        self._total_request_time = 0.0

        logger.info(f"Initialized PipelineBackendClient for {config.base_url}")

    def _build_headers(self) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.config.api_key:
            headers['Authorization'] = f"Bearer {self.config.api_key}"
        if self.config.user_token:
            headers['X-User-Token'] = f"Bearer {self.config.user_token}"
        return headers

    def set_user_token(self, token: Optional[str]) -> None:
        """Swap the per-user token, e.g. after re-authentication"""
        self.config.user_token = token
        if token:
            self._session.headers['X-User-Token'] = f"Bearer {token}"
        else:
            self._session.headers.pop('X-User-Token', None)

    def _request_sync(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None
    ) -> Any:
        url = f"{self.config.base_url}{path}"
        try:
            response = self._session.request(
                method, url, params=params, json=body, timeout=self.config.timeout
            )
        except requests.RequestException as e:
            raise BackendUnavailableError(f"{method} {path} failed: {e}") from e

        if response.status_code == 401:
            raise AuthenticationError(
                "Authentication expired or invalid",
                status_code=401,
                detail=_error_detail(response),
            )
        if response.status_code >= 400:
            detail = _error_detail(response)
            raise BackendError(
                f"{method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code,
                detail=detail,
            )

        if not response.content:
            return None
        try:
            payload = response.json()
        except ValueError as e:
            raise BackendError(f"{method} {path} returned invalid JSON", status_code=response.status_code) from e

        return _unwrap(payload, method, path, response.status_code)

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None
    ) -> Any:
        start_time = time.perf_counter()
        self._request_count += 1
        try:
            return await asyncio.to_thread(self._request_sync, method, path, params, body)
        except BackendError:
            self._failed_requests += 1
            raise
        finally:
            self._total_request_time += time.perf_counter() - start_time

    async def list_entities(self, tenant_id: str, minimal: bool = True) -> List[Entity]:
        """Fetch every product of a tenant"""
        params: Dict[str, Any] = {'client_id': tenant_id}
        if minimal:
            params['minimal'] = 'true'
        data = await self._request('GET', '/api/products', params=params)
        return normalize_entities(data or [])

    async def get_stage_detail(self, entity_id: str, stage: int, tenant_id: str) -> Optional[StageResult]:
        """Fetch the materialized output of one stage"""
        validate_stage_index(stage)
        data = await self._request('GET', f'/api/products/{entity_id}', params={'client_id': tenant_id})
        if not isinstance(data, dict):
            return None
        return normalize_stage_result(stage, data.get(f'step{stage}Results'))

    async def execute_stage(self, entity_id: str, stage: int, tenant_id: Optional[str] = None) -> Any:
        validate_stage_index(stage)
        params = {'client_id': tenant_id} if tenant_id else None
        logger.info(f"Executing stage {stage} for {entity_id}")
        return await self._request('POST', f'/api/products/{entity_id}/execute-step{stage}', params=params)

    async def stop_stage(self, entity_id: str, stage: int) -> Any:
        validate_stage_index(stage)
        logger.info(f"Stopping stage {stage} for {entity_id}")
        return await self._request('POST', f'/api/products/{entity_id}/stop-step{stage}')

    async def create_notification(
        self,
        tenant_id: str,
        notification_type: str,
        title: str,
        message: str,
        product_id: Optional[str] = None,
        product_name: Optional[str] = None,
        step: Optional[int] = None,
        priority: str = 'medium'
    ) -> Any:
        body = {
            'client_id': tenant_id,
            'type': notification_type,
            'title': title,
            'message': message,
            'product_id': product_id,
            'product_name': product_name,
            'step': step,
            'priority': priority,
        }
        return await self._request('POST', '/api/notifications/', body={k: v for k, v in body.items() if v is not None})

    async def get_summary(self, tenant_id: str) -> Dict[str, Any]:
        data = await self._request('GET', '/api/dashboard/summary', params={'client_id': tenant_id})
        return data if isinstance(data, dict) else {'summary': data}

    async def get_tenant_info(self, tenant_id: str) -> Dict[str, Any]:
        data = await self._request('GET', '/api/client/info', params={'client_id': tenant_id})
        return data if isinstance(data, dict) else {}

    async def log_event(
        self,
        action: str,
        tenant_id: Optional[str],
        entity_id: Optional[str] = None,
        entity_name: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Record an audit event. Never raises.

        Returns:
            True if the backend accepted the event
        """
        if not tenant_id:
            logger.debug("No tenant assigned, skipping event log")
            return False

        body = {
            'action': action,
            'product_id': entity_id,
            'product_name': entity_name,
            'details': details or {},
        }
        try:
            await self._request('POST', '/api/event-logs', params={'client_id': tenant_id}, body=body)
            return True
        except BackendError as e:
            logger.warning(f"Failed to log event {action}: {e}")
            return False

    def get_stats(self) -> Dict[str, Any]:
        return {
            'base_url': self.config.base_url,
            'request_count': self._request_count,
            'failed_requests': self._failed_requests,
            'average_request_time': (
                self._total_request_time / self._request_count if self._request_count else 0.0
            )
        }

    def close(self) -> None:
        self._session.close()


def _error_detail(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        for key in ('detail', 'message', 'error'):
            if payload.get(key):
                return str(payload[key])
    return str(payload)


def _unwrap(payload: Any, method: str, path: str, status_code: int) -> Any:
    if not isinstance(payload, dict) or 'success' not in payload:
        return payload
    if not payload.get('success'):
        detail = payload.get('error') or payload.get('message') or 'request failed'
        raise BackendError(f"{method} {path} failed: {detail}", status_code=status_code, detail=str(detail))
    if 'data' in payload:
        return payload['data']
    return {k: v for k, v in payload.items() if k != 'success'}
