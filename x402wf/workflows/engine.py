"""
Client side of the external workflow engine.

The engine is opaque: it accepts a workflow description, hands back an id
and reports a status code for that id until the job ends.
"""
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from x402wf.errors import WorkflowEngineError


class StatusCode(IntEnum):
    PENDING = 0
    RUNNING = 1
    COMPLETED = 2
    # any negative code is a failure
    FAILED = -1


_TEXTUAL_STATUS = {
    'pending': StatusCode.PENDING,
    'pending_execution': StatusCode.PENDING,
    'running': StatusCode.RUNNING,
    'completed': StatusCode.COMPLETED,
    'success': StatusCode.COMPLETED,
    'failed': StatusCode.FAILED,
    'error': StatusCode.FAILED,
}


@dataclass
class DispatchResult:
    accepted: bool
    workflow_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class WorkflowStatusReport:
    workflow_id: str
    code: int
    transaction_hash: Optional[str] = None
    error: Optional[str] = None
    result: Dict[str, Any] = field(default_factory=dict)

    @property
    def in_progress(self) -> bool:
        return self.code in (StatusCode.PENDING, StatusCode.RUNNING)

    @property
    def completed(self) -> bool:
        return self.code == StatusCode.COMPLETED

    @property
    def failed(self) -> bool:
        return self.code < 0


class WorkflowEngine(ABC):
    """Consumption contract for the workflow engine."""

    @abstractmethod
    async def dispatch(self, workflow_spec: Dict[str, Any]) -> DispatchResult:
        """Start a job. Raises ``WorkflowEngineError`` if the engine is unreachable."""

    @abstractmethod
    async def get_status(self, workflow_id: str) -> WorkflowStatusReport:
        """Report a job's status. Raises ``WorkflowEngineError`` on transport failure."""

    async def get_node_config(self) -> Dict[str, Any]:
        return {}


def parse_status(workflow_id: str, result: Any) -> WorkflowStatusReport:
    """Map a status payload onto a report; unknown shapes count as pending."""
    if not isinstance(result, dict):
        return WorkflowStatusReport(workflow_id=workflow_id, code=StatusCode.PENDING)

    code = result.get('code')
    if code is None:
        code = _TEXTUAL_STATUS.get(str(result.get('status', 'pending')).lower(),
                                   StatusCode.PENDING)
    try:
        code = int(code)
    except (TypeError, ValueError):
        logger.warning('Unrecognised status code {!r} for workflow {}', code, workflow_id)
        code = StatusCode.PENDING

    nested = result.get('result')
    if not isinstance(nested, dict):
        nested = {}
    transaction_hash = (
        result.get('transactionHash')
        or result.get('transaction_hash')
        or nested.get('transactionHash')
    )
    error = result.get('error') or result.get('message')
    return WorkflowStatusReport(
        workflow_id=workflow_id,
        code=code,
        transaction_hash=transaction_hash or None,
        error=str(error) if error else None,
        result=result,
    )


class JsonRpcWorkflowEngine(WorkflowEngine):
    """Talks JSON-RPC 2.0 to a workflow node over HTTP."""

    def __init__(
        self,
        node_url: str,
        dispatch_method: str,
        status_method: str,
        config_method: str,
        timeout: float = 60,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.node_url = node_url
        self.dispatch_method = dispatch_method
        self.status_method = status_method
        self.config_method = config_method
        self._ids = itertools.count(1)
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={'Content-Type': 'application/json'},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, params: list) -> Dict[str, Any]:
        body = {
            'jsonrpc': '2.0',
            'method': method,
            'params': params,
            'id': next(self._ids),
        }
        try:
            response = await self._client.post(self.node_url, json=body)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise WorkflowEngineError(f'{method} failed: {exc}') from exc
        if not isinstance(data, dict):
            raise WorkflowEngineError(f'{method} returned a non-object reply: {data!r}')
        return data

    async def dispatch(self, workflow_spec):
        data = await self._call(self.dispatch_method, [workflow_spec])
        error = data.get('error')
        if error:
            message = error.get('message') if isinstance(error, dict) else str(error)
            return DispatchResult(accepted=False, reason=message or 'workflow dispatch rejected')

        result = data.get('result') or {}
        workflow_id = None
        if isinstance(result, dict):
            workflow_id = result.get('workflowId') or result.get('intentId') or result.get('id')
        elif isinstance(result, str):
            workflow_id = result
        if not workflow_id:
            return DispatchResult(accepted=False, reason='engine returned no workflow id')
        return DispatchResult(accepted=True, workflow_id=str(workflow_id))

    async def get_status(self, workflow_id):
        data = await self._call(self.status_method, [workflow_id])
        error = data.get('error')
        if error:
            message = error.get('message') if isinstance(error, dict) else str(error)
            raise WorkflowEngineError(f'status query for {workflow_id} failed: {message}')
        return parse_status(workflow_id, data.get('result'))

    async def get_node_config(self):
        data = await self._call(self.config_method, [])
        return data.get('result') or {}
