"""
Settlement workflow tracking: store, engine client, pollers and settle
coordination.
"""
from .builder import WorkflowBuilder, WorkflowSettings
from .coordinator import SettlementCoordinator
from .engine import (
    DispatchResult,
    JsonRpcWorkflowEngine,
    StatusCode,
    WorkflowEngine,
    WorkflowStatusReport,
)
from .poller import BackgroundPoller, PollerSupervisor
from .store import (
    DatabaseWorkflowStore,
    InMemoryWorkflowStore,
    WorkflowStatus,
    WorkflowStore,
    WorkflowTracking,
)

__all__ = [
    'BackgroundPoller',
    'DatabaseWorkflowStore',
    'DispatchResult',
    'InMemoryWorkflowStore',
    'JsonRpcWorkflowEngine',
    'PollerSupervisor',
    'SettlementCoordinator',
    'StatusCode',
    'WorkflowBuilder',
    'WorkflowEngine',
    'WorkflowSettings',
    'WorkflowStatus',
    'WorkflowStatusReport',
    'WorkflowStore',
    'WorkflowTracking',
]
