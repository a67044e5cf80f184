"""
Exception hierarchy for the facilitator.

Validation outcomes are returned as result objects, not raised. These
exceptions cover malformed requests and infrastructure faults only.
"""


class FacilitatorError(Exception):
    """Base error for facilitator failures."""


class PayloadValidationError(FacilitatorError):
    """Raised when an incoming request body fails to parse."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ChainReaderError(FacilitatorError):
    """Raised when the chain reader cannot be reached or answers garbage."""


class ContractCallReverted(ChainReaderError):
    """Raised when a view call reverts or returns no data."""


class WorkflowEngineError(FacilitatorError):
    """Raised when the workflow engine cannot be reached."""


class IllegalTransitionError(FacilitatorError):
    """Raised on a workflow status change the state machine forbids."""

    def __init__(self, nonce: str, current: str, target: str):
        super().__init__(
            f'Illegal workflow transition for nonce {nonce}: {current} -> {target}')
        self.nonce = nonce
        self.current = current
        self.target = target
