from __future__ import annotations


class WorkflowError(Exception):
    status_code = 400

    def __init__(self, request_number: str | None, action: str, reason: str) -> None:
        self.request_number = request_number
        self.action = action
        self.reason = reason
        subject = request_number or 'new request'
        super().__init__(f'Cannot {action} {subject}: {reason}')

    def to_dict(self) -> dict:
        return {
            'error': str(self),
            'request_number': self.request_number,
            'action': self.action,
        }


class ValidationError(WorkflowError):
    """Input was well formed but violates a business rule (missing reason, bad number)."""

    status_code = 422


class InvalidStateError(WorkflowError):
    """The form is no longer editable (it left Draft)."""

    status_code = 422


class InvalidTransitionError(WorkflowError):
    """Status or flag precondition violated; nothing was mutated."""

    status_code = 409


class PermissionDeniedError(WorkflowError):
    """Wrong actor or role, or identity could not be resolved."""

    status_code = 403


class NotFoundError(WorkflowError):
    status_code = 404


class RequestNumberExhaustedError(WorkflowError):
    """Every generated request number collided with an existing one."""

    status_code = 503

    def __init__(self, prefix: str, attempts: int) -> None:
        self.prefix = prefix
        self.attempts = attempts
        super().__init__(None, 'create', f'no free {prefix} request number after {attempts} attempts')


class PartialSyncError(WorkflowError):
    """The form-side change committed but the ledger could not follow.

    Raised after the retry path failed. The form and ledger disagree until
    reconciliation repairs the ledger side.
    """

    status_code = 500

    def __init__(self, request_number: str, action: str, reason: str) -> None:
        super().__init__(request_number, action, f'ledger out of sync with form ({reason})')
