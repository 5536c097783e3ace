from __future__ import annotations

class CreditError(Exception):
    pass

class InsufficientCredits(CreditError):
    def __init__(self, required: int, available: int):
        self.required = int(required)
        self.available = int(available)
        super().__init__(f"Insufficient credits. Have {self.available}, need {self.required}.")

class RefundRejected(CreditError):
    def __init__(self, idempotency_key: str, reason: str):
        self.idempotency_key = idempotency_key
        self.reason = reason
        super().__init__(f"Refund rejected for {idempotency_key}: {reason}")

class ConcurrencyConflict(CreditError):
    """Balance row kept changing underneath us for every allowed attempt."""
    def __init__(self, tenant_id: str, attempts: int):
        self.tenant_id = tenant_id
        self.attempts = attempts
        super().__init__(f"Balance for {tenant_id} still contended after {attempts} attempts")

class DuplicateOperation(CreditError):
    """An operation with this (tenant, key, kind) is already committed. Replays treat it as success."""
    def __init__(self, tenant_id: str, idempotency_key: str, kind: str):
        self.tenant_id = tenant_id
        self.idempotency_key = idempotency_key
        self.kind = kind
        super().__init__(f"{kind} already applied for {tenant_id}:{idempotency_key}")

class CheckExecutionFailure(Exception):
    def __init__(self, sub_task: str, cause: str):
        self.sub_task = sub_task
        self.cause = cause
        super().__init__(f"{sub_task}: {cause}")

class RunAlreadyActive(Exception):
    def __init__(self, run_id: str, status: str):
        self.run_id = run_id
        self.status = status
        super().__init__(f"A batch run is already in progress ({run_id}, {status})")

class ClaimLost(Exception):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Claim on run {run_id} is no longer held")
