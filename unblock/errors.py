from __future__ import annotations


class UnblockError(Exception):
    """Base class for every error raised by the market core."""

    retryable: bool = False


class NotFound(UnblockError):
    def __init__(self, kind: str, ident: str) -> None:
        super().__init__(f"{kind} not found: {ident}")
        self.kind = kind
        self.ident = ident


class InvalidTransition(UnblockError):
    def __init__(
        self,
        *,
        task_id: str,
        action: str,
        status: str,
        expected: tuple[str, ...],
        detail: str | None = None,
    ) -> None:
        msg = f"cannot {action} task {task_id}: status={status} (expected {'|'.join(expected)})"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)
        self.task_id = task_id
        self.action = action
        self.status = status
        self.expected = expected


class IdentityMismatch(UnblockError):
    def __init__(self, *, task_id: str, role: str, expected: str, actual: str) -> None:
        super().__init__(
            f"{role} mismatch on task {task_id}: bound to {expected!r}, got {actual!r}"
        )
        self.task_id = task_id
        self.role = role
        self.expected = expected
        self.actual = actual


class CapabilityDenied(UnblockError):
    def __init__(self, *, agent_id: str, reason: str, score: float | None = None) -> None:
        super().__init__(f"agent {agent_id} denied: {reason}")
        self.agent_id = agent_id
        self.reason = reason
        self.score = score


class EscrowFailure(UnblockError):
    """Payment rail call failed or returned not-ok. Safe to retry."""

    retryable = True

    def __init__(self, operation: str, detail: str) -> None:
        super().__init__(f"escrow {operation} failed: {detail}")
        self.operation = operation
        self.detail = detail
