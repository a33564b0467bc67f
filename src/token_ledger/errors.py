"""Exception taxonomy shared by the ledger, the intent store and the orchestrator."""

from __future__ import annotations

from typing import Optional


class TokenLedgerError(Exception):
    """Base class for every error raised by this package."""


class InsufficientFunds(ValueError, TokenLedgerError):
    """Expected outcome of a guarded charge; recoverable through the top-up path."""

    def __init__(self, account_id: str, balance: int, requested: int) -> None:
        self.account_id = account_id
        self.balance = balance
        self.requested = requested
        super().__init__(
            f"insufficient funds: {account_id} has {balance}, needs {requested}"
        )

    @property
    def shortfall(self) -> int:
        return max(self.requested - self.balance, 0)


class AccountNotFound(LookupError, TokenLedgerError):
    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"account not found: {account_id}")


class IntentNotFound(LookupError, TokenLedgerError):
    def __init__(self, intent_id: str) -> None:
        self.intent_id = intent_id
        super().__init__(f"purchase intent not found: {intent_id}")


class InvalidStateTransition(TokenLedgerError):
    """A transition the intent state machine does not draw, or a lost race for one."""

    def __init__(self, intent_id: str, current: str, target: str) -> None:
        self.intent_id = intent_id
        self.current = current
        self.target = target
        super().__init__(f"intent {intent_id}: cannot move from {current} to {target}")


class CollaboratorUnavailable(TokenLedgerError):
    """Persistence or payment backend unreachable. Retryable; nothing was committed."""

    def __init__(self, collaborator: str, detail: Optional[str] = None) -> None:
        self.collaborator = collaborator
        self.detail = detail
        message = f"{collaborator} unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
