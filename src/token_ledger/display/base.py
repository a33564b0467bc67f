from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Tuple


class DisplaySync(ABC):
    """
    Pushes a new balance to the customer's wallet pass.

    Best-effort: the ledger calls it after the mutation has committed and
    only logs a failure. Implementations return False on a rejected update;
    they may also raise.
    """

    @abstractmethod
    async def update_displayed_balance(self, display_reference: str, new_balance: int) -> bool:
        ...


class InMemoryDisplaySync(DisplaySync):
    """
    Records every update; the displayed value per pass is the last one pushed.
    Used for tests and local development.
    """

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.updates: List[Tuple[str, int]] = []
        self.displayed: Dict[str, int] = {}

    async def update_displayed_balance(self, display_reference: str, new_balance: int) -> bool:
        if self.fail:
            return False
        self.updates.append((display_reference, new_balance))
        self.displayed[display_reference] = new_balance
        return True


class NullDisplaySync(DisplaySync):
    """No wallet integration configured."""

    async def update_displayed_balance(self, display_reference: str, new_balance: int) -> bool:
        return True
