"""Per-user budget enforcement.

Decides whether a user may send another request given how much they
have spent over the configured budget period.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from relay.session import Session
from utils.config import BotConfig


class AccessDeniedError(RuntimeError):
    """Raised when a user's spending budget has been exhausted.

    Signals that the user has to wait for the budget window to roll over
    before asking again.
    """


@dataclass(frozen=True)
class BudgetGate:
    """Budget and permission checks against a static configuration.

    Checks are pure: they read the session ledger and never change it.

    Attributes:
        config: Bot configuration providing budgets and allow-lists
    """

    config: BotConfig

    def budget_for(self, user_id: int) -> Optional[float]:
        """Spending cap for ``user_id``.

        Returns:
            float or None: Cap in the configured period, None when unlimited
        """
        config = self.config
        if user_id in config.admin_ids:
            return None
        if not config.allowed_user_ids or user_id in config.allowed_user_ids:
            return config.user_budget
        if config.guest_budget is not None:
            return config.guest_budget
        return config.user_budget

    def has_access(self, session: Session, now: Optional[datetime] = None) -> bool:
        """Return True when the user is below their budget.

        Args:
            session: Session whose ledger is checked
            now: Reference time for the budget window

        Returns:
            bool: True if a new request may be issued
        """
        budget = self.budget_for(session.user_id)
        if budget is None:
            return True
        spent = session.ledger.cost_in_window(self.config.budget_period, now=now)
        return spent < budget

    def ensure_access(self, session: Session, now: Optional[datetime] = None) -> None:
        """Raise if the user may not issue a new request.

        Raises:
            AccessDeniedError: If the budget for the period is exhausted
        """
        if not self.has_access(session, now=now):
            raise AccessDeniedError(
                f"User {session.user_id} exhausted the {self.config.budget_period} budget."
            )

    def can_view_detailed_stats(self, session: Session) -> bool:
        """Whether the full cost breakdown may be shown to this user."""
        user_id = session.user_id
        return user_id in self.config.admin_ids or user_id in self.config.stats_viewer_ids


def has_access(session: Session, config: BotConfig, now: Optional[datetime] = None) -> bool:
    """Functional shortcut for ``BudgetGate(config).has_access``."""
    return BudgetGate(config).has_access(session, now=now)


def can_view_detailed_stats(session: Session, config: BotConfig) -> bool:
    """Functional shortcut for ``BudgetGate(config).can_view_detailed_stats``."""
    return BudgetGate(config).can_view_detailed_stats(session)
