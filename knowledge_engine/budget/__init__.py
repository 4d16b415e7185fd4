"""Budget gate — spend ledger, monthly limits and threshold alerts."""

from knowledge_engine.budget.gate import BudgetGate
from knowledge_engine.budget.models import BudgetAlert, BudgetState

__all__ = [
    "BudgetAlert",
    "BudgetGate",
    "BudgetState",
]
