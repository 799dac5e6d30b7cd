"""Task graph store and transactions."""

from netresolve.plan.graph import TaskGraph
from netresolve.plan.transaction import Transaction, TransactionState

__all__ = ["TaskGraph", "Transaction", "TransactionState"]
