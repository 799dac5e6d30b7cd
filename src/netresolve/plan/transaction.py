"""Transactions: isolated working copies of a task graph.

A :class:`Transaction` is opened on a base :class:`TaskGraph`. It starts
as a snapshot of the base in which every task is flagged as a ``proxy``
(a placeholder for the base object with the same id). All resolution
work happens on the transaction; the base is only touched by
:meth:`Transaction.commit`, which installs the working contents in one
step. :meth:`Transaction.discard` simply drops them.
"""

from __future__ import annotations

import logging
from enum import Enum

from netresolve.exceptions import TransactionConflictError, TransactionStateError
from netresolve.plan.graph import TaskGraph

logger = logging.getLogger(__name__)


class TransactionState(str, Enum):
    """Lifecycle of a transaction."""

    OPEN = "OPEN"
    COMMITTED = "COMMITTED"
    DISCARDED = "DISCARDED"


class Transaction(TaskGraph):
    """Working copy of *base* committed or discarded atomically.

    Ids of tasks created in the transaction are allocated from the base's
    counter, so they stay valid after commit.
    """

    def __init__(self, base: TaskGraph) -> None:
        super().__init__()
        self.state = TransactionState.OPEN
        self.base = base
        with base.lock:
            self._base_revision = base.revision
            for task_id, task in base.tasks.items():
                proxy = task.copy()
                proxy.proxy = True
                self.tasks[task_id] = proxy
            self.dataflow = base.dataflow.copy()
            self.dependency = base.dependency.copy()
            for _, _, data in self.dependency.edges(data=True):
                data["roles"] = set(data["roles"])
            self.mission = set(base.mission)
            self.permanent = set(base.permanent)
            self.metadata = dict(base.metadata)
        logger.debug(
            "opened transaction on revision %d (%d tasks)", self._base_revision, len(self.tasks)
        )

    @property
    def finalized(self) -> bool:
        return self.state is not TransactionState.OPEN

    def _check_open(self) -> None:
        if self.finalized:
            raise TransactionStateError(
                f"transaction is {self.state.value.lower()} and cannot be used anymore"
            )

    def _mutated(self) -> None:
        self._check_open()
        super()._mutated()

    def allocate_id(self) -> int:
        self._check_open()
        return self.base.allocate_id()

    def commit(self) -> None:
        """Install the working contents in the base graph.

        Runtime states of tasks that already existed in the base are kept
        as they are in the base at commit time.

        Raises:
            TransactionStateError: If the transaction is already finalized.
            TransactionConflictError: If the base changed structurally since
                the transaction was opened.
        """
        self._check_open()
        base = self.base
        with base.lock:
            if base.revision != self._base_revision:
                raise TransactionConflictError(
                    f"base graph moved from revision {self._base_revision} to "
                    f"{base.revision} while the transaction was open"
                )
            tasks = {}
            for task_id, task in self.tasks.items():
                committed = task.copy()
                committed.proxy = False
                if task_id in base.tasks:
                    committed.state = base.tasks[task_id].state
                tasks[task_id] = committed
            base.tasks = tasks
            base.dataflow = self.dataflow.copy()
            base.dependency = self.dependency.copy()
            base.mission = set(self.mission)
            base.permanent = set(self.permanent)
            base.metadata = dict(self.metadata)
            base.revision += 1
        self.state = TransactionState.COMMITTED
        logger.debug("committed transaction, base is now at revision %d", base.revision)

    def discard(self) -> None:
        """Drop the working contents, leaving the base untouched."""
        self._check_open()
        self.state = TransactionState.DISCARDED
        logger.debug("discarded transaction opened on revision %d", self._base_revision)
