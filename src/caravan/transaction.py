"""Transactional step execution with coordinated rollback.

A ``Transaction`` runs an ordered list of steps one after another. Each
step may come with an undo action, given up front or registered while
the step runs through ``Transaction.on_rollback``. An undo action is only
kept once its step's forward action has returned normally.

When a step raises, the kept undo actions run in reverse completion
order. Every undo action is attempted even if an earlier one fails; such
failures are logged and collected in ``rollback_errors``. The original
exception is then re-raised unchanged.

States::

    pending -> running -> committed
                       -> rolling_back -> rolled_back
"""

import enum
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

from .logging import log_scope

logger = logging.getLogger(__name__)

Action = Callable[[], Union[Awaitable[Any], Any]]


class TransactionState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"


@dataclass
class TransactionStep:
    """A named unit of work in a transaction.

    Attributes:
        name: Step name (the task name for recipe steps)
        action: Forward action; plain callable or coroutine function
        rollback: Undo action registered before the step runs (optional)
    """

    name: str
    action: Action
    rollback: Action | None = None


async def _call(action: Action) -> Any:
    result = action()
    if inspect.isawaitable(result):
        result = await result
    return result


class Transaction:
    """Runs steps in order and unwinds completed ones on failure.

    Example:
        >>> tx = Transaction("deploy")
        >>> tx.add_step("update_code", update_code)
        >>> tx.add_step("symlink", symlink)
        >>> await tx.run()
        >>> tx.state
        <TransactionState.COMMITTED: 'committed'>
    """

    def __init__(self, name: str = "transaction", steps: list[TransactionStep] | None = None) -> None:
        self.name = name
        self.steps: list[TransactionStep] = list(steps or [])
        self.state = TransactionState.PENDING
        self.current_step: TransactionStep | None = None
        # (step name, undo action) for every completed step, in completion order
        self.rollbacks: list[tuple[str, Action]] = []
        self.rolled_back: list[str] = []
        self.rollback_errors: list[tuple[str, Exception]] = []
        self._pending: list[Action] = []

    def add_step(self, name: str, action: Action, rollback: Action | None = None) -> TransactionStep:
        """Append a step to run after those already added."""
        if self.state is not TransactionState.PENDING:
            raise RuntimeError(f"cannot add steps to a {self.state.value} transaction")
        step = TransactionStep(name, action, rollback)
        self.steps.append(step)
        return step

    def on_rollback(self, action: Action) -> None:
        """Register an undo action for the step currently running.

        The action is kept only if the step completes.
        """
        if self.state is not TransactionState.RUNNING or self.current_step is None:
            raise RuntimeError("on_rollback called outside a running step")
        self._pending.append(action)

    async def run(self) -> None:
        """Run every step; roll back and re-raise if one fails."""
        if self.state is not TransactionState.PENDING:
            raise RuntimeError(f"transaction {self.name} has already run")

        self.state = TransactionState.RUNNING
        with log_scope(logger, "transaction", level=logging.DEBUG, name=self.name):
            for step in self.steps:
                self.current_step = step
                self._pending = [step.rollback] if step.rollback is not None else []
                try:
                    await _call(step.action)
                except Exception:
                    self._pending = []
                    logger.error(f"{self.name}: step {step.name} failed, rolling back")
                    await self._unwind()
                    raise

                self.rollbacks.extend((step.name, undo) for undo in self._pending)
                self._pending = []

            self.current_step = None
            self.rollbacks = []
            self.state = TransactionState.COMMITTED
            logger.debug(f"{self.name}: committed {len(self.steps)} step(s)")

    async def _unwind(self) -> None:
        self.state = TransactionState.ROLLING_BACK
        self.current_step = None

        for step_name, undo in reversed(self.rollbacks):
            logger.info(f"{self.name}: rolling back {step_name}")
            try:
                await _call(undo)
            except Exception as e:
                logger.error(f"{self.name}: rollback of {step_name} failed: {e}")
                self.rollback_errors.append((step_name, e))
            self.rolled_back.append(step_name)

        self.rollbacks = []
        self.state = TransactionState.ROLLED_BACK
