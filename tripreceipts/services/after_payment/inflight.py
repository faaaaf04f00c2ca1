"""At-most-one in-flight receipt email per order."""

import asyncio
from functools import partial
from typing import Awaitable, Callable

from tripreceipts.common.errors import DispatchInProgressError
from tripreceipts.common.logging import logger
from tripreceipts.common.state_machine import DISPATCH_TRANSITIONS, validate_transition


class InFlightRegistry:
    """Maps an order id to the one dispatch task currently running for it.

    Claiming and releasing happen without an intervening await, so two
    requests racing on the same event loop can never both claim an order.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}

    def state(self, order_id: str) -> str:
        return "SENDING" if order_id in self._tasks else "IDLE"

    def start(self, order_id: str, work: Callable[[], Awaitable[None]]) -> asyncio.Task:
        """Claim `order_id` and run `work`; raises if a dispatch is already running."""

        if order_id in self._tasks:
            raise DispatchInProgressError(order_id)
        validate_transition("IDLE", "SENDING", DISPATCH_TRANSITIONS)
        task = asyncio.create_task(work())
        self._tasks[order_id] = task
        task.add_done_callback(partial(self._settle, order_id))
        return task

    def _settle(self, order_id: str, task: asyncio.Task) -> None:
        outcome = "FAILED" if task.cancelled() or task.exception() is not None else "SENT"
        validate_transition("SENDING", outcome, DISPATCH_TRANSITIONS)
        validate_transition(outcome, "IDLE", DISPATCH_TRANSITIONS)
        if self._tasks.get(order_id) is task:
            del self._tasks[order_id]
        logger.info("receipt_dispatch_settled order_id=%s outcome=%s", order_id, outcome)
