# session.py
# Interactive request loop.
#
#   IDLE -> AWAITING_INPUT -> DISPATCHING/STREAMING -> COMPLETED -> AWAITING_INPUT
#                                   |
#                                   +-> CANCELLED -> same input re-submitted
#
# The loop never touches the terminal directly. A front-end supplies an async
# read_line() and calls cancel() when it observes an interrupt.

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

from crkd import display
from crkd.agent import Agent
from crkd.errors import CrkdError, RequestCancelledError, SessionTimeoutError
from crkd.models import TurnOptions, TurnResult

logger = logging.getLogger(__name__)

ReadLine = Callable[[], Awaitable[str | None]]


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_INPUT = "awaiting_input"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    CLOSED = "closed"


class InteractiveSession:
    """
    Reads lines, runs each through the agent, exits on the exit keyword.

    Exit status: 0 for the exit keyword or end of input, 1 when the idle
    timeout elapses.

    Example:
        session = InteractiveSession(agent, TurnOptions(timeout=300), frontend.read_line)
        status = await session.run()
    """

    def __init__(
        self,
        agent: Agent,
        options: TurnOptions,
        read_line: ReadLine,
        exit_keyword: str = "exit",
        initial_message: str | None = None,
    ) -> None:
        self.agent = agent
        self.options = options
        self._read_line = read_line
        self.exit_keyword = exit_keyword.lower()
        self.initial_message = initial_message
        self.state = SessionState.IDLE
        self.last_result: TurnResult | None = None
        self.cancellations = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Front-end hooks
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Abort the in-flight request. Ignored while waiting for input."""
        if self.state in (SessionState.DISPATCHING, SessionState.STREAMING):
            logger.info("Cancel requested")
            self.agent.context.cancel_token.cancel()

    async def cleanup(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.state = SessionState.CLOSED
        await self.agent.context.aclose()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _read(self) -> str | None:
        self.state = SessionState.AWAITING_INPUT
        if not self.options.timeout:
            return await self._read_line()
        try:
            return await asyncio.wait_for(self._read_line(), timeout=self.options.timeout)
        except asyncio.TimeoutError:
            raise SessionTimeoutError(f"No input received within {self.options.timeout:g}s") from None

    async def _turn(self, message: str) -> bool:
        """
        Run one agent turn raced against the cancel token.
        Returns False when the turn was cancelled and must be re-submitted.
        """
        token = self.agent.context.cancel_token
        token.reset()
        self.state = SessionState.STREAMING if self.options.stream else SessionState.DISPATCHING

        task = asyncio.ensure_future(self.agent.execute(message, self.options))
        waiter = asyncio.ensure_future(token.wait())
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        waiter.cancel()

        if task not in done:
            task.cancel()
            await asyncio.wait({task})
            if not task.cancelled() and task.exception() is not None:
                logger.debug("Cancelled turn ended with %r", task.exception())
            return self._cancelled()

        try:
            self.last_result = task.result()
        except RequestCancelledError:
            return self._cancelled()
        except CrkdError as exc:
            logger.error("Turn failed: %s", exc)
            display.error(str(exc))
        self.state = SessionState.COMPLETED
        return True

    def _cancelled(self) -> bool:
        self.state = SessionState.CANCELLED
        self.cancellations += 1
        display.cancelled()
        return False

    async def run(self) -> int:
        pending = self.initial_message
        try:
            while True:
                if pending is None:
                    try:
                        line = await self._read()
                    except SessionTimeoutError as exc:
                        logger.info("%s", exc)
                        display.timed_out(self.options.timeout)
                        return 1
                    if line is None or line.strip().lower() == self.exit_keyword:
                        display.goodbye()
                        return 0
                    if not line.strip():
                        continue
                    pending = line.strip()

                if await self._turn(pending):
                    pending = None
        finally:
            await self.cleanup()
