# context.py
# Per-run state shared by the agent loop and every action handler.
#
# One SessionContext exists per agent run. It is built by run.build_session,
# passed explicitly to whatever needs it, and torn down with aclose(). There
# are no module-level singletons.

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

from crkd.config import Settings
from crkd.conversation import ConversationBuffer
from crkd.errors import RequestCancelledError
from crkd.escalation import ModelEscalationPolicy
from crkd.phases import PhaseController
from crkd.workspace import (
    CommandRunner,
    FileOperations,
    FileSearch,
    GitService,
    PathAdjuster,
    UrlFetcher,
)

logger = logging.getLogger(__name__)


class CancelToken:
    """
    Cooperative cancellation flag for one in-flight request.

    Whatever front-end observes the interrupt calls cancel(); the provider
    checks the token between streamed chunks.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def reset(self) -> None:
        self._event.clear()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelledError("Request cancelled")


@dataclass
class SessionContext:
    root: Path
    settings: Settings
    conversation: ConversationBuffer
    escalation: ModelEscalationPolicy
    files: FileOperations
    search: FileSearch
    git: GitService
    fetcher: UrlFetcher
    paths: PathAdjuster
    commands: CommandRunner
    phase_controller: PhaseController | None = None
    cancel_token: CancelToken = field(default_factory=CancelToken)

    async def aclose(self) -> None:
        """Release network clients and forget per-run state."""
        await self.fetcher.aclose()
        self.escalation.reset()
        self.conversation.clear()
        logger.debug("Session context closed")
