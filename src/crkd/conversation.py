# conversation.py
# Ordered, deduplicated message log with a cheap token budget.
#
# The buffer exclusively owns the log and the system instructions. System
# instructions are never stored as a log entry: get_messages() prepends them
# as a synthetic leading system message, and cleanup_context() never evicts
# them.

import logging
import math
import re
from datetime import datetime, timezone
from pathlib import Path

from crkd.errors import EmptyContentError, InvalidRoleError
from crkd.models import Message

logger = logging.getLogger(__name__)

VALID_ROLES = ("system", "user", "assistant")
_PHASE_PROMPT_RE = re.compile(r"<phase_prompt>.*?</phase_prompt>", re.DOTALL)


def estimate_token_count(text: str) -> int:
    """ceil(len / 4). An approximation, not a tokenizer."""
    return math.ceil(len(text) / 4)


class ConversationBuffer:
    def __init__(self, log_path: Path | None = None) -> None:
        self._history: list[Message] = []
        self._system_instructions: str | None = None
        self._log_path = log_path
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_path.write_text("", encoding="utf-8")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def add_message(self, role: str, content: str) -> bool:
        """
        Append a message. Returns False when an entry with the same role and
        trimmed content already exists anywhere in the log.

        Raises InvalidRoleError or EmptyContentError on caller misuse.
        """
        if role not in VALID_ROLES:
            raise InvalidRoleError(f"Invalid role: {role}")
        trimmed = content.strip()
        if not trimmed:
            raise EmptyContentError("Content cannot be empty")

        for existing in self._history:
            if existing.role == role and existing.content.strip() == trimmed:
                logger.debug("Skipped duplicate %s message", role)
                return False

        message = Message(role=role, content=content)
        self._history.append(message)
        self._log_message(message)
        return True

    def get_messages(self) -> list[Message]:
        if self._system_instructions:
            return [Message(role="system", content=self._system_instructions), *self._history]
        return list(self._history)

    def as_dicts(self) -> list[dict]:
        """Messages in the shape chat-completion clients expect."""
        return [m.model_dump() for m in self.get_messages()]

    def __len__(self) -> int:
        return len(self._history)

    # ------------------------------------------------------------------
    # System instructions
    # ------------------------------------------------------------------

    def set_system_instructions(self, instructions: str) -> None:
        logger.debug(
            "System instructions updated",
            extra={
                "had_previous": self._system_instructions is not None,
                "length": len(instructions),
            },
        )
        self._system_instructions = instructions

    def get_system_instructions(self) -> str | None:
        return self._system_instructions

    # ------------------------------------------------------------------
    # Token budget
    # ------------------------------------------------------------------

    estimate_token_count = staticmethod(estimate_token_count)

    def get_total_token_count(self) -> int:
        total = self._conversation_tokens()
        if self._system_instructions:
            total += estimate_token_count(self._system_instructions)
        return total

    def cleanup_context(self, max_tokens: int) -> bool:
        """
        Evict oldest messages until the conversation fits into
        max_tokens minus the system-instruction tokens.

        Returns True if anything was evicted.
        """
        if not self._history:
            return False

        system_tokens = (
            estimate_token_count(self._system_instructions) if self._system_instructions else 0
        )
        available = max_tokens - system_tokens
        conversation_tokens = self._conversation_tokens()
        if conversation_tokens <= available:
            return False

        initial_count = len(self._history)
        while conversation_tokens > available and self._history:
            oldest = self._history.pop(0)
            conversation_tokens -= estimate_token_count(oldest.content)

        logger.info(
            "Context cleanup evicted %d message(s)",
            initial_count - len(self._history),
            extra={
                "max_tokens": max_tokens,
                "system_tokens": system_tokens,
                "remaining_messages": len(self._history),
            },
        )
        return True

    # ------------------------------------------------------------------
    # Phase-scoped content
    # ------------------------------------------------------------------

    def cleanup_phase_content(self) -> int:
        """
        Strip <phase_prompt> blocks from every stored message and drop the
        ones left empty. Returns the number of messages dropped.
        """
        kept: list[Message] = []
        for message in self._history:
            content = _PHASE_PROMPT_RE.sub("", message.content)
            if content.strip():
                kept.append(Message(role=message.role, content=content))
        dropped = len(self._history) - len(kept)
        self._history = kept
        logger.debug("Phase content cleaned, %d message(s) dropped", dropped)
        return dropped

    def clear(self) -> None:
        logger.debug(
            "Context cleared",
            extra={
                "cleared_messages": bool(self._history),
                "cleared_instructions": self._system_instructions is not None,
            },
        )
        self._history = []
        self._system_instructions = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _conversation_tokens(self) -> int:
        return sum(estimate_token_count(m.content) for m in self._history)

    def _log_message(self, message: Message) -> None:
        logger.debug("%s: %s", message.role, message.content[:200])
        if self._log_path is None:
            return
        timestamp = datetime.now(timezone.utc).isoformat()
        with open(self._log_path, "a", encoding="utf-8") as fh:
            fh.write(f"[{timestamp}] {message.role}: {message.content}\n")
