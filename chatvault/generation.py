"""
Generation driver: binds an AI backend to the message tree.

A reply is created as an empty assistant message in 'generating' state and
grown in place as content chunks arrive. Cancellation is scoped to one
conversation; a cancelled or failed stream keeps whatever content already
arrived and ends in 'failed' status, so the tree never holds a half-written
message that still claims to be generating.
"""

from __future__ import annotations

import asyncio
import logging

from chatvault.backends.base import BaseBackend
from chatvault.storage.models import (
    ROLE_ASSISTANT,
    ROLE_USER,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_GENERATING,
)
from chatvault.tree import MessageTree

logger = logging.getLogger(__name__)


class GenerationDriver:
    """Streams assistant replies into the tree, one conversation at a time."""

    def __init__(self, tree: MessageTree, backend: BaseBackend, model: str = ""):
        self.tree = tree
        self.backend = backend
        self.model = model or backend.default_model
        self._cancel: dict[str, asyncio.Event] = {}

    def is_generating(self, conversation_id: str) -> bool:
        return conversation_id in self._cancel

    def cancel(self, conversation_id: str) -> bool:
        """Abort the in-flight reply for conversation_id, if any."""
        event = self._cancel.get(conversation_id)
        if event is None:
            return False
        event.set()
        return True

    async def send(self, conversation_id: str, content: str) -> str:
        """Append a user message on the active leaf and stream the reply."""
        user_id = self.tree.add_message(
            {"role": ROLE_USER, "content": content}, conversation_id
        )
        return await self.generate(conversation_id, parent_id=user_id)

    async def regenerate(self, message_id: str) -> str | None:
        """
        Produce a new sibling for an assistant reply.
        The old reply stays in the tree as an inactive branch.
        """
        msg = self.tree.store.get_message(message_id)
        if msg is None or msg.is_compression_summary or msg.parent_id is None:
            logger.warning("Cannot regenerate message %s", message_id)
            return None
        return await self.generate(msg.conversation_id, parent_id=msg.parent_id)

    async def generate(self, conversation_id: str, parent_id: str | None = None) -> str:
        """
        Stream one assistant reply under parent_id (default: active leaf).
        Returns the reply's message id whatever the outcome.
        """
        if conversation_id in self._cancel:
            raise RuntimeError(f"Conversation {conversation_id} is already generating")

        history = self.tree.get_messages_for_ai(conversation_id)
        reply_id = self.tree.add_message(
            {"role": ROLE_ASSISTANT, "content": "", "status": STATUS_GENERATING, "model": self.model},
            conversation_id,
            parent_id,
        )
        cancel = asyncio.Event()
        self._cancel[conversation_id] = cancel
        self.tree.set_generating(conversation_id, True)

        content: list[str] = []
        reasoning: list[str] = []

        def on_content(chunk: str) -> None:
            content.append(chunk)
            self.tree.update_message(reply_id, content="".join(content))

        def on_reasoning(chunk: str) -> None:
            reasoning.append(chunk)
            self.tree.update_message(reply_id, reasoning="".join(reasoning))

        stream = asyncio.ensure_future(
            self.backend.stream_chat(history, on_content, on_reasoning, model=self.model)
        )
        stopper = asyncio.ensure_future(cancel.wait())
        status = STATUS_FAILED
        try:
            done, _ = await asyncio.wait({stream, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if stream in done:
                final = stream.result()
                self.tree.update_message(reply_id, content=final, status=STATUS_COMPLETED)
                status = STATUS_COMPLETED
            else:
                stream.cancel()
                await asyncio.gather(stream, return_exceptions=True)
                logger.info(
                    "Generation cancelled in conversation %s after %d chunk(s)",
                    conversation_id, len(content),
                )
        except Exception as e:
            logger.warning("Generation failed in conversation %s: %s", conversation_id, e)
        finally:
            stopper.cancel()
            self._cancel.pop(conversation_id, None)
            if status != STATUS_COMPLETED:
                self.tree.update_message(reply_id, content="".join(content), status=STATUS_FAILED)
            self.tree.set_generating(conversation_id, False)
            self.tree.mark_unread(conversation_id)
        return reply_id
