"""
Auto-summarizer: context window management for long conversations.

When a conversation's estimated token count exceeds `token_budget`, the
older part of the active path is folded into a single summary node in the
message tree (MessageTree.apply_compression). Originals are flagged, not
deleted, and getMessagesForAI sends the summary in their place.

Config (in config.yaml):

    auto_summarization:
      enabled: false
      token_budget: 3000       # trigger when history exceeds this
      summary_model: ""        # defaults to backend.default_model
      keep_last: 4             # always keep the N most recent messages unfolded

Usage:

    from chatvault.summarizer import maybe_summarize
    summary_id = await maybe_summarize(tree, backend, conversation_id, cfg)

Fails soft: if the summary call fails or returns nothing, the tree is left
untouched and None is returned.
"""
from __future__ import annotations

import logging

from chatvault.backends.base import BackendError, BaseBackend
from chatvault.tree import MessageTree

logger = logging.getLogger(__name__)


def _estimate_tokens(messages: list[dict]) -> int:
    """Rough token estimate: ~4 chars per token for English text."""
    total_chars = sum(len(str(m.get("content", ""))) for m in messages)
    return total_chars // 4


def _build_prompt(messages) -> str:
    history_text = "\n".join(
        f"{m.role.upper()}: {m.content[:500]}" for m in messages
    )
    return (
        "Summarise the following conversation history concisely. "
        "Preserve key facts, decisions, and context. "
        "Write in third person. Be brief, 3-6 sentences maximum.\n\n"
        f"{history_text}"
    )


async def summarize(
    tree: MessageTree,
    backend: BaseBackend,
    conversation_id: str,
    keep_last: int = 4,
    model: str | None = None,
) -> str | None:
    """Fold all but the last keep_last active messages. Returns the summary id."""
    eligible = tree.prepare_compression(conversation_id)
    if len(eligible) <= keep_last:
        return None

    to_fold = eligible[:-keep_last] if keep_last else eligible
    try:
        summary_text = await backend.complete(
            [{"role": "user", "content": _build_prompt(to_fold)}],
            model=model,
            temperature=0,
            max_tokens=512,
        )
    except BackendError as e:
        logger.warning("auto_summarizer: LLM call failed: %s", e)
        return None

    summary_text = summary_text.strip()
    if not summary_text:
        logger.warning("auto_summarizer: empty summary returned, leaving history unfolded")
        return None

    summary_id = tree.apply_compression(
        conversation_id, summary_text, [m.id for m in to_fold]
    )
    logger.info(
        "auto_summarizer: folded %d msgs into %s, %d kept",
        len(to_fold), summary_id, len(eligible) - len(to_fold),
    )
    return summary_id


async def maybe_summarize(
    tree: MessageTree,
    backend: BaseBackend,
    conversation_id: str,
    cfg: dict,
) -> str | None:
    """Summarize only when enabled and the AI history is over budget."""
    summ_cfg = cfg.get("auto_summarization", {})
    if not summ_cfg.get("enabled", False):
        return None

    token_budget = int(summ_cfg.get("token_budget", 3000))
    keep_last    = int(summ_cfg.get("keep_last", 4))
    model        = (
        summ_cfg.get("summary_model")
        or cfg.get("backend", {}).get("default_model", "")
    )
    if not model:
        logger.warning("auto_summarizer: no model configured, skipping")
        return None

    estimated = _estimate_tokens(tree.get_messages_for_ai(conversation_id))
    if estimated <= token_budget:
        return None

    return await summarize(tree, backend, conversation_id, keep_last=keep_last, model=model)
