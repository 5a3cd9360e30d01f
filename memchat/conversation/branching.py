"""Regenerate / edit truncation and branch navigation.

Messages dropped by a regenerate or an edit are not thrown away: they move
to ``Conversation.branches``. A resent user message gets the same parent as
the one it replaces, so both are siblings and :func:`navigate_branch` can
swap between them (and everything that followed each of them).
"""

import logging

from ..exceptions import ChatInputError
from .models import Conversation, Message

logger = logging.getLogger(__name__)


def append_message(conv: Conversation, message: Message) -> Message:
    """Append *message*, linking it to the current last message."""
    message.parent_id = conv.messages[-1].id if conv.messages else None
    conv.messages.append(message)
    refresh_sibling_info(conv)
    return message


def _siblings(conv: Conversation, message: Message) -> list[Message]:
    pool = conv.messages + conv.branches
    siblings = [
        m for m in pool if m.parent_id == message.parent_id and m.role == message.role
    ]
    siblings.sort(key=lambda m: m.timestamp)
    return siblings


def refresh_sibling_info(conv: Conversation) -> None:
    for message in conv.messages:
        siblings = _siblings(conv, message)
        message.total_siblings = len(siblings)
        message.sibling_index = next(
            (i for i, s in enumerate(siblings) if s.id == message.id), 0
        )


def _cut(conv: Conversation, index: int) -> list[Message]:
    removed = conv.messages[index:]
    conv.messages = conv.messages[:index]
    conv.branches.extend(removed)
    if conv.summarized_up_to > index:
        # The summary covers turns that are no longer on the active path.
        logger.info("Discarding summary of conversation %s after truncation", conv.id)
        conv.summary = None
        conv.summarized_up_to = 0
    return removed


def truncate_for_regenerate(conv: Conversation) -> tuple[Message, list[Message]]:
    """Drop the last user message and everything after it.

    Returns that user message (to be resent) and the dropped messages.
    """
    for index in range(len(conv.messages) - 1, -1, -1):
        if conv.messages[index].role == "user":
            last_user = conv.messages[index]
            return last_user, _cut(conv, index)
    raise ChatInputError("Nothing to regenerate: no user message in this conversation")


def truncate_for_edit(conv: Conversation, message_id: str) -> tuple[Message, list[Message]]:
    for index, message in enumerate(conv.messages):
        if message.id == message_id:
            if message.role != "user":
                raise ChatInputError("Can only edit user messages")
            return message, _cut(conv, index)
    raise ChatInputError(f"Message {message_id} not found")


def navigate_branch(
    conv: Conversation, message_id: str, branch_index: int
) -> tuple[list[Message], list[Message]]:
    """Make sibling *branch_index* of *message_id* the active branch.

    Returns ``(removed, added)``: the messages that left and joined the
    active path.
    """
    target = next((m for m in conv.messages if m.id == message_id), None)
    if target is None:
        raise ChatInputError(f"Message {message_id} not found")
    siblings = _siblings(conv, target)
    if not 0 <= branch_index < len(siblings):
        raise ChatInputError(
            f"Branch index {branch_index} out of range (0-{len(siblings) - 1})"
        )
    chosen = siblings[branch_index]
    if chosen.id == target.id:
        return [], []

    chain = [chosen]
    remaining = [m for m in conv.branches if m.id != chosen.id]
    last_id = chosen.id
    while True:
        children = [m for m in remaining if m.parent_id == last_id]
        if not children:
            break
        child = max(children, key=lambda m: m.timestamp)
        chain.append(child)
        remaining.remove(child)
        last_id = child.id

    index = conv.messages.index(target)
    removed = _cut(conv, index)
    chain_ids = {m.id for m in chain}
    conv.branches = [m for m in conv.branches if m.id not in chain_ids]
    conv.messages.extend(chain)
    refresh_sibling_info(conv)
    return removed, chain
