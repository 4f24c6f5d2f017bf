"""Drop CLI bookkeeping messages from conversation transcripts.

The agent logs local slash-command invocations and their output as
user messages. They are noise in a conversation view.
"""
from __future__ import annotations

from agentrelay.shared.models.conversation import ConversationMessage

HIDDEN_USER_PREFIXES = (
    "Caveat: ",
    "<command-name>",
    "<local-command-stdout>",
)


def is_hidden(message: ConversationMessage) -> bool:
    if message.type != "user":
        return False
    return message.text.lstrip().startswith(HIDDEN_USER_PREFIXES)


def filter_messages(messages: list[ConversationMessage]) -> list[ConversationMessage]:
    return [m for m in messages if not is_hidden(m)]
