from .assembler import MessageAssembler, merge_messages, parse_stream_line, trailing_assistant_count
from .durable_chat import ChatClientError, DurableChat, PromptMessage

__all__ = [
    "ChatClientError",
    "DurableChat",
    "MessageAssembler",
    "PromptMessage",
    "merge_messages",
    "parse_stream_line",
    "trailing_assistant_count",
]
