from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

USER = "user"
ASSISTANT = "assistant"
TOOL = "tool"


def generate_tool_call_id(index: int, prefix: str = "call") -> str:
    return f"{prefix}_{index}"


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    name: str
    arguments: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments or "{}"},
        }


@dataclass(frozen=True)
class Message:
    role: str
    content: Optional[str] = None
    tool_calls: Tuple[ToolCallRequest, ...] = ()
    tool_call_id: Optional[str] = None

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role=USER, content=text)

    @classmethod
    def assistant(cls, content: Optional[str] = None,
                  tool_calls: Tuple[ToolCallRequest, ...] = ()) -> "Message":
        tool_calls = tuple(tool_calls)
        if tool_calls and not content:
            content = None
        return cls(role=ASSISTANT, content=content, tool_calls=tool_calls)

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> "Message":
        return cls(role=TOOL, content=content, tool_call_id=tool_call_id)

    def to_dict(self) -> Dict[str, Any]:
        """Render the message in the chat-completions wire shape."""
        message: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.role == TOOL:
            message["tool_call_id"] = self.tool_call_id
        return message


class Conversation:
    """Append-only, chronologically ordered message history of one session.

    Nothing is ever removed from the stored history. ``snapshot`` can return a
    window over the newest messages. A window that would open on a ``tool``
    message is widened back to the assistant message holding its call.
    """

    def __init__(self):
        self._messages: List[Message] = []

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def snapshot(self, max_messages: int = 0) -> Tuple[Message, ...]:
        messages = self._messages
        if not max_messages or len(messages) <= max_messages:
            return tuple(messages)
        # widen backwards so a tool message keeps the call it answers
        start = len(messages) - max_messages
        while start > 0 and messages[start].role == TOOL:
            start -= 1
        return tuple(messages[start:])

    def to_dicts(self, max_messages: int = 0) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self.snapshot(max_messages)]

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))
