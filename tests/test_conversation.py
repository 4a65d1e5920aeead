import sys
import pathlib
import unittest

_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from conversation import Conversation, Message, ToolCallRequest, generate_tool_call_id


class TestMessage(unittest.TestCase):

    def test_user_message_wire_shape(self):
        self.assertEqual(Message.user("hi").to_dict(), {"role": "user", "content": "hi"})

    def test_assistant_with_tool_calls_has_no_text(self):
        call = ToolCallRequest(id="c1", name="calculator", arguments='{"expression": "2+2"}')
        msg = Message.assistant("", (call,))
        self.assertIsNone(msg.content)
        self.assertEqual(msg.to_dict(), {
            "role": "assistant",
            "content": None,
            "tool_calls": [{
                "id": "c1",
                "type": "function",
                "function": {"name": "calculator", "arguments": '{"expression": "2+2"}'},
            }],
        })

    def test_empty_assistant_text_is_kept_without_tool_calls(self):
        self.assertEqual(Message.assistant("").to_dict(), {"role": "assistant", "content": ""})
        self.assertIsNone(Message.assistant().content)

    def test_empty_arguments_render_as_empty_object(self):
        call = ToolCallRequest(id="c1", name="ping")
        self.assertEqual(call.to_dict()["function"]["arguments"], "{}")

    def test_tool_message_references_call(self):
        self.assertEqual(Message.tool("c1", "4").to_dict(),
                         {"role": "tool", "content": "4", "tool_call_id": "c1"})

    def test_generated_ids(self):
        self.assertEqual(generate_tool_call_id(3), "call_3")
        self.assertEqual(generate_tool_call_id(0, "tc"), "tc_0")


class TestConversation(unittest.TestCase):

    def _exchange(self, conv: Conversation, call_id: str) -> None:
        conv.append(Message.user(f"question {call_id}"))
        conv.append(Message.assistant(None, (ToolCallRequest(call_id, "calculator", "{}"),)))
        conv.append(Message.tool(call_id, "4"))
        conv.append(Message.assistant("answer"))

    def test_append_keeps_order_and_duplicates(self):
        conv = Conversation()
        conv.append(Message.user("same"))
        conv.append(Message.user("same"))
        self.assertEqual(len(conv), 2)
        self.assertEqual([m.content for m in conv], ["same", "same"])

    def test_snapshot_is_a_copy(self):
        conv = Conversation()
        conv.append(Message.user("a"))
        snap = conv.snapshot()
        conv.append(Message.user("b"))
        self.assertEqual(len(snap), 1)
        self.assertEqual(len(conv.snapshot()), 2)

    def test_unbounded_by_default(self):
        conv = Conversation()
        for i in range(50):
            self._exchange(conv, f"c{i}")
        self.assertEqual(len(conv.snapshot()), 200)
        self.assertEqual(len(conv), 200)

    def test_window_keeps_newest_messages(self):
        conv = Conversation()
        self._exchange(conv, "c1")
        self._exchange(conv, "c2")
        window = conv.snapshot(max_messages=4)
        self.assertEqual([m.content for m in window], ["question c2", None, "4", "answer"])
        self.assertEqual(len(conv), 8)

    def test_window_widens_to_keep_tool_call_pair(self):
        conv = Conversation()
        self._exchange(conv, "c1")
        window = conv.snapshot(max_messages=2)
        self.assertEqual([m.role for m in window], ["assistant", "tool", "assistant"])
        self.assertEqual(window[0].tool_calls[0].id, "c1")
        self.assertEqual(window[1].tool_call_id, "c1")
        self.assertEqual(window[2].content, "answer")

    def test_single_message_window_mid_exchange_is_not_empty(self):
        conv = Conversation()
        conv.append(Message.user("question"))
        conv.append(Message.assistant(None, (ToolCallRequest("c1", "calculator", "{}"),)))
        conv.append(Message.tool("c1", "4"))
        window = conv.snapshot(max_messages=1)
        self.assertEqual([m.role for m in window], ["assistant", "tool"])
        self.assertEqual(window[1].tool_call_id, "c1")

    def test_to_dicts_uses_window(self):
        conv = Conversation()
        self._exchange(conv, "c1")
        self.assertEqual(conv.to_dicts(1), [{"role": "assistant", "content": "answer"}])


if __name__ == "__main__":
    unittest.main()
