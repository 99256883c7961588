"""Tests for conductor.context (Conversation, serialization helpers)."""

from __future__ import annotations

import json
from pathlib import Path

from conductor.context import Conversation, _dict_to_message, _message_to_dict
from conductor.llm.message import (
    Failure,
    FailureKind,
    Message,
    Success,
    ToolUsePart,
)


# ---------------------------------------------------------------------------
# _message_to_dict / _dict_to_message
# ---------------------------------------------------------------------------


class TestMessageSerialization:
    def test_text_message(self) -> None:
        d = _message_to_dict(Message.user("hello world"))
        assert d == {"role": "user", "content": "hello world"}
        assert _dict_to_message(d).text == "hello world"

    def test_assistant_with_tool_uses(self) -> None:
        tu = ToolUsePart(id="t1", name="echo", arguments='{"text": "x"}')
        msg = Message.assistant(text="Let me check", tool_uses=[tu])
        d = _message_to_dict(msg)
        assert d["tool_uses"] == [{"id": "t1", "name": "echo", "arguments": '{"text": "x"}'}]

        msg2 = _dict_to_message(d)
        assert msg2.text == "Let me check"
        assert msg2.tool_uses[0].arguments == {"text": "x"}

    def test_failure_result_keeps_kind(self) -> None:
        msg = Message.tool_result("t1", Failure(FailureKind.RATE_LIMITED, "slow", retryable=True))
        d = _message_to_dict(msg)
        assert d["tool_results"][0]["outcome"] == {
            "ok": False,
            "kind": "rate_limited",
            "message": "slow",
            "retryable": True,
        }

        outcome = _dict_to_message(d).tool_results[0].outcome
        assert isinstance(outcome, Failure)
        assert outcome.kind is FailureKind.RATE_LIMITED
        assert outcome.retryable is True

    def test_success_result(self) -> None:
        d = _message_to_dict(Message.tool_result("t1", Success(payload="done")))
        result = _dict_to_message(d).tool_results[0]
        assert result.tool_use_id == "t1"
        assert result.is_error is False
        assert result.content == "done"


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class TestConversation:
    def test_append_and_len(self) -> None:
        conv = Conversation()
        conv.append(Message.user("a"))
        conv.extend([Message.assistant("b"), Message.user("c")])
        assert len(conv) == 3

    def test_get_messages_returns_copy_of_list(self) -> None:
        conv = Conversation(messages=[Message.user("a")])
        msgs = conv.get_messages()
        msgs.append(Message.user("b"))
        assert len(conv) == 1

    def test_copy_is_independent(self) -> None:
        conv = Conversation(messages=[Message.user("a")], thread_id="t")
        clone = conv.copy()
        clone.append(Message.assistant("b"))
        clone.messages[0].parts.clear()
        assert len(conv) == 1
        assert conv.messages[0].text == "a"
        assert clone.thread_id == "t"

    def test_pending_tool_uses(self) -> None:
        conv = Conversation(
            messages=[
                Message.user("go"),
                Message.assistant(
                    tool_uses=[
                        ToolUsePart(id="a", name="echo"),
                        ToolUsePart(id="b", name="echo"),
                    ]
                ),
                Message.tool_result("a", Success(payload="ok")),
            ]
        )
        assert conv.pending_tool_uses() == ["b"]

    def test_estimate_tokens_grows_with_content(self) -> None:
        short = Conversation(messages=[Message.user("hi")])
        long = Conversation(messages=[Message.user("hi " * 400)])
        assert long.estimate_tokens() > short.estimate_tokens() > 0


# ---------------------------------------------------------------------------
# save / restore
# ---------------------------------------------------------------------------


class TestPersistence:
    async def test_save_writes_jsonl(self, tmp_path: Path) -> None:
        conv = Conversation(messages=[Message.user("hi"), Message.assistant("hello")])
        path = tmp_path / "nested" / "thread.jsonl"
        await conv.save(path)

        lines = path.read_text().splitlines()
        assert [json.loads(line)["role"] for line in lines] == ["user", "assistant"]

    async def test_restore_round_trip(self, tmp_path: Path) -> None:
        conv = Conversation(
            messages=[
                Message.user("go"),
                Message.assistant(tool_uses=[ToolUsePart(id="a", name="echo", arguments="{}")]),
                Message.tool_result("a", Success(payload="ok")),
                Message.assistant("done"),
            ]
        )
        path = tmp_path / "thread.jsonl"
        await conv.save(path)

        restored = await Conversation.restore(path, thread_id="t1")
        assert restored.thread_id == "t1"
        assert [m.role for m in restored.messages] == ["user", "assistant", "tool", "assistant"]
        assert restored.pending_tool_uses() == []
        assert restored.messages[-1].text == "done"

    async def test_restore_missing_file(self, tmp_path: Path) -> None:
        restored = await Conversation.restore(tmp_path / "nope.jsonl")
        assert len(restored) == 0

    async def test_restore_skips_malformed_lines(self, tmp_path: Path) -> None:
        path = tmp_path / "thread.jsonl"
        path.write_text(
            '{"role": "user", "content": "hi"}\n'
            "not json at all\n"
            "\n"
            '{"meta": true}\n'
            '{"role": "assistant", "content": "hello"}\n'
        )
        restored = await Conversation.restore(path)
        assert [m.text for m in restored.messages] == ["hi", "hello"]
