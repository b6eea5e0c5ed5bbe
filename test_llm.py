"""
Tests for the tool-calling loop, code cleanup and generated-code validation.
"""

import asyncio

import pytest

from agent.executor import validate_generated_code
from agent.llm import TRUNCATION_MARKER, ToolCallingClient, clean_generated_code
from agent.prompts import WRAP_UP_NUDGE
from bedrock_service import BedrockError
from config import app_config
from conftest import FakeSandbox, FakeService, text_reply, tool_reply


def run_loop(service, sandbox, **kwargs):
    client = ToolCallingClient(service=service)
    kwargs.setdefault("tool_names", ["list_files", "read_file", "write_file"])
    return asyncio.run(_run(client, sandbox, kwargs))


async def _run(client, sandbox, kwargs):
    await sandbox.initialize()
    return await client.run(system_prompt="system", user_content="task", sandbox=sandbox, **kwargs)


def test_plain_answer_ends_loop():
    service = FakeService([text_reply("all done", 100, 20)])
    result = run_loop(service, FakeSandbox())
    assert result.content == "all done"
    assert result.rounds == 1
    assert result.stop_reason == "final"
    assert result.tool_calls == []
    assert result.usage.input_tokens == 100 and result.usage.output_tokens == 20
    assert set(service.calls[0]["tools"]) == {"list_files", "read_file", "write_file"}


def test_tool_calls_are_executed_in_order():
    sandbox = FakeSandbox(files={"a.py": "A"})
    service = FakeService([
        tool_reply(("read_file", {"path": "a.py"}), ("write_file", {"path": "b.py", "content": "B"})),
        text_reply("wrote b.py"),
    ])
    seen = []

    async def hook(record):
        seen.append((record.name, record.round, record.result.success))

    result = run_loop(service, sandbox, on_tool_call=hook)
    assert [tc.name for tc in result.tool_calls] == ["read_file", "write_file"]
    assert seen == [("read_file", 1, True), ("write_file", 1, True)]
    assert sandbox.files["b.py"] == "B"

    tool_turn = service.calls[1]["messages"][-1]
    assert tool_turn["role"] == "user"
    assert [b["tool_use_id"] for b in tool_turn["content"]] == ["toolu_0", "toolu_1"]
    assert tool_turn["content"][0]["content"] == "A"


def test_failed_tool_is_fed_back_as_error():
    """A failing tool becomes an is_error tool_result, not an exception."""
    service = FakeService([tool_reply(("read_file", {"path": "missing.py"})), text_reply("gave up")])
    result = run_loop(service, FakeSandbox())
    assert result.content == "gave up"
    block = service.calls[1]["messages"][-1]["content"][0]
    assert block["is_error"] is True
    assert "File not found" in block["content"]


def test_tool_outside_allowed_set_is_refused():
    sandbox = FakeSandbox()
    service = FakeService([tool_reply(("write_file", {"path": "x.py", "content": "x"})), text_reply("ok")])
    result = run_loop(service, sandbox, tool_names=["read_file", "list_files"])
    assert "x.py" not in sandbox.files
    assert sandbox.calls == []
    assert result.tool_calls[0].result.success is False
    assert "not available" in result.tool_calls[0].result.error


def test_unknown_tool_name_is_refused():
    service = FakeService([tool_reply(("rm_rf", {})), text_reply("ok")])
    result = run_loop(service, FakeSandbox(), tool_names=["read_file", "rm_rf"])
    assert result.tool_calls[0].result.success is False
    assert "Unknown tool" in result.tool_calls[0].result.error


def test_large_tool_results_are_truncated():
    sandbox = FakeSandbox(files={"big.txt": "x" * 5000})
    service = FakeService([tool_reply(("read_file", {"path": "big.txt"})), text_reply("ok")])
    run_loop(service, sandbox)
    content = service.calls[1]["messages"][-1]["content"][0]["content"]
    assert content.endswith(TRUNCATION_MARKER)
    assert len(content) == app_config.tool_result_limit + len(TRUNCATION_MARKER)


def test_round_limit():
    service = FakeService([tool_reply(("list_files", {})) for _ in range(5)])
    result = run_loop(service, FakeSandbox(), max_rounds=2)
    assert result.stop_reason == "max_rounds"
    assert result.rounds == 2
    assert len(service.calls) == 2


def test_low_budget_reduces_rounds():
    service = FakeService([tool_reply(("list_files", {}), input_tokens=1, output_tokens=1) for _ in range(20)])
    result = run_loop(service, FakeSandbox(), token_budget=1000)
    assert result.stop_reason == "max_rounds"
    assert result.rounds == app_config.low_budget_tool_rounds


def test_budget_nudge_then_hard_stop():
    service = FakeService([tool_reply(("list_files", {}), input_tokens=45, output_tokens=45) for _ in range(5)])
    result = run_loop(service, FakeSandbox(), token_budget=100)
    assert WRAP_UP_NUDGE not in service.calls[0]["system_prompt"]
    assert service.calls[1]["system_prompt"].endswith(WRAP_UP_NUDGE)
    assert result.stop_reason == "budget"
    assert result.rounds == 2
    assert result.usage.total_tokens == 180


def test_transport_errors_propagate():
    service = FakeService([BedrockError("throttled")])
    with pytest.raises(BedrockError):
        run_loop(service, FakeSandbox())


def test_generate_code_cleans_output():
    service = FakeService([text_reply("Here is the updated code:\n```python\nimport os\nprint(os.sep)\n```\n"
                                      "Key Changes: printed the separator")])
    client = ToolCallingClient(service=service)
    generated = asyncio.run(client.generate_code("Modify it", "File path: a.py", "import os\n"))
    assert generated.code == "import os\nprint(os.sep)"
    assert generated.usage.total_tokens == 20
    assert "import os" in service.calls[0]["messages"][0]["content"]


# ============================================================
# clean_generated_code
# ============================================================

def test_clean_takes_longest_fenced_block():
    text = "```bash\nnpm i\n```\n\n```js\nconst a = 1;\nconst b = 2;\n```"
    assert clean_generated_code(text) == "const a = 1;\nconst b = 2;"


def test_clean_strips_lead_in_and_trailing_explanation():
    text = "Here is the code:\nimport os\nprint(os.name)\n\nExplanation: uses os"
    assert clean_generated_code(text) == "import os\nprint(os.name)\n"


def test_clean_keeps_code_that_looks_like_prose_keywords():
    code = "note = {'a': 1}\nexplanation = note\n"
    assert clean_generated_code(code) == code


def test_clean_empty():
    assert clean_generated_code("") == ""


# ============================================================
# validate_generated_code
# ============================================================

@pytest.mark.parametrize("code", [
    "import React from 'react';\nexport default () => null;\n",
    "def handler(event):\n    return event\n",
    "body { color: red; }\n",
    ".btn { padding: 0; }\n",
    "<template><div/></template>\n",
    "{\n  \"name\": \"widget\"\n}\n",
    "# widget\n\nSome docs.\n",
])
def test_valid_code(code):
    assert validate_generated_code(code).is_valid


@pytest.mark.parametrize("code, issue", [
    ("```js\nconst a = 1;\n```", "markdown"),
    ("Here is the updated code:\nconst a = 1;", "explanatory"),
    ("To modify the handler:\ndef f(): pass", "explanatory"),
    ("Sure thing, I changed it.", "valid code syntax"),
])
def test_invalid_code(code, issue):
    result = validate_generated_code(code)
    assert not result.is_valid
    assert any(issue in i for i in result.issues)
