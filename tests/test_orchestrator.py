from datetime import datetime, timezone

import pytest
from fakes import EchoTool, FakeAPIError, FakeResponder, ScriptedClient, make_message, tool_call

from functions_bot.ai.client import Completion
from functions_bot.ai.orchestrator import DEFAULT_SYSTEM_MESSAGE, RESENDING_NOTICE, Orchestrator, parse_text_tool_calls
from functions_bot.ai.turn import Turn
from functions_bot.app import FunctionsBotApp
from functions_bot.config import (
    AgentToolConfig,
    AppConfig,
    ChatConfig,
    ChatParams,
    CompletionParams,
    ConfigStore,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _core(chats, responses, max_tool_rounds=1):
    client = ScriptedClient(responses)
    config = AppConfig(chats=chats, max_tool_rounds=max_tool_rounds)
    app = FunctionsBotApp(ConfigStore(config), completion_client=client)
    app.tool_registry.discover_and_register()
    app.tool_registry.set_agent_runner(app.orchestrator.ask_agent)
    echo = EchoTool()
    app.tool_registry.register(echo)
    return app, client, echo


def _chat(tools=(), **params):
    return ChatConfig(name="test", id=1, tools=list(tools), chat_params=ChatParams(**params))


async def _ask(app, chat, text="hi", turn=None):
    message = make_message(text)
    app.history.add_to_history(message, chat)
    return await app.orchestrator.get_answer(message, chat, turn)


@pytest.mark.asyncio
async def test_answer_without_tools_is_added_to_history():
    chat = _chat()
    app, client, _ = _core([chat], [Completion(content="hello")])

    answer = await _ask(app, chat)

    assert answer.content == "hello"
    thread = app.threads.get(1)
    assert [(m["role"], m["content"]) for m in thread.messages] == [("user", "hi"), ("assistant", "hello")]
    assert client.calls[0]["messages"][-1]["content"] == "hi"


@pytest.mark.asyncio
async def test_tool_round_trip_then_history_forgotten():
    chat = _chat(tools=["echo"])
    app, client, echo = _core(
        [chat],
        [Completion(tool_calls=[tool_call()]), Completion(content="done")],
    )

    answer = await _ask(app, chat)

    assert answer.content == "done"
    assert echo.calls == [{"text": "x"}]
    assert app.threads.get(1).messages == []

    followup = client.calls[1]["messages"]
    assert followup[-2]["role"] == "assistant"
    assert followup[-2]["tool_calls"][0]["id"] == "c1"
    assert followup[-1] == {"role": "tool", "content": "echoed", "tool_call_id": "c1"}
    assert client.calls[1]["tools"] is None


@pytest.mark.asyncio
async def test_tool_results_are_shown_to_the_user():
    chat = _chat(tools=["echo"])
    app, _, _ = _core([chat], [Completion(tool_calls=[tool_call()]), Completion(content="done")])
    responder = FakeResponder()

    await _ask(app, chat, turn=Turn(message=make_message(), responder=responder))

    assert responder.sent == ["`echo:`\n- *Text:* x", "echoed"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "policy, expected",
    [("headers", ["`echo:`", "echoed"]), (False, [])],
)
async def test_tool_results_follow_show_tool_messages(policy, expected):
    chat = _chat(tools=["echo"], show_tool_messages=policy)
    app, _, _ = _core([chat], [Completion(tool_calls=[tool_call()]), Completion(content="done")])
    responder = FakeResponder()

    await _ask(app, chat, turn=Turn(message=make_message(), responder=responder))

    assert responder.sent == expected


@pytest.mark.asyncio
async def test_more_tool_rounds_when_configured():
    chat = _chat(tools=["echo"])
    app, client, echo = _core(
        [chat],
        [
            Completion(tool_calls=[tool_call(call_id="c1")]),
            Completion(tool_calls=[tool_call(call_id="c2")]),
            Completion(content="done"),
        ],
        max_tool_rounds=2,
    )

    answer = await _ask(app, chat)

    assert answer.content == "done"
    assert len(echo.calls) == 2
    assert client.calls[1]["tools"] is not None
    assert client.calls[2]["tools"] is None


@pytest.mark.asyncio
async def test_canceled_tool_call_answers_with_cancel_message():
    chat = _chat(tools=["echo"], confirmation=True)
    app, client, echo = _core([chat], [Completion(tool_calls=[tool_call()])])

    answer = await _ask(app, chat)

    assert answer.content == "Tool execution canceled."
    assert echo.calls == []
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_context_length_error_forgets_and_retries_once():
    chat = _chat()
    error = FakeAPIError("This model's maximum context length is exceeded", code="context_length_exceeded")
    app, client, _ = _core([chat], [Completion(content="first"), error, Completion(content="ok")])
    await _ask(app, chat, text="earlier")
    responder = FakeResponder()

    answer = await _ask(app, chat, turn=Turn(message=make_message(), responder=responder))

    assert answer.content == "ok"
    assert responder.sent[0].endswith(RESENDING_NOTICE)
    retried = client.calls[2]["messages"]
    assert [m["role"] for m in retried] == ["system", "user"]
    assert retried[1]["content"] == "hi"


@pytest.mark.asyncio
async def test_second_context_length_error_becomes_answer_text():
    chat = _chat()
    error = FakeAPIError("context_length_exceeded", code="context_length_exceeded")
    app, client, _ = _core([chat], [error, error, Completion(content="never")])

    answer = await _ask(app, chat)

    assert answer.content == "context_length_exceeded"
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_invalid_parameter_completion_error_is_retried_once():
    chat = _chat()
    error = FakeAPIError("Invalid parameter: messages[2].tool_calls", status_code=400)
    app, client, _ = _core([chat], [error, Completion(content="fine")])

    answer = await _ask(app, chat)

    assert answer.content == "fine"
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_second_invalid_parameter_error_is_not_retried_again():
    chat = _chat()
    error = FakeAPIError("Invalid parameter: messages[2].tool_calls", status_code=400)
    app, client, _ = _core([chat], [error, error, Completion(content="never")])

    answer = await _ask(app, chat)

    assert "Invalid parameter" in answer.content
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_other_errors_are_returned_without_retry():
    chat = _chat()
    app, client, _ = _core([chat], [FakeAPIError("server error", status_code=500)])

    answer = await _ask(app, chat)

    assert answer.content == "server error"
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_malformed_tool_arguments_trigger_one_rerequest():
    chat = _chat(tools=["echo"])
    app, client, echo = _core(
        [chat],
        [Completion(tool_calls=[tool_call(arguments='{"text": ')]), Completion(content="plain")],
    )

    answer = await _ask(app, chat)

    assert answer.content == "plain"
    assert echo.calls == []
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_forget_tool_short_circuits_turn():
    chat = _chat(tools=["forget"])
    app, client, _ = _core(
        [chat],
        [Completion(tool_calls=[tool_call("forget", '{"message": "Bye"}')])],
    )

    answer = await _ask(app, chat)

    assert answer.content == "Bye"
    assert app.threads.get(1).messages == []
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_text_embedded_tool_calls_are_executed():
    chat = _chat(tools=["echo"])
    content = 'Let me check. <tool_call>{"name": "echo", "arguments": {"text": "y"}}</tool_call>'
    app, _, echo = _core([chat], [Completion(content=content), Completion(content="done")])

    answer = await _ask(app, chat)

    assert answer.content == "done"
    assert echo.calls == [{"text": "y"}]


def test_parse_text_tool_calls_ignores_invalid_blocks():
    content = '<tool_call>{not json}</tool_call><tool_call>{"name": "a", "arguments": "{}", "id": "x"}</tool_call>'

    calls = parse_text_tool_calls(content)

    assert [(c.id, c.name, c.arguments) for c in calls] == [("x", "a", "{}")]


@pytest.mark.asyncio
async def test_memoryless_chat_forgets_after_answer():
    chat = _chat(memoryless=True)
    app, _, _ = _core([chat], [Completion(content="hello")])

    await _ask(app, chat)

    assert app.threads.get(1).messages == []


@pytest.mark.asyncio
async def test_streaming_flag_is_passed_to_client():
    chat = _chat(streaming=True)
    app, client, _ = _core([chat], [Completion(content="hello")])

    await _ask(app, chat)

    assert client.calls[0]["stream"] is True


@pytest.mark.asyncio
async def test_system_message_precedence():
    orchestrator = Orchestrator(None, None, None, None, clock=lambda: NOW)
    app, _, _ = _core([], [])
    thread = app.threads.get_or_create(1)
    chat = ChatConfig(name="test", id=1, system_message="Chat prompt {date}")

    assert await orchestrator.system_message(ChatConfig(name="bare"), thread, []) == DEFAULT_SYSTEM_MESSAGE.replace(
        "{date}", NOW.isoformat()
    )
    assert await orchestrator.system_message(chat, thread, []) == f"Chat prompt {NOW.isoformat()}"

    thread.system_message = "Thread prompt"
    assert await orchestrator.system_message(chat, thread, []) == "Thread prompt"

    thread.next_system_message = "One shot"
    assert await orchestrator.system_message(chat, thread, []) == "One shot"
    assert thread.next_system_message is None
    assert await orchestrator.system_message(chat, thread, []) == "Thread prompt"


def test_completion_params_precedence():
    app, _, _ = _core([], [])
    thread = app.threads.get_or_create(1)
    chat = ChatConfig(name="test", completion_params=CompletionParams(model="gpt-4o", temperature=0.2))

    assert Orchestrator.completion_params(chat, thread) == ("gpt-4o", 0.2)

    thread.completion_params = CompletionParams(model="o3-mini")
    assert Orchestrator.completion_params(chat, thread) == ("o3-mini", 0.2)
    assert Orchestrator.completion_params(chat, thread, "qwen2.5") == ("qwen2.5", 0.2)


@pytest.mark.asyncio
async def test_agent_tool_runs_turn_in_agent_chat():
    main = ChatConfig(
        name="main",
        id=1,
        tools=[AgentToolConfig(name="ask_planner", agent_name="planner", prompt_append="Use the planner.")],
    )
    planner = ChatConfig(name="planner", agent_name="planner", system_message="Plan.")
    app, client, _ = _core(
        [main, planner],
        [
            Completion(tool_calls=[tool_call("ask_planner", '{"input": "build a shed"}')]),
            Completion(content="1. buy wood"),
            Completion(content="final"),
        ],
    )

    answer = await _ask(app, main)

    assert answer.content == "final"
    assert client.calls[0]["messages"][0]["content"].endswith("Use the planner.")
    agent_messages = client.calls[1]["messages"]
    assert agent_messages[0]["content"] == "Plan."
    assert agent_messages[-1]["content"] == "build a shed"
    assert client.calls[2]["messages"][-1]["content"] == "1. buy wood"
