import asyncio

import pytest
from fakes import EchoTool, FakeAdapter, ScriptedClient, make_message, tool_call, wait_for

from functions_bot.ai.client import Completion
from functions_bot.ai.handler import FORGET_REPLY, MessageHandler, _split_message, is_mentioned
from functions_bot.app import FunctionsBotApp
from functions_bot.config import AppConfig, ButtonConfig, ChatConfig, ChatParams, ConfigStore
from functions_bot.messenger.models import ActionEvent


def _setup(chats, responses, fail_chunks=(), answer_delay=0.05):
    client = ScriptedClient(responses)
    config = AppConfig(chats=chats, private_users=["alice"])
    app = FunctionsBotApp(ConfigStore(config), completion_client=client)
    app.tool_registry.discover_and_register()
    echo = EchoTool()
    app.tool_registry.register(echo)
    adapter = FakeAdapter(fail_chunks=fail_chunks)
    handler = MessageHandler(
        adapter=adapter,
        orchestrator=app.orchestrator,
        history=app.history,
        config_store=app.config_store,
        confirmations=app.confirmations,
        answer_delay=answer_delay,
    )
    return handler, adapter, client, app, echo


def _default(**kwargs):
    return ChatConfig(name="default", **kwargs)


def _texts(adapter):
    return [m.text for m in adapter.sent]


@pytest.mark.asyncio
async def test_private_message_is_answered():
    handler, adapter, client, app, _ = _setup([_default()], [Completion(content="hello")])

    await handler.handle(make_message("hi"))

    assert _texts(adapter) == ["hello"]
    assert adapter.typing == [1]
    assert len(app.threads.get(1).msgs) == 2


@pytest.mark.asyncio
async def test_burst_of_messages_gets_one_answer_for_the_latest():
    handler, adapter, client, _, _ = _setup([_default()], [Completion(content="one answer")])

    first = asyncio.create_task(handler.handle(make_message("first")))
    await asyncio.sleep(0.01)
    second = asyncio.create_task(handler.handle(make_message("second")))
    await asyncio.gather(first, second)

    assert len(client.calls) == 1
    sent_history = client.calls[0]["messages"]
    assert [m["content"] for m in sent_history[1:]] == ["first", "second"]
    assert _texts(adapter) == ["one answer"]


@pytest.mark.asyncio
async def test_not_whitelisted_user_gets_notice():
    handler, adapter, client, _, _ = _setup([_default()], [])

    await handler.handle(make_message("hi", username="mallory"))

    assert _texts(adapter) == ["You are not in whitelist. Your username: mallory"]
    assert client.calls == []


@pytest.mark.asyncio
async def test_group_answers_only_when_mentioned():
    group = ChatConfig(name="group", id=-100, prefix="bot")
    handler, adapter, client, _, _ = _setup([_default(), group], [Completion(content="sure")])

    await handler.handle(make_message("just chatting", chat_id=-100, chat_type="group"))
    assert client.calls == []

    await handler.handle(make_message("bot what's up", chat_id=-100, chat_type="group"))
    assert client.calls[0]["messages"][-1]["content"] == "what's up"
    assert _texts(adapter) == ["sure"]


def test_is_mentioned_by_tag_or_reply():
    group = ChatConfig(name="group", id=-100)
    tagged = make_message("@functions_bot hi", chat_type="group")
    reply = make_message("hi", chat_type="group", reply_to_username="functions_bot")
    other = make_message("hi", chat_type="group")

    assert is_mentioned(tagged, group, "functions_bot")
    assert is_mentioned(reply, group, "functions_bot")
    assert not is_mentioned(other, group, "functions_bot")
    assert is_mentioned(make_message("hi"), group, None)


@pytest.mark.asyncio
async def test_forget_command_clears_history():
    handler, adapter, _, app, _ = _setup([_default()], [Completion(content="hello")])
    await handler.handle(make_message("hi"))

    await handler.handle(make_message("/forget"))

    assert app.threads.get(1).messages == []
    assert _texts(adapter)[-1] == FORGET_REPLY


@pytest.mark.asyncio
async def test_long_answer_is_split_and_failed_chunk_skipped():
    answer = "\n".join(["x" * 99] * 90)
    handler, adapter, _, _, _ = _setup([_default()], [Completion(content=answer)], fail_chunks={0})

    await handler.handle(make_message("hi"))

    chunks = _split_message(answer)
    assert len(chunks) == 3
    assert _texts(adapter) == chunks[1:]


@pytest.mark.asyncio
async def test_button_with_wait_message_sets_next_system_message():
    button = ButtonConfig(name="Plan", prompt="Make a plan.", wait_message="Describe the task")
    handler, adapter, client, app, _ = _setup(
        [_default(buttons=[button])], [Completion(content="1. do it")]
    )

    await handler.handle(make_message("Plan"))
    assert _texts(adapter) == ["Describe the task"]
    assert app.threads.get(1).active_button == button

    await handler.handle(make_message("paint the fence"))

    messages = client.calls[0]["messages"]
    assert messages[0]["content"] == "Make a plan."
    assert [m["content"] for m in messages[1:]] == ["paint the fence"]
    assert app.threads.get(1).active_button is None
    assert adapter.sent[-1].buttons == ["Plan"]


@pytest.mark.asyncio
async def test_confirmation_resolved_by_action_event():
    chat = _default(tools=["echo"], chat_params=ChatParams(confirmation=True))
    handler, adapter, _, _, echo = _setup(
        [chat], [Completion(tool_calls=[tool_call()]), Completion(content="done")]
    )

    task = asyncio.create_task(handler.handle(make_message("run it")))
    await wait_for(lambda: adapter.confirmations)
    chat_id, text, confirm_action, _ = adapter.confirmations[0]
    assert text.endswith("Do you want to proceed?")
    assert echo.calls == []

    await handler.handle_action(ActionEvent(bot_id="functions_bot", chat_id=chat_id, user_id=10, action=confirm_action))
    await task

    assert echo.calls == [{"text": "x"}]
    assert _texts(adapter)[-1] == "done"


@pytest.mark.asyncio
async def test_canceled_confirmation_is_reported_once():
    chat = _default(tools=["echo"], chat_params=ChatParams(confirmation=True))
    handler, adapter, client, _, echo = _setup([chat], [Completion(tool_calls=[tool_call()])])

    task = asyncio.create_task(handler.handle(make_message("run it")))
    await wait_for(lambda: adapter.confirmations)
    chat_id, _, _, cancel_action = adapter.confirmations[0]

    foreign = await handler.handle_action(
        ActionEvent(bot_id="functions_bot", chat_id=chat_id, user_id=99, action=cancel_action)
    )
    owner = await handler.handle_action(
        ActionEvent(bot_id="functions_bot", chat_id=chat_id, user_id=10, action=cancel_action)
    )
    await task

    assert (foreign, owner) == (False, True)
    assert echo.calls == []
    assert _texts(adapter).count("Tool execution canceled.") == 1
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_noconfirm_token_skips_confirmation():
    chat = _default(tools=["echo"], chat_params=ChatParams(confirmation=True))
    handler, adapter, client, _, echo = _setup(
        [chat], [Completion(tool_calls=[tool_call()]), Completion(content="done")]
    )

    await handler.handle(make_message("noconfirm run it"))

    assert adapter.confirmations == []
    assert echo.calls == [{"text": "x"}]
    assert client.calls[0]["messages"][-1]["content"] == "run it"


@pytest.mark.asyncio
async def test_answer_agent_runs_without_debounce():
    planner = ChatConfig(name="planner", agent_name="planner")
    handler, _, client, _, _ = _setup([planner], [Completion(content="plan")], answer_delay=10)

    response = await asyncio.wait_for(
        handler.answer_agent(make_message("task", chat_id=555), planner), timeout=1
    )

    assert response.content == "plan"
    assert len(client.calls) == 1
