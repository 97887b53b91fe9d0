from datetime import datetime, timedelta, timezone

from fakes import make_message

from functions_bot.config import ButtonConfig, ChatConfig, ChatParams
from functions_bot.core.history import MAX_RAW_MESSAGES, HistoryManager, sanitize_name
from functions_bot.core.threads import ThreadStore

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _history(now=T0, limit=20):
    return HistoryManager(ThreadStore(), history_limit=limit, clock=lambda: now)


def _user_messages(count):
    return [{"role": "user", "content": f"m{i}"} for i in range(count)]


def test_thread_created_lazily_and_forget_keeps_identity():
    store = ThreadStore()
    assert 1 not in store
    thread = store.get_or_create(1)
    thread.messages.append({"role": "user", "content": "hi"})
    thread.active_button = ButtonConfig(name="Plan", prompt="plan it")

    store.forget(1)

    assert store.get_or_create(1) is thread
    assert thread.messages == []
    assert thread.msgs == []
    assert thread.active_button.name == "Plan"
    assert len(store) == 1


def test_build_messages_window_bound():
    history = _history(limit=20)

    long = history.build_messages("sys", _user_messages(30))
    short = history.build_messages("sys", _user_messages(5))

    assert len(long) == 21
    assert long[0] == {"role": "system", "content": "sys"}
    assert long[1]["content"] == "m10"
    assert len(short) == 6


def test_build_messages_drops_orphan_tool_message():
    history = _history(limit=2)
    items = [
        {"role": "user", "content": "what day?"},
        {"role": "assistant", "content": None, "tool_calls": [{"id": "c1", "type": "function", "function": {"name": "x", "arguments": "{}"}}]},
        {"role": "tool", "content": "monday", "tool_call_id": "c1"},
        {"role": "assistant", "content": "It is monday"},
    ]

    messages = history.build_messages("sys", items)

    assert [m["role"] for m in messages] == ["system", "assistant"]


def test_build_messages_keeps_tool_message_after_its_call():
    history = _history(limit=3)
    items = [
        {"role": "user", "content": "what day?"},
        {"role": "assistant", "content": None, "tool_calls": [{"id": "c1", "type": "function", "function": {"name": "x", "arguments": "{}"}}]},
        {"role": "tool", "content": "monday", "tool_call_id": "c1"},
        {"role": "assistant", "content": "It is monday"},
    ]

    messages = history.build_messages("sys", items)

    assert [m["role"] for m in messages] == ["system", "assistant", "tool", "assistant"]


def test_build_messages_sanitizes_names():
    history = _history()
    items = [
        {"role": "user", "content": "a", "name": "John Doe <admin>"},
        {"role": "user", "content": "b", "name": "Иван"},
    ]

    messages = history.build_messages("sys", items)

    assert messages[1]["name"] == "JohnDoeadmin"
    assert "name" not in messages[2]
    assert items[0]["name"] == "John Doe <admin>"


def test_sanitize_name_limits_length():
    assert sanitize_name("a" * 100) == "a" * 64
    assert sanitize_name("x/y|z") == "xyz"
    assert sanitize_name(None) is None


def test_add_to_history_appends_user_entry():
    history = _history()
    chat = ChatConfig(name="test", id=1)

    thread = history.add_to_history(make_message("hello"), chat)

    assert thread.messages == [{"role": "user", "content": "hello", "name": "Alice"}]
    assert len(thread.msgs) == 1


def test_add_to_history_with_telegram_names():
    history = _history()
    chat = ChatConfig(name="test", id=1, chat_params=ChatParams(show_telegram_names=True))

    thread = history.add_to_history(make_message("hello"), chat)

    assert thread.messages[0]["content"] == "Alice Smith:\nhello"


def test_raw_messages_are_capped():
    history = _history()
    chat = ChatConfig(name="test", id=1)
    for i in range(MAX_RAW_MESSAGES + 5):
        thread = history.add_to_history(make_message(f"m{i}"), chat)

    assert len(thread.msgs) == MAX_RAW_MESSAGES
    assert thread.msgs[-1].text == f"m{MAX_RAW_MESSAGES + 4}"
    assert len(thread.messages) == MAX_RAW_MESSAGES + 5


def test_forget_on_timeout_clears_and_readds_current_message():
    now = T0 + timedelta(seconds=700)
    history = _history(now=now)
    chat = ChatConfig(name="test", id=1, chat_params=ChatParams(forget_timeout=600))
    history.add_to_history(make_message("old", timestamp=T0), chat)
    history.add_answer(1, "old answer")
    current = make_message("new", timestamp=now)
    history.add_to_history(current, chat)

    forgotten = history.forget_history_on_timeout(chat, current)

    thread = history.store.get(1)
    assert forgotten is True
    assert [m["content"] for m in thread.messages] == ["new"]
    assert thread.msgs == [current]


def test_forget_on_timeout_within_timeout_keeps_history():
    now = T0 + timedelta(seconds=300)
    history = _history(now=now)
    chat = ChatConfig(name="test", id=1, chat_params=ChatParams(forget_timeout=600))
    history.add_to_history(make_message("old", timestamp=T0), chat)
    current = make_message("new", timestamp=now)
    history.add_to_history(current, chat)

    assert history.forget_history_on_timeout(chat, current) is False
    assert len(history.store.get(1).messages) == 2


def test_forget_on_timeout_needs_two_messages():
    history = _history(now=T0 + timedelta(days=1))
    chat = ChatConfig(name="test", id=1, chat_params=ChatParams(forget_timeout=1))
    current = make_message("only", timestamp=T0)
    history.add_to_history(current, chat)

    assert history.forget_history_on_timeout(chat, current) is False
    assert len(history.store.get(1).messages) == 1
