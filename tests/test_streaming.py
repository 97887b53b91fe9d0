from types import SimpleNamespace

from functions_bot.ai.streaming import ToolCallAccumulator
from functions_bot.core.types import ToolCallRequest


def test_fragments_for_one_index_are_merged():
    acc = ToolCallAccumulator()
    acc.add({"index": 0, "id": "c1", "function": {"name": "foo", "arguments": ""}})
    acc.add({"index": 0, "function": {"arguments": '{"bar"'}})
    acc.add({"index": 0, "function": {"arguments": ":1}"}})

    assert acc.result() == [ToolCallRequest(id="c1", name="foo", arguments='{"bar":1}')]


def test_sdk_delta_objects_and_multiple_indexes():
    def delta(index, id=None, name=None, arguments=None):
        return SimpleNamespace(
            index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments)
        )

    acc = ToolCallAccumulator()
    acc.add_all([delta(1, "c2", "second", '{"a":'), delta(0, "c1", "first", "{}")])
    acc.add_all([delta(1, arguments=" 2}")])
    acc.add_all(None)

    calls = acc.result()

    assert [c.id for c in calls] == ["c1", "c2"]
    assert calls[1].arguments == '{"a": 2}'


def test_empty_accumulator():
    acc = ToolCallAccumulator()

    assert not acc
    assert acc.result() == []


def test_missing_id_and_arguments_get_defaults():
    acc = ToolCallAccumulator()
    acc.add({"index": 3, "function": {"name": "noop"}})

    assert acc.result() == [ToolCallRequest(id="call_3", name="noop", arguments="{}")]
