import pytest

from bounded_agent.agent.parser import parse_planner_command, parse_planner_decision


def test_parse_tool_command_defaults_params_and_reasoning():
    command = parse_planner_command('{"type": "tool", "tool": " search "}')
    assert command == {"type": "tool", "tool": "search", "params": {}, "reasoning": ""}


def test_parse_finish_command_inside_code_fence():
    text = '```json\n{"type": "finish", "answer": "42", "reasoning": " done "}\n```'
    command = parse_planner_command(text)
    assert command["answer"] == "42"
    assert command["reasoning"] == "done"


@pytest.mark.parametrize(
    "text",
    [
        "",
        "not json",
        "[1, 2]",
        '{"type": "search"}',
        '{"type": "tool"}',
        '{"type": "tool", "tool": "x", "params": []}',
        '{"type": "finish"}',
        '{"type": "finish", "answer": "x", "reasoning": 5}',
    ],
)
def test_invalid_commands_raise_value_error(text):
    with pytest.raises(ValueError):
        parse_planner_command(text)


def test_parse_planner_decision_builds_tool_call():
    decision = parse_planner_decision(
        '{"type": "tool", "tool": "search", "params": {"q": "x"}, "reasoning": "look it up"}'
    )
    assert not decision.is_final
    assert decision.tool_call.tool == "search"
    assert decision.tool_call.params == {"q": "x"}
    assert decision.tool_call.justification == "look it up"


def test_parse_planner_decision_builds_final_answer():
    decision = parse_planner_decision('{"type": "finish", "answer": "all done"}')
    assert decision.is_final
    assert decision.final_answer == "all done"
