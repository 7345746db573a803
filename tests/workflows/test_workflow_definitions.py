from __future__ import annotations

import pytest

from managerkit.domain.workflows import (
    WorkflowDefinition,
    WorkflowDefinitionError,
    WorkflowStep,
    WorkflowStepError,
    evaluate_condition,
    parse_condition,
    render_template,
)


def test_step_accepts_camel_case_aliases_and_keeps_params() -> None:
    step = WorkflowStep.from_dict(
        {
            "name": "Build",
            "type": "command",
            "command": "make build",
            "onError": "retry",
            "maxRetries": 2,
            "retryDelay": 10,
        }
    )
    assert step.on_error == "retry"
    assert step.max_retries == 2
    assert step.retry_delay == 10
    assert step.params == {"command": "make build"}
    assert step.to_dict() == {
        "name": "Build",
        "type": "command",
        "on_error": "retry",
        "max_retries": 2,
        "retry_delay": 10,
        "command": "make build",
    }


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "command"},
        {"name": "x", "type": "teleport"},
        {"name": "x", "type": "wait", "on_error": "ignore"},
        {"name": "x", "type": "wait", "max_retries": -1},
        {"name": "x", "type": "wait", "retry_delay": "soon"},
        {"name": "x", "type": "parallel", "steps": []},
        {"name": "x", "type": "sequential", "steps": [{"name": "inner", "type": "bogus"}]},
        "not a mapping",
    ],
)
def test_invalid_steps_are_rejected(payload) -> None:
    with pytest.raises(WorkflowDefinitionError):
        WorkflowStep.from_dict(payload)


def test_definition_accepts_nested_layout() -> None:
    workflow = WorkflowDefinition.from_dict(
        {
            "definition": {
                "description": "nested",
                "steps": [
                    {
                        "name": "fan out",
                        "type": "parallel",
                        "steps": [{"name": "a", "type": "wait", "duration": 1}, {"name": "b", "type": "wait"}],
                    }
                ],
            }
        },
        name="nested-flow",
    )
    assert workflow.name == "nested-flow"
    assert workflow.description == "nested"
    inner = workflow.steps[0].params["steps"]
    assert [item.name for item in inner] == ["a", "b"]
    assert workflow.to_dict()["steps"][0]["steps"][0] == {"name": "a", "type": "wait", "on_error": "stop", "duration": 1}


def test_definition_requires_name_and_steps() -> None:
    with pytest.raises(WorkflowDefinitionError):
        WorkflowDefinition.from_dict({"steps": [{"name": "a", "type": "wait"}]})
    with pytest.raises(WorkflowDefinitionError):
        WorkflowDefinition.from_dict({"name": "empty", "steps": []})


def test_render_template_substitutes_known_keys_recursively() -> None:
    context = {"name": "demo", "count": 3, "missing": None}
    rendered = render_template(
        {"path": "{{name}}/README.md", "args": ["--n={{count}}", "{{unknown}}"], "flag": True, "keep": "{{missing}}"},
        context,
    )
    assert rendered == {"path": "demo/README.md", "args": ["--n=3", "{{unknown}}"], "flag": True, "keep": "{{missing}}"}


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("5 > 3", True),
        ("2 >= 3", False),
        ("1.5 <= 1.5", True),
        ("'main' == 'main'", True),
        ("main != develop", True),
        ("\"feature\" in \"feature/login\"", True),
        ("'x' not in [\"a\", \"b\"]", True),
        ("3 in [1, 2, 3]", True),
        ("true", True),
        ("false", False),
        ("0", False),
        ("ready", True),
        ("null == null", True),
    ],
)
def test_evaluate_condition_literals(expression: str, expected: bool) -> None:
    assert evaluate_condition(expression) is expected


def test_evaluate_condition_never_executes_code() -> None:
    assert evaluate_condition("__import__('os').system('false')") is True
    with pytest.raises(WorkflowStepError):
        evaluate_condition("'abc' < 3")
    with pytest.raises(WorkflowStepError):
        evaluate_condition("   ")


def test_parse_condition_splits_operands() -> None:
    assert parse_condition("10 not  in [1]") == (10, "not in", [1])
    assert parse_condition("status") == ("status", None, None)


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("'a == b' == 'a == b'", True),
        ("'x<y' != 'x<y'", False),
        ("\"in\" in [\"in\", \"out\"]", True),
        ("'not in' not in 'plain'", True),
    ],
)
def test_quoted_operands_may_contain_operators(expression: str, expected: bool) -> None:
    assert evaluate_condition(expression) is expected


def test_parse_condition_keeps_quoted_operators_in_operands() -> None:
    assert parse_condition("'a >= b' in 'a >= b, c'") == ("a >= b", "in", "a >= b, c")
