import pytest

from flowci.errors import MalformedDocument
from flowci.expressions import ExpressionContext, check_syntax, evaluate, evaluate_condition, interpolate


def _ctx(success=True, **contexts):
    base = {
        "matrix": {"os": "ubuntu-latest"},
        "runner": {"os": "Linux"},
        "github": {"event_name": "push", "ref_name": "main"},
        "steps": {"toolchain": {"outputs": {"cachekey": "20240101"}}},
    }
    base.update(contexts)
    return ExpressionContext(
        contexts=base,
        functions={
            "success": lambda: success,
            "failure": lambda: not success,
            "always": lambda: True,
            "cancelled": lambda: False,
        },
    )


def test_interpolates_contexts():
    text = "cargo-${{ runner.os }}-${{ steps.toolchain.outputs.cachekey }}-${{ matrix.os }}"
    assert interpolate(text, _ctx()) == "cargo-Linux-20240101-ubuntu-latest"


def test_interpolate_recurses_into_mappings():
    assert interpolate({"k": ["${{ matrix.os }}"]}, _ctx()) == {"k": ["ubuntu-latest"]}


def test_missing_value_interpolates_to_empty_string():
    assert interpolate("[${{ steps.nope.outputs.x }}]", _ctx()) == "[]"


def test_unknown_context_is_an_error():
    with pytest.raises(MalformedDocument):
        evaluate("secrets.TOKEN", _ctx())


def test_operators():
    ctx = _ctx()
    assert evaluate("github.event_name == 'push' && matrix.os != 'windows-latest'", ctx) is True
    assert evaluate("!(github.ref_name == 'main') || false", ctx) is False
    assert evaluate("matrix.os == 'UBUNTU-LATEST'", ctx) is True


def test_builtin_functions():
    ctx = _ctx()
    assert evaluate("startsWith(matrix.os, 'ubuntu')", ctx) is True
    assert evaluate("endsWith(matrix.os, 'latest')", ctx) is True
    assert evaluate("contains(github.ref_name, 'ai')", ctx) is True


def test_condition_defaults_to_success():
    assert evaluate_condition(None, _ctx(success=True)) is True
    assert evaluate_condition(None, _ctx(success=False)) is False
    assert evaluate_condition("", _ctx(success=False)) is False


def test_plain_condition_is_anded_with_success():
    assert evaluate_condition("matrix.os == 'ubuntu-latest'", _ctx(success=True)) is True
    assert evaluate_condition("matrix.os == 'ubuntu-latest'", _ctx(success=False)) is False


def test_status_functions_replace_the_implicit_success():
    assert evaluate_condition("${{ always() }}", _ctx(success=False)) is True
    assert evaluate_condition("failure()", _ctx(success=False)) is True
    assert evaluate_condition("failure()", _ctx(success=True)) is False


def test_check_syntax():
    check_syntax("${{ matrix.os }} and ${{ runner.os }}")
    with pytest.raises(MalformedDocument):
        check_syntax("${{ matrix.os == }}")
    with pytest.raises(MalformedDocument):
        check_syntax("'unterminated")


def test_check_syntax_rejects_wrong_argument_counts():
    check_syntax("${{ hashFiles('a.lock', 'b.lock') }}")
    for text in ("startsWith('a')", "always(1)", "${{ hashFiles() }}", "contains(a, b, c)"):
        with pytest.raises(MalformedDocument):
            check_syntax(text)


def test_wrong_argument_count_is_a_document_error_when_evaluated():
    with pytest.raises(MalformedDocument):
        evaluate("startsWith('a')", _ctx())
