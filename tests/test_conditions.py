"""Tests for the condition evaluator."""

import logging

import pytest

from codelabel.errors import ConditionEvaluationWarning, ErrorCode
from codelabel.heuristics.conditions import (
    Combinator,
    Operator,
    evaluate,
    evaluate_conditions,
    infer_combinator,
    matching_conditions,
    parse_condition,
    resolve_field,
)
from codelabel.models import FileDescriptor, FunctionDescriptor

HOOK = ["name.startsWith('use')", "func.type === 'function'"]
FETCH = ["name.includes('get')", "name.includes('fetch')"]
WEB_SRC = ["pathParts.includes('web')", "pathParts.includes('src')"]


class TestParseCondition:
    """Tests for parsing condition strings."""

    def test_parse_method_call(self):
        """Test parsing a field.method('literal') expression."""
        condition = parse_condition("name.startsWith('use')")
        assert condition.field == "name"
        assert condition.operator == Operator.STARTS_WITH
        assert condition.literal == "use"

    def test_parse_dotted_field(self):
        """Test that dotted fields keep every segment."""
        condition = parse_condition("chunk.imports.includes('tauri')")
        assert condition.field == "chunk.imports"
        assert condition.operator == Operator.INCLUDES

    def test_parse_equality(self):
        """Test parsing a strict equality expression."""
        condition = parse_condition("func.type === 'react_component'")
        assert condition.field == "func.type"
        assert condition.operator == Operator.EQUALS
        assert condition.literal == "react_component"

    def test_parse_double_quotes(self):
        """Test that double-quoted literals are accepted."""
        assert parse_condition('fileName.endsWith(".md")').literal == ".md"

    @pytest.mark.parametrize(
        "expression",
        [
            "name.length > 3",
            "__import__('os').system('rm -rf /')",
            "name.startsWith(use)",
            "name.toLowerCase()",
            "",
        ],
    )
    def test_parse_rejects_outside_grammar(self, expression):
        """Test that anything outside the closed grammar is refused."""
        with pytest.raises(ConditionEvaluationWarning) as exc:
            parse_condition(expression)
        assert exc.value.code == ErrorCode.CONDITION_UNPARSEABLE

    @pytest.mark.parametrize("expression", [["name.startsWith('use')"], {"a": 1}, 3, None])
    def test_parse_rejects_non_strings(self, expression):
        """Test that lists, dicts and other non-strings are refused, not hashed."""
        with pytest.raises(ConditionEvaluationWarning) as exc:
            parse_condition(expression)
        assert exc.value.message == "Condition must be a string"


class TestResolveField:
    """Tests for dotted field lookup."""

    def test_resolve_nested(self):
        """Test walking into nested mappings."""
        assert resolve_field({"func": {"type": "method"}}, "func.type") == "method"

    def test_resolve_missing_raises(self):
        """Test that a missing segment raises a field-missing warning."""
        with pytest.raises(ConditionEvaluationWarning) as exc:
            resolve_field({"func": {}}, "func.type")
        assert exc.value.code == ErrorCode.CONDITION_FIELD_MISSING


class TestEvaluate:
    """Tests for single-condition evaluation."""

    def test_starts_with(self):
        """Test startsWith against a string field."""
        assert evaluate("name.startsWith('use')", {"name": "usefoo"}) is True
        assert evaluate("name.startsWith('use')", {"name": "fetchuser"}) is False

    def test_ends_with(self):
        """Test endsWith against a string field."""
        assert evaluate("fileName.endsWith('.sh')", {"fileName": "scripts/deploy.sh"}) is True

    def test_includes_substring(self):
        """Test includes on a string is a substring test."""
        assert evaluate("name.includes('fetch')", {"name": "refetchall"}) is True

    def test_includes_membership(self):
        """Test includes on a list is a membership test, not substring."""
        context = {"pathParts": ["web", "src", "components"]}
        assert evaluate("pathParts.includes('src')", context) is True
        assert evaluate("pathParts.includes('comp')", context) is False

    def test_imports_includes_is_substring_per_item(self):
        """Test that import lists match when any import contains the literal."""
        context = {"chunk": {"imports": ["@tauri-apps/api/tauri", "react"]}}
        assert evaluate("chunk.imports.includes('tauri')", context) is True
        assert evaluate("chunk.imports.includes('vue')", context) is False

    def test_equality(self):
        """Test strict equality."""
        assert evaluate("func.type === 'function'", {"func": {"type": "function"}}) is True
        assert evaluate("func.type === 'function'", {"func": {"type": "method"}}) is False

    def test_matches_is_case_insensitive_search(self):
        """Test that matches is a case-insensitive regex search."""
        assert evaluate("name.matches('file|export|save')", {"name": "SaveDraft"}) is True
        assert evaluate("name.matches('^save')", {"name": "autosave"}) is False

    def test_missing_field_is_false(self, caplog):
        """Test that an absent context field evaluates to false and logs."""
        with caplog.at_level(logging.WARNING, logger="codelabel.heuristics.conditions"):
            assert evaluate("func.type === 'function'", {"name": "x"}) is False
        assert "evaluated as false" in caplog.text

    def test_unparseable_is_false(self):
        """Test that an unsupported expression evaluates to false."""
        assert evaluate("name.length > 3", {"name": "abcdef"}) is False

    def test_invalid_regex_is_false(self):
        """Test that an invalid regular expression evaluates to false."""
        assert evaluate("name.matches('(')", {"name": "abc"}) is False

    def test_unsupported_operator_for_list(self):
        """Test that startsWith on a list evaluates to false."""
        assert evaluate("pathParts.startsWith('web')", {"pathParts": ["web"]}) is False

    def test_list_expression_is_false(self):
        """Test that a list in place of a condition string evaluates to false."""
        assert evaluate(["name.startsWith('use')"], {"name": "usefoo"}) is False

    def test_dict_expression_is_false(self):
        """Test that a dict in place of a condition string evaluates to false."""
        assert evaluate({"a": 1}, {"name": "usefoo"}) is False


class TestCombinators:
    """Tests for AND/OR combination of condition lists."""

    def test_hook_pair_infers_and(self):
        """Test that a name prefix plus a function type is AND-combined."""
        assert infer_combinator(HOOK) == Combinator.AND

    def test_web_src_pair_infers_and(self):
        """Test that the web and src path segments are AND-combined."""
        assert infer_combinator(WEB_SRC) == Combinator.AND

    def test_other_lists_infer_or(self):
        """Test that everything else defaults to OR."""
        assert infer_combinator(FETCH) == Combinator.OR
        assert infer_combinator(["pathParts.includes('services')"]) == Combinator.OR
        assert infer_combinator(HOOK + ["name.includes('x')"]) == Combinator.OR
        assert infer_combinator(["pathParts.includes('web')", "pathParts.includes('lib')"]) == Combinator.OR

    def test_hook_and_both_hold(self):
        """Test the hook pattern matches when both conditions hold."""
        context = FunctionDescriptor(name="useFoo", type="function").to_context()
        assert evaluate_conditions(HOOK, context) is True

    def test_hook_and_one_holds(self):
        """Test the hook pattern fails when only the name condition holds."""
        context = FunctionDescriptor(name="useFoo", type="react_component").to_context()
        assert evaluate_conditions(HOOK, context) is False

    def test_or_matches_on_second_condition(self):
        """Test OR matches via a single condition."""
        context = FunctionDescriptor(name="fetchUser").to_context()
        assert matching_conditions(FETCH, context) == ("name.includes('fetch')",)

    def test_web_src_requires_both(self):
        """Test web+src needs both segments."""
        assert evaluate_conditions(WEB_SRC, FileDescriptor("web/src/app.tsx").to_context()) is True
        assert evaluate_conditions(WEB_SRC, FileDescriptor("web/public/app.js").to_context()) is False

    def test_explicit_policy_overrides_inference(self):
        """Test that an explicit combinator wins over the inferred one."""
        context = FunctionDescriptor(name="useFoo", type="react_component").to_context()
        assert evaluate_conditions(HOOK, context, Combinator.OR) is True

    def test_empty_list_never_matches(self):
        """Test that an empty condition list matches nothing."""
        assert evaluate_conditions([], {"name": "x"}) is False

    def test_failed_condition_does_not_abort_others(self):
        """Test an unevaluable condition is false while the rest still count."""
        conditions = ["func.type === 'function'", "name.includes('get')"]
        assert matching_conditions(conditions, {"name": "getuser"}, Combinator.OR) == (
            "name.includes('get')",
        )
