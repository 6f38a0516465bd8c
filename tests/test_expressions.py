"""
表达式求值、路径提取与模板渲染测试
"""
import pytest

from hybrid_workflow.core.expressions import (
    ExpressionEvaluator, TemplateRenderer, build_names, extract_path
)
from hybrid_workflow.exceptions import ExpressionError


class TestExpressionEvaluator:

    @pytest.fixture
    def evaluator(self):
        return ExpressionEvaluator()

    def test_names_visible_to_expressions(self, evaluator):
        """运行变量平铺在顶层，输入通过 input 访问"""
        names = build_names({"tier": "gold", "items": [1, 2, 3]}, {"threshold": 2})

        assert evaluator.evaluate("input.tier == 'gold'", names) is True
        assert evaluator.evaluate("len(input['items']) > threshold", names) is True
        assert evaluator.evaluate("variables['threshold'] * 2", names) == 4
        assert evaluator.evaluate("null", names) is None

    def test_syntax_error_raises(self, evaluator):
        with pytest.raises(ExpressionError):
            evaluator.evaluate("1 +", {})
        with pytest.raises(ExpressionError):
            evaluator.evaluate("   ", {})

    def test_condition_failures_are_false(self, evaluator, caplog):
        """求值错误视为 False 并告警"""
        assert evaluator.evaluate_condition("input.missing > 1", build_names({}, {})) is False
        assert "Condition evaluation error" in caplog.text

    def test_condition_syntax_error_propagates(self, evaluator):
        with pytest.raises(ExpressionError):
            evaluator.evaluate_condition("input ==", build_names({}, {}))

    def test_unsafe_calls_rejected(self, evaluator):
        assert evaluator.evaluate_condition("open('/etc/passwd')", {}) is False

    def test_custom_functions(self):
        evaluator = ExpressionEvaluator(functions={"upper": str.upper})
        assert evaluator.evaluate("upper('a')", {}) == "A"


class TestExtractPath:

    def test_nested_dicts_and_lists(self):
        data = {"order": {"lines": [{"sku": "A"}, {"sku": "B"}]}}
        assert extract_path(data, "order.lines.1.sku") == "B"
        assert extract_path(data, "order.lines.-1.sku") == "B"

    def test_missing_returns_default(self):
        assert extract_path({"a": {}}, "a.b.c") is None
        assert extract_path({"a": [1]}, "a.5", default="none") == "none"


class TestTemplateRenderer:

    def test_render_nested(self):
        renderer = TemplateRenderer()
        rendered = renderer.render(
            {"greeting": "Hello {{ input.name }}", "tags": ["{{ region }}", 3]},
            build_names({"name": "Ada"}, {"region": "eu"})
        )
        assert rendered == {"greeting": "Hello Ada", "tags": ["eu", 3]}

    def test_undefined_is_error(self):
        with pytest.raises(ExpressionError):
            TemplateRenderer().render("{{ nope }}", {})
