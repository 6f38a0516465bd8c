"""
安全表达式求值与数据提取
"""
import logging
from typing import Any, Dict, Optional

from jinja2 import Environment, StrictUndefined
from jinja2.exceptions import TemplateError
from simpleeval import EvalWithCompoundTypes

from ..exceptions import ExpressionError


logger = logging.getLogger(__name__)


SAFE_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "sum": sum,
    "any": any,
    "all": all,
    "round": round,
    "sorted": sorted,
    "list": list,
    "dict": dict,
}

LITERALS = {
    "true": True,
    "false": False,
    "null": None,
    "none": None,
    "True": True,
    "False": False,
    "None": None,
}


def build_names(input_data: Any, variables: Optional[Dict[str, Any]] = None, **extra) -> Dict[str, Any]:
    """组装表达式可见的名字：运行变量、input 与额外名字"""
    variables = variables or {}
    names = dict(LITERALS)
    names.update(variables)
    names["variables"] = variables
    names["input"] = input_data
    names.update(extra)
    return names


class ExpressionEvaluator:
    """基于 simpleeval 的表达式求值器"""

    def __init__(self, functions: Optional[Dict[str, Any]] = None):
        self.functions = dict(SAFE_FUNCTIONS)
        if functions:
            self.functions.update(functions)

    def evaluate(self, expression: str, names: Dict[str, Any]) -> Any:
        """
        求值表达式

        语法错误抛出 ExpressionError，其余求值错误原样抛出由调用方决定如何处理。
        """
        if not isinstance(expression, str) or not expression.strip():
            raise ExpressionError(str(expression), "empty expression")

        evaluator = EvalWithCompoundTypes(names=names, functions=self.functions)
        try:
            return evaluator.eval(expression.strip())
        except SyntaxError as e:
            raise ExpressionError(expression, e.msg or str(e))

    def evaluate_condition(self, expression: str, names: Dict[str, Any]) -> bool:
        """布尔条件求值；无法解析时抛出 ExpressionError，求值失败视为 False"""
        try:
            return bool(self.evaluate(expression, names))
        except ExpressionError:
            raise
        except Exception as e:
            logger.warning(f"Condition evaluation error for '{expression}': {e}")
            return False


_MISSING = object()


def extract_path(data: Any, path: str, default: Any = None) -> Any:
    """按点分路径取值，支持字典键与列表下标"""
    current = data
    for part in path.split("."):
        if not part:
            continue
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            current = getattr(current, part, _MISSING)

        if current is _MISSING:
            return default
    return current


class TemplateRenderer:
    """jinja2 模板渲染，支持字符串或嵌套字典/列表"""

    def __init__(self):
        self.env = Environment(undefined=StrictUndefined, autoescape=False)

    def render(self, template: Any, context: Dict[str, Any]) -> Any:
        if isinstance(template, str):
            try:
                return self.env.from_string(template).render(**context)
            except TemplateError as e:
                raise ExpressionError(template, str(e))
        if isinstance(template, dict):
            return {key: self.render(value, context) for key, value in template.items()}
        if isinstance(template, list):
            return [self.render(item, context) for item in template]
        return template
