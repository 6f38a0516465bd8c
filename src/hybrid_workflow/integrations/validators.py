"""
Schema验证器实现
"""
from typing import Dict, Any, List, Optional, Union
import json
from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel, ValidationError as PydanticValidationError
import logging


logger = logging.getLogger(__name__)


class SchemaValidator:
    """Schema验证器，缓存编译后的 Draft 7 验证器"""

    def __init__(self):
        self.validators_cache: Dict[str, Draft7Validator] = {}

    def validate(
        self,
        data: Any,
        schema: Union[Dict[str, Any], type, None]
    ) -> List[str]:
        """
        验证数据是否符合schema定义

        Args:
            data: 待验证的数据
            schema: JSON Schema定义或Pydantic模型类

        Returns:
            验证错误列表，如果没有错误返回空列表
        """
        if not schema:
            return []

        if isinstance(schema, type) and issubclass(schema, BaseModel):
            return self._validate_with_pydantic(data, schema)
        if isinstance(schema, dict):
            return self._validate_with_jsonschema(data, schema)

        return [f"Unsupported schema type: {type(schema)}"]

    def is_valid(self, data: Any, schema: Optional[Dict[str, Any]]) -> bool:
        return not self.validate(data, schema)

    def _validate_with_pydantic(self, data: Any, model_class: type) -> List[str]:
        """使用Pydantic模型验证"""
        errors = []

        if not isinstance(data, dict):
            return [f"root: expected object, got {type(data).__name__}"]

        try:
            model_class(**data)
        except PydanticValidationError as e:
            for error in e.errors():
                field_path = ".".join(str(loc) for loc in error["loc"])
                errors.append(f"{field_path}: {error['msg']}")

        return errors

    def _get_validator(self, schema: Dict[str, Any]) -> Draft7Validator:
        schema_str = json.dumps(schema, sort_keys=True, default=str)
        validator = self.validators_cache.get(schema_str)
        if validator is None:
            Draft7Validator.check_schema(schema)
            validator = Draft7Validator(schema)
            self.validators_cache[schema_str] = validator
        return validator

    def _validate_with_jsonschema(self, data: Any, schema: Dict[str, Any]) -> List[str]:
        """使用JSON Schema验证"""
        try:
            validator = self._get_validator(schema)
        except SchemaError as e:
            return [f"Invalid schema: {e.message}"]

        errors = []
        for error in validator.iter_errors(data):
            path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "root"
            errors.append(f"{path}: {error.message}")

        return errors

    def format_validation_errors(
        self,
        errors: List[str],
        max_errors: Optional[int] = None
    ) -> str:
        """格式化验证错误为可读字符串"""
        if not errors:
            return "No validation errors"

        displayed = errors[:max_errors] if max_errors else errors
        formatted_errors = "\n".join(f"  - {error}" for error in displayed)
        remaining = len(errors) - len(displayed)
        if remaining > 0:
            return f"Validation errors:\n{formatted_errors}\n  ... and {remaining} more errors"
        return f"Validation errors:\n{formatted_errors}"
