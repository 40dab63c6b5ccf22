"""JSON Schema validation for LAVS endpoint input and output"""
import copy
import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

from jsonschema import FormatChecker, validators
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel

from lavs.types import Endpoint, LAVSError, LAVSErrorCode

logger = logging.getLogger(__name__)


class ValidationIssue(BaseModel):
    path: str
    message: str
    keyword: str
    params: Optional[Dict[str, Any]] = None


class ValidationResult(BaseModel):
    valid: bool
    errors: Optional[List[ValidationIssue]] = None


def _with_defaults(validator_class):
    """Extend a validator class so ``properties`` fills in schema defaults"""
    validate_properties = validator_class.VALIDATORS["properties"]

    def set_defaults(validator, properties, instance, schema):
        if validator.is_type(instance, "object"):
            for name, subschema in properties.items():
                if isinstance(subschema, dict) and "default" in subschema:
                    instance.setdefault(name, copy.deepcopy(subschema["default"]))
        yield from validate_properties(validator, properties, instance, schema)

    return validators.extend(validator_class, {"properties": set_defaults})


def _schema_digest(schema: Dict[str, Any]) -> str:
    encoded = json.dumps(schema, sort_keys=True, default=str).encode()
    return hashlib.sha1(encoded).hexdigest()[:16]


class LAVSValidator:
    """Validates endpoint data with compiled, cached validators.

    Cache keys combine direction, endpoint id and a digest of the schema, so
    two manifests sharing an endpoint id never reuse each other's validator.
    All violations are reported, not just the first.
    """

    def __init__(self):
        self._validators: Dict[str, Any] = {}
        self._classes: Dict[type, type] = {}
        self._format_checker = FormatChecker()

    def validate_input(self, endpoint: Endpoint, data: Any) -> ValidationResult:
        schema = endpoint.schema_.input if endpoint.schema_ else None
        return self._validate("input", endpoint.id, schema, data)

    def validate_output(self, endpoint: Endpoint, data: Any) -> ValidationResult:
        schema = endpoint.schema_.output if endpoint.schema_ else None
        return self._validate("output", endpoint.id, schema, data)

    def assert_valid_input(self, endpoint: Endpoint, data: Any) -> None:
        result = self.validate_input(endpoint, data)
        if not result.valid:
            raise LAVSError(
                LAVSErrorCode.InvalidParams,
                f"Invalid input for endpoint '{endpoint.id}': {self._summarize(result.errors)}",
                {"validationErrors": [e.model_dump() for e in result.errors]}
            )

    def assert_valid_output(self, endpoint: Endpoint, data: Any) -> None:
        result = self.validate_output(endpoint, data)
        if not result.valid:
            raise LAVSError(
                LAVSErrorCode.InternalError,
                f"Invalid output from endpoint '{endpoint.id}': handler returned data that does not match schema",
                {"validationErrors": [e.model_dump() for e in result.errors]}
            )

    def clear_cache(self) -> None:
        """Drop compiled validators; they are rebuilt lazily on next use"""
        self._validators = {}

    @property
    def cache_size(self) -> int:
        return len(self._validators)

    def _validate(self, direction: str, endpoint_id: str, schema: Optional[Dict[str, Any]], data: Any) -> ValidationResult:
        if not schema:
            return ValidationResult(valid=True)

        validator = self._get_validator(direction, endpoint_id, schema)
        issues = [
            ValidationIssue(
                path="/" + "/".join(str(p) for p in error.absolute_path),
                message=error.message,
                keyword=str(error.validator),
                params={"expected": error.validator_value} if not isinstance(error.validator_value, dict) else None,
            )
            for error in sorted(validator.iter_errors(data), key=lambda e: list(map(str, e.absolute_path)))
        ]
        if not issues:
            return ValidationResult(valid=True)
        return ValidationResult(valid=False, errors=issues)

    def _get_validator(self, direction: str, endpoint_id: str, schema: Dict[str, Any]):
        cache_key = f"{direction}:{endpoint_id}:{_schema_digest(schema)}"
        cache = self._validators
        validator = cache.get(cache_key)
        if validator is not None:
            return validator

        base_class = validators.validator_for(schema)
        try:
            base_class.check_schema(schema)
        except SchemaError as e:
            raise LAVSError(
                LAVSErrorCode.InternalError,
                f"Failed to compile JSON Schema for {direction}:{endpoint_id}: {e.message}"
            ) from e

        validator_class = self._classes.get(base_class)
        if validator_class is None:
            validator_class = _with_defaults(base_class)
            self._classes[base_class] = validator_class

        validator = validator_class(schema, format_checker=self._format_checker)
        cache[cache_key] = validator
        logger.debug(f"Compiled validator {cache_key}")
        return validator
