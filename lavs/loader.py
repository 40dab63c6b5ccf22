"""LAVS manifest loader"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Union

from pydantic import ValidationError

from lavs.types import LAVSError, LAVSErrorCode, Manifest

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "lavs.json"

ENDPOINT_METHODS = ("query", "mutation", "subscription")
HANDLER_TYPES = ("script", "function", "http", "mcp")
SCRIPT_INPUT_MODES = ("stdin", "env")

# Required fields per handler type
HANDLER_FIELDS = {
    "script": ("command",),
    "function": ("module", "function"),
    "http": ("url", "method"),
    "mcp": ("server", "tool"),
}


def _invalid(message: str) -> LAVSError:
    return LAVSError(LAVSErrorCode.InvalidRequest, message)


def _require_string(data: Dict[str, Any], field: str, where: str) -> None:
    value = data.get(field)
    if not isinstance(value, str) or not value:
        raise _invalid(f"{where}: missing or invalid required field '{field}'")


class ManifestLoader:
    """Parses and validates ``lavs.json`` documents.

    Validation is complete before a ``Manifest`` is returned; relative
    ``cwd`` and local view paths are resolved against the manifest's own
    directory.
    """

    def load(self, manifest_path: Union[str, Path]) -> Manifest:
        path = Path(manifest_path)
        if path.is_dir():
            path = path / MANIFEST_FILENAME

        if not path.is_file():
            raise _invalid(f"Manifest file not found: {path}")

        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise _invalid(f"Cannot read manifest {path}: {e}") from e

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise LAVSError(LAVSErrorCode.ParseError, f"Invalid JSON in manifest {path}: {e}") from e

        manifest = self.parse(data, base_dir=path.parent.resolve())
        logger.info(f"Loaded LAVS manifest '{manifest.name}' ({len(manifest.endpoints)} endpoints) from {path}")
        return manifest

    def parse(self, data: Any, base_dir: Union[str, Path]) -> Manifest:
        """Validate a decoded manifest and resolve its relative paths"""
        self.validate(data)
        resolved = self._resolve_paths(data, Path(base_dir))
        try:
            return Manifest.model_validate(resolved)
        except ValidationError as e:
            raise _invalid(f"Invalid manifest: {e}") from e

    def validate(self, data: Any) -> None:
        if not isinstance(data, dict):
            raise _invalid("Manifest must be a JSON object")

        for field in ("lavs", "name", "version"):
            _require_string(data, field, "Manifest")

        endpoints = data.get("endpoints")
        if not isinstance(endpoints, list):
            raise _invalid("Manifest: 'endpoints' must be an array")

        seen = set()
        for index, endpoint in enumerate(endpoints):
            self._validate_endpoint(endpoint, index)
            endpoint_id = endpoint["id"]
            if endpoint_id in seen:
                raise _invalid(f"Duplicate endpoint ID '{endpoint_id}'")
            seen.add(endpoint_id)

        permissions = data.get("permissions")
        if permissions is not None and not isinstance(permissions, dict):
            raise _invalid("Manifest: 'permissions' must be an object")

    def _validate_endpoint(self, endpoint: Any, index: int) -> None:
        where = f"Endpoint at index {index}"
        if not isinstance(endpoint, dict):
            raise _invalid(f"{where}: must be an object")

        _require_string(endpoint, "id", where)
        where = f"Endpoint '{endpoint['id']}'"

        if endpoint.get("method") not in ENDPOINT_METHODS:
            raise _invalid(
                f"{where}: invalid 'method' {endpoint.get('method')!r} "
                f"(expected one of {', '.join(ENDPOINT_METHODS)})"
            )

        handler = endpoint.get("handler")
        if not isinstance(handler, dict):
            raise _invalid(f"{where}: missing required field 'handler'")

        handler_type = handler.get("type")
        if handler_type not in HANDLER_TYPES:
            raise _invalid(f"{where}: invalid handler type {handler_type!r}")

        for field in HANDLER_FIELDS[handler_type]:
            _require_string(handler, field, f"{where} ({handler_type} handler)")

        if handler_type == "script":
            mode = handler.get("input")
            if mode is not None and mode not in SCRIPT_INPUT_MODES:
                raise _invalid(f"{where}: invalid script input mode {mode!r} (expected stdin or env)")
            args = handler.get("args")
            if args is not None and not (isinstance(args, list) and all(isinstance(a, str) for a in args)):
                raise _invalid(f"{where}: 'args' must be an array of strings")

        schema = endpoint.get("schema")
        if schema is not None and not isinstance(schema, dict):
            raise _invalid(f"{where}: 'schema' must be an object")

    def _resolve_paths(self, data: Dict[str, Any], base_dir: Path) -> Dict[str, Any]:
        resolved = dict(data)
        endpoints: List[Dict[str, Any]] = []
        for endpoint in data["endpoints"]:
            endpoint = dict(endpoint)
            handler = dict(endpoint["handler"])
            if handler["type"] == "script" and handler.get("cwd"):
                handler["cwd"] = self._resolve(handler["cwd"], base_dir)
            endpoint["handler"] = handler
            endpoints.append(endpoint)
        resolved["endpoints"] = endpoints

        view = data.get("view")
        if isinstance(view, dict) and isinstance(view.get("component"), dict):
            component = dict(view["component"])
            if component.get("type") == "local" and component.get("path"):
                component["path"] = self._resolve(component["path"], base_dir)
            resolved["view"] = dict(view, component=component)
        return resolved

    @staticmethod
    def _resolve(value: str, base_dir: Path) -> str:
        if os.path.isabs(value):
            return value
        return os.path.normpath(os.path.join(str(base_dir), value))
