"""Tests for lavs.script_executor"""
import sys

import pytest

from lavs.script_executor import (
    ScriptExecutor,
    filter_sensitive_vars,
    get_value_by_path,
    input_to_env,
    parse_output,
    resolve_args,
)
from lavs.types import ExecutionContext, LAVSError, LAVSErrorCode, ScriptHandler


def context(tmp_path, **overrides):
    fields = dict(agent_id="todo", endpoint_id="listTodos", workdir=str(tmp_path), timeout=10000)
    fields.update(overrides)
    return ExecutionContext(**fields)


def python_handler(code, **fields):
    return ScriptHandler(command=sys.executable, args=["-c", code], **fields)


# ---------------------------------------------------------------------------
# Argument templates and environment
# ---------------------------------------------------------------------------


class TestTemplates:
    def test_resolve_args(self):
        data = {"user": {"name": "ada", "tags": ["a", "b"]}, "force": True, "limit": 5}
        args = resolve_args(["--name={{user.name}}", "{{ user.tags }}", "{{force}}", "-n", "{{limit}}"], data)
        assert args == ["--name=ada", "a,b", "true", "-n", "5"]

    def test_missing_values_become_empty(self):
        assert resolve_args(["x{{nope.deeper}}y"], {"a": 1}) == ["xy"]

    def test_no_input_leaves_args(self):
        assert resolve_args(["{{a}}"], None) == ["{{a}}"]

    def test_object_values_serialized(self):
        assert resolve_args(["{{cfg}}"], {"cfg": {"k": 1}}) == ['{"k": 1}']

    @pytest.mark.parametrize("path", ["__proto__", "constructor.name", "a.prototype"])
    def test_prototype_keys_blocked(self, path):
        data = {"__proto__": "x", "constructor": {"name": "y"}, "a": {"prototype": "z"}}
        assert get_value_by_path(data, path) is None

    def test_list_index_path(self):
        assert get_value_by_path({"items": ["a", "b"]}, "items.1") == "b"
        assert get_value_by_path({"items": ["a"]}, "items.5") is None


class TestEnvironment:
    def test_input_to_env_flattens(self):
        env = input_to_env({"title": "x", "meta": {"owner": "ada", "level": 2}, "skip": None, "flag": False})
        assert env == {"TITLE": "x", "META_OWNER": "ada", "META_LEVEL": "2", "FLAG": "false"}

    def test_sensitive_vars_stripped(self):
        env = filter_sensitive_vars({
            "PATH": "/bin",
            "GITHUB_TOKEN": "t",
            "DB_PASSWORD": "p",
            "my_api_key": "k",
            "LAVS_PROJECT_PATH": "/p",
            "TITLE": "ok",
        })
        assert env == {"PATH": "/bin", "LAVS_PROJECT_PATH": "/p", "TITLE": "ok"}

    def test_build_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", "/home/ada")
        monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "leak")
        handler = ScriptHandler(command="x", input="env", env={"MODE": "fast", "SERVICE_TOKEN": "t"})
        env = ScriptExecutor().build_environment(
            handler, {"title": "buy milk"}, context(tmp_path, env={"LAVS_PROJECT_PATH": "/proj"})
        )

        assert env["HOME"] == "/home/ada"
        assert env["LAVS_AGENT_ID"] == "todo"
        assert env["LAVS_ENDPOINT_ID"] == "listTodos"
        assert env["LAVS_PROJECT_PATH"] == "/proj"
        assert env["MODE"] == "fast"
        assert env["TITLE"] == "buy milk"
        assert "AWS_SECRET_ACCESS_KEY" not in env
        assert "SERVICE_TOKEN" not in env


class TestParseOutput:
    def test_json(self):
        assert parse_output('{"a": 1}\n') == {"a": 1}

    def test_empty_is_none(self):
        assert parse_output("  \n") is None

    def test_embedded_json_recovered(self):
        assert parse_output('loading...\n[{"id": 1}]\n') == [{"id": 1}]

    def test_bracketed_progress_skipped(self):
        assert parse_output('progress [1/3]\n{"ok": true}\n') == {"ok": True}

    def test_first_complete_value_wins(self):
        assert parse_output('done {"a": 1} trailing {"b": 2}') == {"a": 1}

    def test_garbage_is_handler_error(self):
        with pytest.raises(LAVSError) as exc:
            parse_output("definitely not json", "warning")
        assert exc.value.code == LAVSErrorCode.HandlerError
        assert exc.value.data["stderr"] == "warning"


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class TestExecute:
    @pytest.mark.asyncio
    async def test_stdin_input_round_trip(self, tmp_path):
        handler = python_handler(
            "import json, sys; data = json.load(sys.stdin); print(json.dumps({'got': data['title']}))",
            input="stdin",
        )
        result = await ScriptExecutor().execute(handler, {"title": "milk"}, context(tmp_path))
        assert result == {"got": "milk"}

    @pytest.mark.asyncio
    async def test_env_input_and_args(self, tmp_path):
        handler = python_handler(
            "import json, os, sys; print(json.dumps([os.environ['TITLE'], sys.argv[1]]))",
            input="env",
        )
        handler.args.append("{{title}}")
        result = await ScriptExecutor().execute(handler, {"title": "milk"}, context(tmp_path))
        assert result == ["milk", "milk"]

    @pytest.mark.asyncio
    async def test_runs_in_workdir_by_default(self, tmp_path):
        handler = python_handler("import json, os; print(json.dumps(os.getcwd()))")
        result = await ScriptExecutor().execute(handler, None, context(tmp_path))
        assert result == str(tmp_path.resolve())

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_handler_error(self, tmp_path):
        handler = python_handler("import sys; sys.stderr.write('broken'); sys.exit(4)")
        with pytest.raises(LAVSError) as exc:
            await ScriptExecutor().execute(handler, {}, context(tmp_path))

        assert exc.value.code == LAVSErrorCode.HandlerError
        assert exc.value.data["exitCode"] == 4
        assert "broken" in exc.value.data["stderr"]

    @pytest.mark.asyncio
    async def test_timeout_kills_script(self, tmp_path):
        handler = python_handler("import time; time.sleep(30)")
        with pytest.raises(LAVSError) as exc:
            await ScriptExecutor().execute(handler, {}, context(tmp_path, timeout=300))

        assert exc.value.code == LAVSErrorCode.Timeout
        assert "300ms" in exc.value.message

    @pytest.mark.asyncio
    async def test_missing_command_is_handler_error(self, tmp_path):
        handler = ScriptHandler(command=str(tmp_path / "missing-binary"))
        with pytest.raises(LAVSError) as exc:
            await ScriptExecutor().execute(handler, {}, context(tmp_path))
        assert exc.value.code == LAVSErrorCode.HandlerError

    @pytest.mark.asyncio
    async def test_empty_output_is_none(self, tmp_path):
        handler = python_handler("pass")
        assert await ScriptExecutor().execute(handler, {}, context(tmp_path)) is None
