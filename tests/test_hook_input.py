"""Tests for parsing the editor's hook payload."""

import json

import pytest

from conftest import make_payload

from hookd.hook_input import HookInput, with_default_cwd


class TestHookInput:
    def test_edit_event(self):
        hook_input = HookInput.from_json(make_payload("/p/src/main.py"))

        assert hook_input.hook_event_name == "PostToolUse"
        assert hook_input.tool_name == "Edit"
        assert hook_input.file_path == "/p/src/main.py"
        assert hook_input.should_process()

    @pytest.mark.parametrize("tool", ["Edit", "MultiEdit", "Write", "NotebookEdit"])
    def test_edit_tools_processed(self, tool):
        assert HookInput.from_json(make_payload("/p/a.py", tool_name=tool)).should_process()

    @pytest.mark.parametrize("tool", ["Read", "Bash", "Grep", ""])
    def test_other_tools_ignored(self, tool):
        assert not HookInput.from_json(make_payload("/p/a.py", tool_name=tool)).should_process()

    def test_only_post_tool_use(self):
        assert not HookInput.from_json(make_payload("/p/a.py", event="PreToolUse")).should_process()

    def test_notebook_path(self):
        hook_input = HookInput.from_json(make_payload("/p/nb.ipynb", tool_name="NotebookEdit"))
        assert hook_input.file_path == "/p/nb.ipynb"

    def test_relative_path_joined_with_cwd(self):
        hook_input = HookInput.from_json(make_payload("src/a.py", cwd="/home/me/proj"))
        assert hook_input.file_path == "/home/me/proj/src/a.py"

    def test_relative_path_without_cwd_is_ignored(self):
        """Resolving against the parsing process's directory would differ between daemon and client."""
        hook_input = HookInput.from_json(make_payload("src/a.py", cwd=""))

        assert hook_input.file_path == ""
        assert not hook_input.should_process()

    def test_missing_file_path(self):
        payload = json.dumps({"hook_event_name": "PostToolUse", "tool_name": "Edit", "tool_input": {}})
        hook_input = HookInput.from_json(payload)

        assert hook_input.file_path == ""
        assert not hook_input.should_process()

    def test_non_dict_tool_input(self):
        payload = json.dumps({"hook_event_name": "PostToolUse", "tool_name": "Edit", "tool_input": "x"})
        assert HookInput.from_json(payload).tool_input == {}

    @pytest.mark.parametrize("payload", ["", "   ", "{bad", "[]", "42"])
    def test_invalid_payload_raises(self, payload):
        with pytest.raises(ValueError):
            HookInput.from_json(payload)


class TestWithDefaultCwd:
    def test_fills_missing_cwd(self):
        payload = json.dumps({"hook_event_name": "PostToolUse", "tool_name": "Edit", "tool_input": {"file_path": "src/a.py"}})

        filled = with_default_cwd(payload, "/home/me/proj")

        assert HookInput.from_json(filled).file_path == "/home/me/proj/src/a.py"

    def test_keeps_editor_cwd(self):
        payload = make_payload("src/a.py", cwd="/editor/dir")
        assert with_default_cwd(payload, "/elsewhere") == payload

    @pytest.mark.parametrize("payload", ["", "not json", "[1, 2]"])
    def test_passes_other_payloads_through(self, payload):
        assert with_default_cwd(payload, "/x") == payload
