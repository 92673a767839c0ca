"""Parsing of the editor's hook payload.

The editor pipes one JSON object to the hook's stdin after each tool call:

    {
        "hook_event_name": "PostToolUse",
        "session_id": "abc123",
        "cwd": "/home/me/project",
        "tool_name": "Edit",
        "tool_input": {"file_path": "/home/me/project/src/main.py", ...}
    }

Only post-edit events carry a file worth validating.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any

EDIT_TOOLS = frozenset({"Edit", "MultiEdit", "Write", "NotebookEdit"})
POST_TOOL_USE = "PostToolUse"


@dataclass
class HookInput:
    hook_event_name: str = ""
    session_id: str = ""
    cwd: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, payload: str) -> "HookInput":
        """Parse a payload.

        Raises:
            ValueError: If the payload is empty or not a JSON object.
        """
        if not payload or not payload.strip():
            raise ValueError("No hook input")
        data = json.loads(payload)
        if not isinstance(data, dict):
            raise ValueError("Hook input must be a JSON object")

        tool_input = data.get("tool_input")
        return cls(
            hook_event_name=str(data.get("hook_event_name") or ""),
            session_id=str(data.get("session_id") or ""),
            cwd=str(data.get("cwd") or ""),
            tool_name=str(data.get("tool_name") or ""),
            tool_input=tool_input if isinstance(tool_input, dict) else {},
        )

    @property
    def is_edit_tool(self) -> bool:
        return self.tool_name in EDIT_TOOLS

    @property
    def file_path(self) -> str:
        """Edited file, made absolute against ``cwd``.

        Empty if absent, or if the path is relative and there is no ``cwd``.
        """
        path = ""
        if self.tool_name == "NotebookEdit":
            path = self.tool_input.get("notebook_path") or ""
        if not path:
            path = self.tool_input.get("file_path") or ""
        if not isinstance(path, str) or not path:
            return ""
        if not os.path.isabs(path):
            # Relative paths are only meaningful against the editor's cwd
            if not self.cwd:
                return ""
            path = os.path.join(self.cwd, path)
        return os.path.abspath(path)

    def should_process(self) -> bool:
        return self.hook_event_name == POST_TOOL_USE and self.is_edit_tool and bool(self.file_path)


def with_default_cwd(payload: str, cwd: str) -> str:
    """Fill in ``cwd`` when the editor left it out.

    Run in the hook process, so a relative file path resolves against the
    directory the editor invoked the hook from. Anything that is not a JSON
    object passes through unchanged.
    """
    try:
        data = json.loads(payload)
    except ValueError:
        return payload
    if not isinstance(data, dict) or data.get("cwd"):
        return payload
    data["cwd"] = cwd
    return json.dumps(data)
