"""Claude Code worker adapter."""

from __future__ import annotations

import json
import shutil

from tasklane.engines.base import EngineBase, EngineResult


class ClaudeEngine(EngineBase):
    name = "claude"

    def build_cmd(self, prompt: str) -> list[str]:
        # Resolved path: on some platforms the child process resolves PATH differently.
        claude = shutil.which("claude") or "claude"
        return [
            claude,
            "--dangerously-skip-permissions",
            "--verbose",
            "-p",
            prompt,
            "--output-format",
            "stream-json",
        ]

    def parse_output(self, raw: str) -> EngineResult:
        result = EngineResult()
        for line in raw.splitlines():
            if '"type":"result"' not in line.replace(" ", ""):
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                result.text = "Could not parse result"
                continue
            result.text = obj.get("result", "") or ""
            usage = obj.get("usage") or {}
            try:
                result.input_tokens = int(usage.get("input_tokens", 0))
                result.output_tokens = int(usage.get("output_tokens", 0))
            except (TypeError, ValueError):
                pass
            if obj.get("is_error"):
                result.error = result.text or "Claude reported an error"
        if not result.text:
            result.text = "Task completed"
        return result

    def check_available(self) -> str | None:
        if not shutil.which("claude"):
            return "Claude Code CLI not found. Install from https://github.com/anthropics/claude-code"
        return None
