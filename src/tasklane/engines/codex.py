"""Codex CLI worker adapter."""

from __future__ import annotations

import json
import os
import shutil

from tasklane.engines.base import EngineBase, EngineResult

# Long prompts go through stdin to avoid command-line length limits.
_STDIN_THRESHOLD = 8000


class CodexEngine(EngineBase):
    name = "codex"

    def __init__(self, *, sandboxed: bool | None = None) -> None:
        if sandboxed is None:
            sandboxed = os.environ.get("TASKLANE_CODEX_SAFE", "").strip().lower() in {"1", "true", "yes", "on"}
        self.sandboxed = sandboxed

    def build_cmd(self, prompt: str) -> list[str]:
        codex = shutil.which("codex") or "codex"
        if self.sandboxed:
            cmd = [codex, "-a", "on-failure", "-s", "workspace-write", "exec", "--json"]
        else:
            cmd = [codex, "--dangerously-bypass-approvals-and-sandbox", "exec", "--json"]
        cmd.append("-" if len(prompt) > _STDIN_THRESHOLD else prompt)
        return cmd

    def stdin_payload(self, prompt: str) -> str | None:
        return prompt if len(prompt) > _STDIN_THRESHOLD else None

    def parse_output(self, raw: str) -> EngineResult:
        result = EngineResult()
        messages: list[str] = []
        plain: list[str] = []

        for line in raw.splitlines():
            stripped = line.strip()
            if not stripped:
                continue
            try:
                obj = json.loads(stripped)
            except json.JSONDecodeError:
                plain.append(stripped)
                continue
            if not isinstance(obj, dict):
                continue

            item = obj.get("item") if isinstance(obj.get("item"), dict) else obj
            item_type = item.get("type")
            text = self._extract_text(item)
            if item_type == "agent_message" and text:
                messages.append(text)
            elif item_type == "error" and not result.error:
                result.error = text or str(obj.get("message", "")).strip() or "Unknown error"

            usage = obj.get("usage")
            if isinstance(usage, dict):
                try:
                    result.input_tokens += int(usage.get("input_tokens", 0) or 0)
                    result.output_tokens += int(usage.get("output_tokens", 0) or 0)
                except (TypeError, ValueError):
                    pass

        if messages:
            result.text = "\n\n".join(messages).strip()
        elif plain:
            result.text = "\n".join(plain)
        else:
            result.text = "Task completed"
        return result

    @staticmethod
    def _extract_text(payload: dict[str, object]) -> str:
        text = payload.get("text")
        if isinstance(text, str) and text.strip():
            return text.strip()
        content = payload.get("content")
        if isinstance(content, list):
            parts = [
                part["text"] for part in content
                if isinstance(part, dict) and isinstance(part.get("text"), str)
            ]
            return "".join(parts).strip()
        return ""

    def check_available(self) -> str | None:
        if not shutil.which("codex"):
            return "Codex CLI not found. Make sure 'codex' is in your PATH."
        return None
