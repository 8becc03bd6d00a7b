"""Base class for external AI worker adapters."""

from __future__ import annotations

import json
import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

_RATE_LIMIT_PATTERNS = ("rate limit", "rate_limit", "usage limit", "quota", "429", "too many requests")
_POLICY_PATTERNS = ("blocked by policy", "read-only sandbox", "approval_policy")


def _mentions(text: str, patterns: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(p in lower for p in patterns)


@dataclass
class EngineResult:
    """Uniform result from one worker invocation."""

    text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0
    error: str = ""
    return_code: int = 0

    @property
    def ok(self) -> bool:
        return self.return_code == 0 and not self.error


class EngineBase(ABC):
    """Abstract worker adapter.  Subclasses implement ``build_cmd`` and ``parse_output``."""

    name: str = "base"

    @abstractmethod
    def build_cmd(self, prompt: str) -> list[str]:
        """Return the CLI command list for the given prompt."""
        ...

    @abstractmethod
    def parse_output(self, raw: str) -> EngineResult:
        """Parse raw stdout into an :class:`EngineResult`."""
        ...

    def check_available(self) -> str | None:
        """Return an error message if the worker CLI is not available, else None."""
        cmd_name = self.build_cmd("test")[0]
        if not shutil.which(cmd_name):
            return f"{cmd_name} not found in PATH"
        return None

    def stdin_payload(self, prompt: str) -> str | None:
        """Text to feed on stdin instead of argv; ``None`` keeps the prompt in argv."""
        return None

    def run_sync(
        self,
        prompt: str,
        *,
        cwd: Path | None = None,
        log_file: Path | None = None,
        timeout: int | None = None,
    ) -> EngineResult:
        """Run the worker to completion and return the parsed result.

        Blocks the calling thread until the process exits; partial output is
        not reported back.
        """
        cmd = self.build_cmd(prompt)
        stdin_text = self.stdin_payload(prompt)
        start = time.monotonic()

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE if stdin_text is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=cwd,
            )
        except FileNotFoundError:
            return EngineResult(error=f"{cmd[0]} not found", return_code=-1)

        try:
            proc_stdout, proc_stderr = self._communicate(proc, stdin_text, timeout=timeout)
        except subprocess.TimeoutExpired:
            self._terminate_process(proc)
            return EngineResult(error="timeout", return_code=-1)
        except KeyboardInterrupt:
            self._terminate_process(proc)
            raise

        elapsed_ms = int((time.monotonic() - start) * 1000)

        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            with log_file.open("a", encoding="utf-8") as f:
                if proc_stdout:
                    f.write(proc_stdout)
                if proc_stderr:
                    f.write(proc_stderr)

        result = self.parse_output(proc_stdout or "")
        result.return_code = proc.returncode
        if not result.duration_ms:
            result.duration_ms = elapsed_ms

        error = self._check_errors(proc_stdout or "")
        if error and not result.error:
            result.error = error

        # Some CLIs report argument/permission issues only on stderr.
        if proc.returncode != 0 and not result.error:
            stderr = (proc_stderr or "").strip()
            result.error = stderr.splitlines()[0] if stderr else f"exit code {proc.returncode}"

        return result

    @staticmethod
    def _communicate(
        proc: subprocess.Popen[str],
        stdin_text: str | None,
        *,
        timeout: int | None,
    ) -> tuple[str, str]:
        """Read process output while remaining responsive to KeyboardInterrupt."""
        if timeout is None:
            return proc.communicate(input=stdin_text)

        deadline = time.monotonic() + timeout
        pending_input = stdin_text
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise subprocess.TimeoutExpired(proc.args, timeout)
            try:
                return proc.communicate(input=pending_input, timeout=min(0.2, remaining))
            except subprocess.TimeoutExpired:
                # stdin was already delivered by the first communicate() call
                pending_input = None
                continue

    @staticmethod
    def _terminate_process(proc: subprocess.Popen[str]) -> None:
        """Terminate a subprocess promptly (best effort)."""
        try:
            if proc.poll() is None:
                proc.terminate()
            proc.wait(timeout=2)
            return
        except (OSError, subprocess.TimeoutExpired):
            pass

        try:
            if proc.poll() is None:
                proc.kill()
            proc.wait(timeout=2)
        except (OSError, subprocess.TimeoutExpired):
            pass

    @staticmethod
    def _check_errors(raw: str) -> str:
        """Detect error events in JSON-lines worker output."""
        for line in raw.splitlines():
            stripped = line.strip()
            if not stripped:
                continue
            try:
                obj = json.loads(stripped)
            except json.JSONDecodeError:
                continue
            if not isinstance(obj, dict):
                continue

            err = obj.get("error")
            if isinstance(err, dict):
                msg = str(err.get("message", "")).strip()
                code = str(err.get("type", "") or err.get("code", ""))
                if _mentions(code, _RATE_LIMIT_PATTERNS):
                    return msg or "Rate limit exceeded"
                if msg:
                    return msg
            elif isinstance(err, str) and err.strip():
                if _mentions(err, _POLICY_PATTERNS):
                    return "Blocked by policy"
                if _mentions(err, _RATE_LIMIT_PATTERNS):
                    return "Rate limit exceeded"
                return err.strip()

            if str(obj.get("type", "")).lower() == "error":
                msg = obj.get("message") or obj.get("text") or ""
                return str(msg).strip() or "Unknown error"

        return ""
