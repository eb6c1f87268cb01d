"""Error taxonomy and JSON report generation for a generation run."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the orchestrator or setup helpers for reportable runtime failures."""

    exit_code = 1


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class StreamError(AgentError):
    """Raised when the model response stream fails mid-consumption."""


class UnsupportedContentError(AgentError):
    """Raised for an inline media part that has no handler."""


class ToolExecutionError(AgentError):
    """Raised when a local or remote tool fails or its result can't be used."""


class LoopGuardError(AgentError):
    """Raised when the same function call repeats more than the permitted count."""

    def __init__(self, call_text: str, limit: int):
        super().__init__(
            f"possible infinite loop of function call detected "
            f"(permitted max count: {limit}): '{call_text}'"
        )
        self.call_text = call_text
        self.limit = limit


class FinishReasonError(AgentError):
    """Raised when a pass finishes with a reason other than 'stop'."""

    def __init__(self, reason: str):
        super().__init__(f"finished with non-stop reason: {reason}")
        self.reason = reason


class DeadlineExceededError(AgentError):
    """Raised when the generation deadline elapses before a pass completes."""

    exit_code = 124


class ReportCollector:
    """Accumulates events during a generation run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.passes = 0
        self.loop_guard_rejections = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.usage: dict[str, int] = {}

    def record_pass(
        self,
        pass_number: int,
        duration: float,
        token_est: int,
        finish_reason: str | None,
    ):
        self.passes = max(self.passes, pass_number)
        self.total_llm_time += duration
        self.events.append(
            {
                "pass": pass_number,
                "type": "llm_pass",
                "duration_s": round(duration, 3),
                "prompt_tokens_est": token_est,
                "finish_reason": finish_reason,
            }
        )

    def record_usage(self, usage: dict[str, int]):
        """Keep the latest non-zero counters reported by the stream."""
        for key, value in usage.items():
            if value:
                self.usage[key] = value

    def record_tool_call(
        self,
        pass_number: int,
        name: str,
        arguments: dict | None,
        kind: str,
        outcome: str,
        duration: float,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(
            name, {"executed": 0, "declined": 0, "failed": 0, "unmatched": 0}
        )
        stats[outcome] = stats.get(outcome, 0) + 1
        event: dict = {
            "pass": pass_number,
            "type": "tool_call",
            "name": name,
            "kind": kind,
            "arguments": arguments,
            "outcome": outcome,
            "duration_s": round(duration, 3),
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_loop_guard(self, pass_number: int, call_text: str, limit: int):
        self.loop_guard_rejections += 1
        self.events.append(
            {
                "pass": pass_number,
                "type": "loop_guard",
                "call": call_text,
                "limit": limit,
            }
        )

    def build_report(
        self,
        *,
        prompt: str,
        model: str,
        provider: str,
        settings: dict,
        exit_code: int,
        error_message: str | None = None,
    ) -> dict:
        result: dict = {
            "outcome": "success" if exit_code == 0 else "error",
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "prompt": prompt,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "passes": self.passes,
                "tool_calls_total": sum(
                    sum(s.values()) for s in self.tool_stats.values()
                ),
                "tool_calls_by_name": dict(self.tool_stats),
                "loop_guard_rejections": self.loop_guard_rejections,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
                "usage": dict(self.usage),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
