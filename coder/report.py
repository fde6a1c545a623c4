"""JSON run reports and conversation dumps."""

import json
from datetime import datetime, timezone
from pathlib import Path

from .snapshot import CODER_DIR


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.retries = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_iteration_seen = 0
        self._last_report: dict | None = None

    def record_llm_call(self, iteration: int, duration: float, token_est: int, finish_reason: str):
        self.llm_calls += 1
        self.total_llm_time += duration
        if iteration > self.max_iteration_seen:
            self.max_iteration_seen = iteration
        self.events.append(
            {
                "iteration": iteration,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "prompt_tokens_est": token_est,
                "finish_reason": finish_reason,
            }
        )

    def record_tool_call(
        self,
        iteration: int,
        name: str,
        arguments: dict | None,
        succeeded: bool,
        duration: float,
        *,
        retry: bool = False,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        if retry:
            self.retries += 1
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "iteration": iteration,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "succeeded": succeeded,
            "retry": retry,
            "duration_s": round(duration, 3),
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        exit_code: int,
        error_message: str | None = None,
    ) -> dict:
        succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {"outcome": outcome, "exit_code": exit_code}
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "iterations": self.max_iteration_seen,
                "tool_calls_total": succeeded + failed,
                "tool_calls_succeeded": succeeded,
                "tool_calls_failed": failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "retries": self.retries,
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")


def dump_conversation(conversation, base_dir: str) -> Path:
    """Write the conversation to .coder/conversations/<id>.json and return the path."""
    out_dir = Path(base_dir) / CODER_DIR / "conversations"
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / f"{conversation.id}.json"
    with path.open("w", encoding="utf-8") as f:
        json.dump(conversation.to_dict(), f, indent=2)
        f.write("\n")
    return path
