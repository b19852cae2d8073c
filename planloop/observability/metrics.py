from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict


@dataclass(slots=True)
class RuntimeMetrics:
    runs_total: int = 0
    runs_completed_total: int = 0
    runs_failed_total: int = 0
    replans_total: int = 0
    tool_calls_total: Dict[str, int] = field(default_factory=dict)
    tool_denials_total: int = 0

    def increment_tool_call(self, tool_name: str) -> None:
        self.tool_calls_total[tool_name] = self.tool_calls_total.get(tool_name, 0) + 1

    def snapshot(self) -> dict:
        return {
            "runs_total": self.runs_total,
            "runs_completed_total": self.runs_completed_total,
            "runs_failed_total": self.runs_failed_total,
            "replans_total": self.replans_total,
            "tool_calls_total": dict(self.tool_calls_total),
            "tool_denials_total": self.tool_denials_total,
        }

    def reset(self) -> None:
        self.runs_total = 0
        self.runs_completed_total = 0
        self.runs_failed_total = 0
        self.replans_total = 0
        self.tool_calls_total.clear()
        self.tool_denials_total = 0


_runtime_metrics = RuntimeMetrics()


def get_runtime_metrics() -> RuntimeMetrics:
    return _runtime_metrics
