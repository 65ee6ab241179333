from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional, Union

import pydantic as pd

from kwalk.core.abstract import formatters
from kwalk.core.models.objects import ResourceRef


class ExecResult(pd.BaseModel):
    """The outcome of a single kubectl invocation."""

    model_config = pd.ConfigDict(frozen=True)

    args: list[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def command(self) -> str:
        return " ".join(self.args)


class StepStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    WARNING = "warning"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    SKIPPED = "skipped"

    @property
    def color(self) -> str:
        return {
            StepStatus.SUCCEEDED: "green",
            StepStatus.WARNING: "yellow",
            StepStatus.FAILED: "red",
            StepStatus.INTERRUPTED: "magenta",
            StepStatus.SKIPPED: "grey50",
        }[self]


class RunStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    INTERRUPTED = "interrupted"

    @property
    def exit_code(self) -> int:
        return {RunStatus.SUCCEEDED: 0, RunStatus.FAILED: 1, RunStatus.INTERRUPTED: 130}[self]


class StepResult(pd.BaseModel):
    name: str
    phase: str
    strict: bool
    status: StepStatus
    duration: float = 0.0
    detail: Optional[str] = None


class RunReport(pd.BaseModel):
    scenario: str
    action: str
    namespace: str
    status: RunStatus = RunStatus.SUCCEEDED
    steps: list[StepResult] = pd.Field(default_factory=list)
    resources: list[ResourceRef] = pd.Field(default_factory=list)
    final_state: dict[str, str] = pd.Field(default_factory=dict)
    started_at: datetime = pd.Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    @property
    def failed_step(self) -> Optional[StepResult]:
        return next((step for step in self.steps if step.status == StepStatus.FAILED), None)

    def format(self, formatter: Union[formatters.FormatterFunc, str]) -> Any:
        """Format the report.

        Args:
            formatter: The formatter to use, or its registered name.

        Returns:
            The formatted report.
        """

        formatter = formatters.find(formatter) if isinstance(formatter, str) else formatter
        return formatter(self)
