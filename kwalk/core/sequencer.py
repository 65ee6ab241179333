from __future__ import annotations

import contextlib
import logging
import signal
import threading
import time
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterator, Literal, Optional

import pydantic as pd
from rich.markup import escape

from kwalk.core.exceptions import ExternalUnavailable, Interrupted, KwalkError
from kwalk.core.models.result import RunReport, RunStatus, StepResult, StepStatus
from kwalk.utils.configurable import Configurable

if TYPE_CHECKING:
    from kwalk.core.models.config import Config

logger = logging.getLogger("kwalk")

PhaseLiteral = Literal["cleanup", "apply", "verify", "act", "observe", "report"]

# Phases that must tolerate failures (e.g. the resource being already absent) unless told otherwise
BEST_EFFORT_PHASES = ("cleanup", "report")


class Step(pd.BaseModel):
    name: str
    phase: PhaseLiteral
    run: Callable[[], None]
    strict: Optional[bool] = None

    @pd.model_validator(mode="after")
    def default_strictness(self) -> Step:
        if self.strict is None:
            self.strict = self.phase not in BEST_EFFORT_PHASES
        return self


@contextlib.contextmanager
def handle_interrupts() -> Iterator[None]:
    """
    The single signal entry point of a run.
    SIGINT already raises KeyboardInterrupt, SIGTERM is mapped onto `Interrupted` so both lead to teardown.
    """

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def on_sigterm(signum: int, frame: object) -> None:
        raise Interrupted(f"Received signal {signum}")

    previous = signal.signal(signal.SIGTERM, on_sigterm)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


class LifecycleSequencer(Configurable):
    """
    Runs an ordered pipeline of steps with fail-fast semantics.

    A failing strict step aborts the rest of the pipeline, a failing best-effort step only logs a warning.
    Whatever happens (success, failure, Ctrl+C) teardown runs last: it reports the current state of
    the resources created so far and then removes them.
    """

    def __init__(
        self,
        config: Config,
        *,
        steps: list[Step],
        teardown: Callable[[RunReport], None],
        scenario: str,
    ) -> None:
        super().__init__(config)
        self.steps = steps
        self.teardown = teardown
        self.report = RunReport(scenario=scenario, action=config.action, namespace=config.namespace)

    def _record(self, step: Step, status: StepStatus, started: float, detail: Optional[str] = None) -> None:
        self.report.steps.append(
            StepResult(
                name=step.name,
                phase=step.phase,
                strict=bool(step.strict),
                status=status,
                duration=time.monotonic() - started,
                detail=detail,
            )
        )

    def _skip_remaining(self, index: int) -> None:
        for step in self.steps[index:]:
            self.report.steps.append(
                StepResult(name=step.name, phase=step.phase, strict=bool(step.strict), status=StepStatus.SKIPPED)
            )

    def _run_steps(self) -> None:
        for index, step in enumerate(self.steps):
            self.info(f"[bold]{step.name}[/bold]")
            started = time.monotonic()
            try:
                step.run()
            except KeyboardInterrupt:
                self._record(step, StepStatus.INTERRUPTED, started, "interrupted by operator")
                self.report.status = RunStatus.INTERRUPTED
                self._skip_remaining(index + 1)
                return
            except ExternalUnavailable as e:
                self.error(f"{step.name}: control plane unavailable: {escape(str(e))}")
                self._record(step, StepStatus.FAILED, started, str(e))
                self.report.status = RunStatus.FAILED
                self._skip_remaining(index + 1)
                return
            except Exception as e:
                if not isinstance(e, KwalkError):
                    logger.exception(f"Unexpected error in step '{step.name}'")

                if step.strict:
                    self.error(f"{step.name} failed: {escape(str(e))}")
                    self._record(step, StepStatus.FAILED, started, str(e))
                    self.report.status = RunStatus.FAILED
                    self._skip_remaining(index + 1)
                    return

                self.warning(f"{step.name} did not complete: {escape(str(e))}")
                self._record(step, StepStatus.WARNING, started, str(e))
            else:
                self._record(step, StepStatus.SUCCEEDED, started)
            finally:
                self.separator()

    def _run_teardown(self) -> None:
        try:
            self.teardown(self.report)
        except KeyboardInterrupt:
            self.warning("Teardown interrupted, some resources may be left behind")
            self.report.status = RunStatus.INTERRUPTED
        except Exception as e:
            logger.exception("Teardown failed")
            self.error(f"Teardown failed, some resources may be left behind: {escape(str(e))}")

    def run(self) -> RunReport:
        """Run the pipeline. The returned report carries the exit code of the run."""

        try:
            self._run_steps()
        except KeyboardInterrupt:
            # Landed between two steps
            self.report.status = RunStatus.INTERRUPTED
        finally:
            if self.report.status == RunStatus.INTERRUPTED:
                self.console.print()
                self.warning("Interrupted. Current status:")
            self._run_teardown()
            self.report.finished_at = datetime.now()

        return self.report
