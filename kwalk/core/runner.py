import logging
from typing import Optional

from rich.console import Console

from kwalk.core.abstract import formatters
from kwalk.core.abstract.scenarios import AnyScenario
from kwalk.core.exceptions import ExternalUnavailable
from kwalk.core.integrations.kubectl import Kubectl
from kwalk.core.log_follower import LogFollower
from kwalk.core.models.config import Config
from kwalk.core.models.result import RunReport
from kwalk.core.poller import ConditionPoller
from kwalk.core.sequencer import LifecycleSequencer, handle_interrupts
from kwalk.utils.version import get_version

logger = logging.getLogger("kwalk")


class Runner:
    """Wires the orchestration core together for one scenario run."""

    def __init__(
        self,
        config: Config,
        *,
        kubectl: Optional[Kubectl] = None,
        poller: Optional[ConditionPoller] = None,
        follower: Optional[LogFollower] = None,
    ) -> None:
        self.config = config
        self.kubectl = kubectl or Kubectl(config)
        self.poller = poller or ConditionPoller(config)
        self.follower = follower or LogFollower(config, self.kubectl, self.poller)
        self._scenario: AnyScenario = config.ScenarioType(
            config,
            config.create_scenario_settings(),
            kubectl=self.kubectl,
            poller=self.poller,
            follower=self.follower,
        )

    def _print(self, *objects, rich: bool = True, force: bool = False) -> None:
        """
        A wrapper around `rich.print` that prints only if `config.quiet` is False.
        """
        print_func = self.config.logging_console.print if rich else print
        if not self.config.quiet or force:
            print_func(*objects)  # type: ignore

    def _greet(self) -> None:
        self._print(f"\nRunning kwalk {get_version()}")
        self._print(f"Using scenario: {self._scenario} (action: {self.config.action})")
        self._print(f"Using context: {self.config.current_context() or 'in-cluster / default'}")
        self._print(f"Using namespace: {self.config.namespace}")
        self._print(f"Using formatter: {self.config.format}")
        self._print("")

    def _process_report(self, report: RunReport) -> None:
        Formatter = self.config.Formatter
        formatted = report.format(Formatter)
        rich = formatters.is_rich(Formatter)

        self._print(formatted, rich=rich, force=True)

        if self.config.file_output:
            with open(self.config.file_output, "w") as target_file:
                # don't use rich when writing json or yaml to avoid line wrapping etc
                if not rich:
                    target_file.write(formatted)
                else:
                    console = Console(file=target_file, width=self.config.width)
                    console.print(formatted)
            logger.info(f"Report written to {self.config.file_output}")

    def run(self) -> int:
        """Run the Runner. The return value is the exit code of the program."""

        self._greet()
        try:
            self.kubectl.probe()
        except ExternalUnavailable as e:
            logger.critical(e)
            logger.error("Try to explicitly set --context and/or --kubeconfig flags.")
            return 1

        sequencer = LifecycleSequencer(
            self.config,
            steps=self._scenario.pipeline(),
            teardown=self._scenario.teardown,
            scenario=self._scenario.display_name,
        )
        with handle_interrupts():
            report = sequencer.run()

        try:
            self._process_report(report)
        except OSError:
            logger.exception("Could not write the report")
            return 1

        if report.failed_step is not None:
            logger.error(f"Step '{report.failed_step.name}' failed: {report.failed_step.detail}")

        return report.exit_code
