from __future__ import annotations

import abc
import logging
from pathlib import Path
from textwrap import dedent
from typing import TYPE_CHECKING, Any, Generic, Optional, TypeVar, get_args

import pydantic as pd
import yaml
from rich.markup import escape

from kwalk.core.exceptions import ResourceNotFound
from kwalk.core.models.objects import ResourceRef
from kwalk.core.models.result import RunReport
from kwalk.core.sequencer import Step
from kwalk.utils.configurable import Configurable

if TYPE_CHECKING:
    from kwalk.core.integrations.kubectl import Kubectl
    from kwalk.core.log_follower import LogFollower
    from kwalk.core.models.config import Config
    from kwalk.core.poller import ConditionPoller

logger = logging.getLogger("kwalk")

MANIFESTS_DIR = Path(__file__).resolve().parent.parent.parent / "manifests"


class ScenarioSettings(pd.BaseModel):
    """A class to represent scenario settings: names, timeouts, intervals and retry budgets.

    It is used in CLI to generate the help, parameters and validate values.
    Description is used to generate the help.
    Other pydantic features can be used to validate the values.

    Nested classes are not supported here.
    """

    create_timeout: float = pd.Field(30, ge=0, description="How long to wait for applied resources to exist (in seconds).")
    create_interval: float = pd.Field(2, gt=0, description="Polling interval for existence checks (in seconds).")
    delete_timeout: float = pd.Field(60, ge=0, description="How long to wait for deleted resources to go away (in seconds).")


SelfBS = TypeVar("SelfBS", bound="BaseScenario")
_ScenarioSettings = TypeVar("_ScenarioSettings", bound=ScenarioSettings)


class BaseScenario(Configurable, Generic[_ScenarioSettings]):
    """An abstract base class for scenario implementation.

    A scenario is one walkthrough of a resource lifecycle (cleanup, apply, verify, act, observe),
    expressed as an ordered list of steps for the lifecycle sequencer.

    This class is generic, and requires a type for the settings.
    This settings type will be used for the settings property of the scenario.
    It will be used to generate CLI parameters for this scenario, validated by pydantic.

    The name of the scenario is the `display_name` class attribute.
    The scenario will automatically be registered in the scenario registry using __subclasses__ mechanism.
    """

    display_name: str

    # NOTE: Maps an action name to the names of the steps it runs. None means every step.
    actions: dict[str, Optional[tuple[str, ...]]] = {"run": None, "cleanup": ("Cleanup existing resources",)}
    # Actions whose purpose is to leave resources behind, teardown only reports for them
    keeps_resources: tuple[str, ...] = ()

    def __init__(
        self,
        config: Config,
        settings: _ScenarioSettings,
        *,
        kubectl: Kubectl,
        poller: ConditionPoller,
        follower: LogFollower,
    ) -> None:
        super().__init__(config)
        self.settings = settings
        self.kubectl = kubectl
        self.poller = poller
        self.follower = follower
        self.tracked: list[ResourceRef] = []

    def __str__(self) -> str:
        return self.display_name.title()

    @property
    def description(self) -> Optional[str]:
        """
        Generate a description for the scenario, from the docstring of the scenario class.
        """

        if not self.__doc__:
            return None
        return dedent(self.__doc__).strip()

    @abc.abstractmethod
    def steps(self) -> list[Step]:
        pass

    def pipeline(self) -> list[Step]:
        """The steps selected by the configured action, in declaration order."""

        selected = self.actions[self.config.action]
        steps = self.steps()
        if selected is None:
            return steps
        return [step for step in steps if step.name in selected]

    # Helpers for concrete scenarios

    @staticmethod
    def manifest(name: str) -> Path:
        return MANIFESTS_DIR / name

    @classmethod
    def load_manifest(cls, name: str) -> list[dict[str, Any]]:
        with open(cls.manifest(name)) as f:
            return [document for document in yaml.safe_load_all(f) if document]

    def ref(self, kind: str, name: str) -> ResourceRef:
        return self.kubectl.ref(kind, name)

    def track(self, ref: ResourceRef) -> ResourceRef:
        if ref not in self.tracked:
            self.tracked.append(ref)
        return ref

    def wait_exists(self, ref: ResourceRef) -> None:
        self.poller.wait(
            f"{ref.kind} creation",
            lambda: self.kubectl.exists(ref),
            timeout=self.settings.create_timeout,
            interval=self.settings.create_interval,
        )

    def remove(self, ref: ResourceRef, *, force: bool = False) -> None:
        """Best-effort delete: absence is success, an existing object is deleted and awaited."""

        if not self.kubectl.exists(ref):
            self.debug(f"{ref} not found, nothing to delete")
            return

        self.warning(f"Existing {ref} found, deleting...")
        self.kubectl.delete(ref, force=force, wait=False)
        self.poller.wait(
            f"{ref.kind} deletion",
            lambda: not self.kubectl.exists(ref),
            timeout=self.settings.delete_timeout,
            interval=self.settings.create_interval,
            strict=False,
        )

    def remove_selected(self, kind: str, selector: str) -> None:
        if self.kubectl.delete_selector(kind, selector):
            self.warning(f"Existing {kind} matching {selector} deleted")

    def show(self, title: str, kind: str, *names: str, selector: Optional[str] = None, output: str = "wide") -> None:
        self.section(title, self.kubectl.show(kind, *names, selector=selector, output=output))

    # Teardown

    def _status_line(self, ref: ResourceRef) -> str:
        try:
            return self.kubectl.run(["get", *ref.args, "--no-headers"]).stdout.strip()
        except ResourceNotFound:
            return "not found"

    def report_state(self, report: RunReport) -> None:
        report.resources = list(self.tracked)
        for ref in self.tracked:
            report.final_state[str(ref)] = self._status_line(ref)

        if report.final_state:
            self.section(
                "Current Status",
                "\n".join(f"{ref}: {state}" for ref, state in report.final_state.items()),
            )

    def teardown(self, report: RunReport) -> None:
        """Report what was created and, unless asked to keep it, delete it in reverse creation order."""

        self.report_state(report)

        if self.config.keep_resources or self.config.action in self.keeps_resources:
            if self.tracked:
                self.info("Keeping created resources")
            return

        for ref in reversed(self.tracked):
            try:
                if self.kubectl.delete(ref, wait=False):
                    self.info(f"Deleted {ref}")
            except Exception as e:
                logger.debug(f"Failed to delete {ref}", exc_info=True)
                self.warning(f"Could not delete {ref}: {escape(str(e))}")

    # Registry

    @classmethod
    def find(cls: type[SelfBS], name: str) -> type[SelfBS]:
        scenarios = cls.get_all()
        if name.lower() in scenarios:
            return scenarios[name.lower()]

        raise ValueError(f"Unknown scenario name: {name}. Available scenarios: {', '.join(scenarios)}")

    @classmethod
    def get_all(cls: type[SelfBS]) -> dict[str, type[SelfBS]]:
        from kwalk import scenarios as _  # noqa: F401

        return {sub_cls.display_name.lower(): sub_cls for sub_cls in cls.__subclasses__()}

    @classmethod
    def get_settings_type(cls) -> type[ScenarioSettings]:
        return get_args(cls.__orig_bases__[0])[0]  # type: ignore


AnyScenario = BaseScenario[ScenarioSettings]


__all__ = ["AnyScenario", "BaseScenario", "ScenarioSettings", "Step"]
