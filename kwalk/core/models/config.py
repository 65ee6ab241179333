from __future__ import annotations

import logging
import sys
from typing import Any, Literal, Optional

import pydantic as pd
from kubernetes import config as kube_config
from kubernetes.config.config_exception import ConfigException
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.console import Console
from rich.logging import RichHandler

from kwalk.core.abstract import formatters
from kwalk.core.abstract.scenarios import AnyScenario, BaseScenario, ScenarioSettings

logger = logging.getLogger("kwalk")

PollStrategyLiteral = Literal["fixed", "exponential"]


class Config(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="KWALK_", extra="ignore")

    quiet: bool = pd.Field(False)
    verbose: bool = pd.Field(False)

    # Kubernetes Settings
    kubectl: str = pd.Field("kubectl")
    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    namespace: str = pd.Field("default")

    # Orchestration Settings
    scenario: str
    action: str = pd.Field("run")
    keep_resources: bool = pd.Field(False)
    poll_strategy: PollStrategyLiteral = pd.Field("fixed")
    command_timeout: float = pd.Field(30, gt=0)  # in seconds
    connectivity_timeout: float = pd.Field(10, gt=0)  # in seconds

    # Logging Settings
    format: str = pd.Field("table")
    log_to_stderr: bool = pd.Field(False)
    width: Optional[int] = pd.Field(None, ge=1)

    # Output Settings
    file_output: Optional[str] = pd.Field(None)

    other_args: dict[str, Any] = pd.Field(default_factory=dict)

    _logging_console: Optional[Console] = pd.PrivateAttr(None)

    @pd.field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        v = v.strip().lower()
        if not v or v.startswith("*"):
            raise ValueError("Namespace must be a single explicit namespace name")
        return v

    @pd.field_validator("scenario")
    @classmethod
    def validate_scenario(cls, v: str) -> str:
        BaseScenario.find(v)  # NOTE: raises if scenario is not found
        return v.lower()

    @pd.field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        formatters.find(v)  # NOTE: raises if formatter is not found
        return v

    @pd.model_validator(mode="after")
    def validate_action(self) -> Config:
        ScenarioType = BaseScenario.find(self.scenario)
        if self.action not in ScenarioType.actions:
            raise ValueError(
                f"Unknown action '{self.action}' for scenario {self.scenario}. "
                f"Available actions: {', '.join(ScenarioType.actions)}"
            )
        return self

    @property
    def Formatter(self) -> formatters.FormatterFunc:
        return formatters.find(self.format)

    @property
    def ScenarioType(self) -> type[AnyScenario]:
        return BaseScenario.find(self.scenario)

    def create_scenario_settings(self) -> ScenarioSettings:
        return self.ScenarioType.get_settings_type()(**self.other_args)

    @property
    def logging_console(self) -> Console:
        if self._logging_console is None:
            self._logging_console = Console(file=sys.stderr if self.log_to_stderr else sys.stdout, width=self.width)
        return self._logging_console

    def current_context(self) -> Optional[str]:
        """The context kubectl is going to talk to, or None when there is no kubeconfig (e.g. inside a pod)."""

        if self.context is not None:
            return self.context

        try:
            _, active_context = kube_config.list_kube_config_contexts(config_file=self.kubeconfig)
        except (ConfigException, OSError):
            logger.debug("Could not read kubeconfig contexts", exc_info=True)
            return None

        return active_context["name"] if active_context else None

    def setup_logging(self) -> None:
        logging.basicConfig(
            level="NOTSET",
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=self.logging_console)],
        )
        logging.getLogger("").setLevel(logging.CRITICAL)
        logger.setLevel(logging.DEBUG if self.verbose else logging.CRITICAL if self.quiet else logging.INFO)
