from __future__ import annotations

import inspect
import logging
from typing import Any, Optional

import typer
from pydantic import ValidationError
from typer.models import OptionInfo

from kwalk.core.abstract import formatters
from kwalk.core.abstract.scenarios import BaseScenario
from kwalk.core.models.config import Config
from kwalk.core.runner import Runner
from kwalk.utils.version import get_version

app = typer.Typer(
    pretty_exceptions_show_locals=False,
    pretty_exceptions_short=True,
    no_args_is_help=True,
    help="IMPORTANT: Run `kwalk cronjob --help` to see all cli flags!",
)

logger = logging.getLogger("kwalk")


@app.command(rich_help_panel="Utils")
def version() -> None:
    typer.echo(get_version())


def __process_type(_T: Any) -> type:
    """Process type to a python literal"""
    if _T in (int, float, str, bool):
        return _T
    else:
        return str  # If the type is unknown, just use str and let pydantic handle it


def __param_decls(field_name: str, annotation: Any) -> list[str]:
    dashed = field_name.replace("_", "-")
    if annotation is bool:
        return [f"--{dashed}/--no-{dashed}"]
    return sorted(set([f"--{field_name}", f"--{dashed}"]))


def load_commands() -> None:
    for scenario_name, scenario_type in BaseScenario.get_all().items():  # type: ignore
        # NOTE: This wrapper here is needed to avoid the scenario_name being overwritten in the loop
        def scenario_wrapper(_scenario_name: str = scenario_name, _scenario_type: type = scenario_type):
            def run_scenario(
                ctx: typer.Context,
                kubeconfig: Optional[str] = typer.Option(
                    None,
                    "--kubeconfig",
                    "-k",
                    help="Path to kubeconfig file. If not provided, kubectl will find it.",
                    rich_help_panel="Kubernetes Settings",
                ),
                context: Optional[str] = typer.Option(
                    None,
                    "--context",
                    "-c",
                    help="The kubeconfig context to use. By default, the current context is used.",
                    rich_help_panel="Kubernetes Settings",
                ),
                namespace: Optional[str] = typer.Option(
                    None,
                    "--namespace",
                    "-n",
                    help="The namespace to run the scenario in. [default: default]",
                    rich_help_panel="Kubernetes Settings",
                ),
                kubectl: Optional[str] = typer.Option(
                    None,
                    "--kubectl",
                    help="The kubectl binary to use. [default: kubectl]",
                    rich_help_panel="Kubernetes Settings",
                ),
                action: str = typer.Option(
                    "run",
                    "--action",
                    "-a",
                    help=f"What to do. Available actions: {', '.join(_scenario_type.actions)}.",
                    rich_help_panel="Orchestration Settings",
                ),
                keep_resources: bool = typer.Option(
                    False,
                    "--keep",
                    help="Do not delete the created resources when the run ends.",
                    rich_help_panel="Orchestration Settings",
                ),
                poll_strategy: Optional[str] = typer.Option(
                    None,
                    "--poll-strategy",
                    help="How to space condition checks: fixed or exponential. [default: fixed]",
                    rich_help_panel="Orchestration Settings",
                ),
                command_timeout: Optional[float] = typer.Option(
                    None,
                    "--command-timeout",
                    help="Timeout of a single kubectl invocation (in seconds). [default: 30]",
                    rich_help_panel="Orchestration Settings",
                ),
                format: Optional[str] = typer.Option(
                    None,
                    "--formatter",
                    "-f",
                    help=f"Output formatter for the run report ({', '.join(formatters.list_available())}). [default: table]",
                    rich_help_panel="Output Settings",
                ),
                file_output: Optional[str] = typer.Option(
                    None,
                    "--fileoutput",
                    help="Filename to write the run report to (if not specified, file output is disabled)",
                    rich_help_panel="Output Settings",
                ),
                verbose: bool = typer.Option(
                    False, "--verbose", "-v", help="Enable verbose mode", rich_help_panel="Logging Settings"
                ),
                quiet: bool = typer.Option(
                    False, "--quiet", "-q", help="Enable quiet mode", rich_help_panel="Logging Settings"
                ),
                log_to_stderr: bool = typer.Option(
                    False, "--logtostderr", help="Pass logs to stderr", rich_help_panel="Logging Settings"
                ),
                width: Optional[int] = typer.Option(
                    None,
                    "--width",
                    help="Width of the output. Will use console width by default.",
                    rich_help_panel="Logging Settings",
                ),
                **scenario_args,
            ) -> None:
                options = {
                    "kubeconfig": kubeconfig,
                    "context": context,
                    "namespace": namespace,
                    "kubectl": kubectl,
                    "poll_strategy": poll_strategy,
                    "command_timeout": command_timeout,
                    "format": format,
                    "file_output": file_output,
                    "width": width,
                }

                try:
                    config = Config(
                        # NOTE: Unset options are left to the environment (KWALK_*) and the defaults
                        **{key: value for key, value in options.items() if value is not None},
                        action=action,
                        keep_resources=keep_resources,
                        verbose=verbose,
                        quiet=quiet,
                        log_to_stderr=log_to_stderr,
                        scenario=_scenario_name,
                        other_args=scenario_args,
                    )
                    config.setup_logging()
                    runner = Runner(config)
                except ValidationError:
                    logger.exception("Invalid arguments")
                    raise typer.Exit(code=1)
                else:
                    exit_code = runner.run()
                    raise typer.Exit(code=exit_code)

            run_scenario.__name__ = _scenario_name
            run_scenario.__doc__ = _scenario_type.__doc__ or f"Run the `{_scenario_name}` scenario"
            signature = inspect.signature(run_scenario)
            run_scenario.__signature__ = signature.replace(  # type: ignore
                parameters=list(signature.parameters.values())[:-1]
                + [
                    inspect.Parameter(
                        name=field_name,
                        kind=inspect.Parameter.KEYWORD_ONLY,
                        default=OptionInfo(
                            default=field_info.default,
                            param_decls=__param_decls(field_name, field_info.annotation),
                            help=f"{field_info.description}",
                            rich_help_panel="Scenario Settings",
                        ),
                        annotation=__process_type(field_info.annotation),
                    )
                    for field_name, field_info in _scenario_type.get_settings_type().model_fields.items()
                ]
            )

            app.command(rich_help_panel="Scenarios")(run_scenario)

        scenario_wrapper()


def run() -> None:
    load_commands()
    app()


if __name__ == "__main__":
    run()
