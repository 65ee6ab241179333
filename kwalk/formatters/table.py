from rich.markup import escape
from rich.table import Table

from kwalk.core.abstract import formatters
from kwalk.core.models.result import RunReport, StepStatus


def _format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, seconds = divmod(int(seconds), 60)
    return f"{minutes}m{seconds:02d}s"


@formatters.register(rich_console=True)
def table(report: RunReport) -> Table:
    """Format the run report as a table of steps.

    :param report: The report to format.
    :type report: :class:`core.models.result.RunReport`
    :returns: The formatted report.
    :rtype: Table
    """

    color = {"succeeded": "green", "failed": "red", "interrupted": "magenta"}[report.status.value]
    table = Table(
        show_header=True,
        header_style="bold magenta",
        title=f"\n{report.scenario} ({report.action}) in namespace {report.namespace}\n",
        title_justify="left",
        title_style="",
        caption=f"[{color}]{report.status.value}[/{color}] - exit code {report.exit_code}",
    )

    table.add_column("Number", justify="right", no_wrap=True)
    table.add_column("Step", style="cyan")
    table.add_column("Phase", style="cyan")
    table.add_column("Mode")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Detail", overflow="fold")

    for i, step in enumerate(report.steps):
        table.add_row(
            f"{i + 1}.",
            step.name,
            step.phase,
            "strict" if step.strict else "best-effort",
            f"[{step.status.color}]{step.status.value}[/{step.status.color}]",
            _format_duration(step.duration) if step.status != StepStatus.SKIPPED else "",
            escape(step.detail or ""),
            end_section=i == len(report.steps) - 1,
        )

    return table
