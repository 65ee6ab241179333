from kwalk.core.abstract import formatters
from kwalk.core.models.result import RunReport


@formatters.register()
def json(report: RunReport) -> str:
    return report.model_dump_json(indent=2)
