import json

import yaml as yaml_module

from kwalk.core.abstract import formatters
from kwalk.core.models.result import RunReport


@formatters.register()
def yaml(report: RunReport) -> str:
    return yaml_module.dump(json.loads(report.model_dump_json()), sort_keys=False)
