from .json import json
from .table import table
from .yaml import yaml

__all__ = ["json", "table", "yaml"]
