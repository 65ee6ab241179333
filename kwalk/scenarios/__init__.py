from .cronjob import CronJobScenario
from .deployment import DeploymentScenario
from .persistentvolume import PersistentVolumeScenario
from .serviceaccount import ServiceAccountScenario

__all__ = ["CronJobScenario", "DeploymentScenario", "PersistentVolumeScenario", "ServiceAccountScenario"]
