"""Typed views over `kubectl get -o json` output.

Only the fields the scenarios read are modelled, everything else is ignored.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, TypeVar

import pydantic as pd


class KubeModel(pd.BaseModel):
    model_config = pd.ConfigDict(extra="ignore", populate_by_name=True)


class OwnerReference(KubeModel):
    kind: str
    name: str


class ObjectMeta(KubeModel):
    name: str
    namespace: Optional[str] = None
    labels: dict[str, str] = {}
    creation_timestamp: Optional[datetime] = pd.Field(None, alias="creationTimestamp")
    owner_references: list[OwnerReference] = pd.Field(default_factory=list, alias="ownerReferences")

    def owned_by(self, kind: str, name: str) -> bool:
        return any(ref.kind == kind and ref.name == name for ref in self.owner_references)


class KubeObject(KubeModel):
    kind: str = ""
    metadata: ObjectMeta


class Condition(KubeModel):
    type: str
    status: str
    reason: Optional[str] = None
    message: Optional[str] = None


# CronJob


class CronJobSpec(KubeModel):
    schedule: str = ""
    suspend: bool = False


class CronJobStatus(KubeModel):
    active: list[dict] = []
    last_schedule_time: Optional[datetime] = pd.Field(None, alias="lastScheduleTime")


class CronJob(KubeObject):
    spec: CronJobSpec = CronJobSpec()
    status: CronJobStatus = CronJobStatus()


# Job


class JobStatus(KubeModel):
    active: int = 0
    succeeded: int = 0
    failed: int = 0
    conditions: list[Condition] = []

    def has_condition(self, type_: str) -> bool:
        return any(c.type == type_ and c.status == "True" for c in self.conditions)


class Job(KubeObject):
    status: JobStatus = JobStatus()

    @property
    def complete(self) -> bool:
        return self.status.succeeded > 0 or self.status.has_condition("Complete")

    @property
    def failed(self) -> bool:
        return self.status.has_condition("Failed")

    @property
    def started(self) -> bool:
        """The job has at least one running instance, or already got past that point."""
        return self.status.active > 0 or self.complete or self.failed


# Pod


class PodStatus(KubeModel):
    phase: str = "Pending"


class Pod(KubeObject):
    status: PodStatus = PodStatus()

    @property
    def phase(self) -> str:
        return self.status.phase

    @property
    def running_or_completed(self) -> bool:
        return self.phase in ("Running", "Succeeded", "Failed")


# PersistentVolumeClaim


class PersistentVolumeClaimSpec(KubeModel):
    volume_name: Optional[str] = pd.Field(None, alias="volumeName")
    storage_class_name: Optional[str] = pd.Field(None, alias="storageClassName")


class PersistentVolumeClaimStatus(KubeModel):
    phase: str = "Pending"
    capacity: dict[str, str] = {}


class PersistentVolumeClaim(KubeObject):
    spec: PersistentVolumeClaimSpec = PersistentVolumeClaimSpec()
    status: PersistentVolumeClaimStatus = PersistentVolumeClaimStatus()

    @property
    def bound(self) -> bool:
        return self.status.phase == "Bound"


# Deployment


class DeploymentSpec(KubeModel):
    replicas: int = 1


class DeploymentStatus(KubeModel):
    replicas: int = 0
    ready_replicas: int = pd.Field(0, alias="readyReplicas")
    updated_replicas: int = pd.Field(0, alias="updatedReplicas")
    available_replicas: int = pd.Field(0, alias="availableReplicas")


class Deployment(KubeObject):
    spec: DeploymentSpec = DeploymentSpec()
    status: DeploymentStatus = DeploymentStatus()


AnyKubeObject = TypeVar("AnyKubeObject", bound=KubeObject)
