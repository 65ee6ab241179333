from __future__ import annotations

from typing import Optional

import pydantic as pd

# Kinds that live outside of any namespace, so `-n` must not be passed for them.
CLUSTER_SCOPED_KINDS = frozenset(
    {
        "pv",
        "persistentvolume",
        "persistentvolumes",
        "storageclass",
        "storageclasses",
        "node",
        "nodes",
        "namespace",
        "namespaces",
        "csidriver",
        "csidrivers",
        "csinode",
        "csinodes",
        "volumesnapshotclass",
        "volumesnapshotclasses",
        "clusterrole",
        "clusterroles",
        "clusterrolebinding",
        "clusterrolebindings",
    }
)


def is_cluster_scoped(kind: str) -> bool:
    return kind.lower() in CLUSTER_SCOPED_KINDS


class ResourceRef(pd.BaseModel):
    """A handle to an object inside the cluster, resolved by name for every operation."""

    model_config = pd.ConfigDict(frozen=True)

    kind: str
    name: str
    namespace: Optional[str] = None

    @pd.field_validator("namespace")
    @classmethod
    def drop_namespace_for_cluster_scoped(cls, v: Optional[str], info: pd.ValidationInfo) -> Optional[str]:
        if v is not None and is_cluster_scoped(info.data.get("kind", "")):
            return None
        return v

    @property
    def namespace_args(self) -> list[str]:
        return ["-n", self.namespace] if self.namespace else []

    @property
    def args(self) -> list[str]:
        return [self.kind, self.name, *self.namespace_args]

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind} {self.namespace}/{self.name}"
        return f"{self.kind} {self.name}"


class DependentResource(pd.BaseModel):
    """
    A resource whose name is only known after its owner created it (e.g. the pod of a job).
    It starts unresolved and gets its name through repeated lookups.
    """

    owner: ResourceRef
    kind: str = "pod"
    selector: str
    resolved_name: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.resolved_name is not None

    @property
    def ref(self) -> ResourceRef:
        if self.resolved_name is None:
            raise ValueError(f"{self.kind} for {self.owner} is not resolved yet")

        return ResourceRef(kind=self.kind, name=self.resolved_name, namespace=self.owner.namespace)

    def __str__(self) -> str:
        return f"{self.kind} of {self.owner} ({self.selector})"
