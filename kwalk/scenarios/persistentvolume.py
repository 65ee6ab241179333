import shlex
from datetime import datetime
from typing import Any

import pydantic as pd

from kwalk.core.abstract.scenarios import BaseScenario, ScenarioSettings, Step
from kwalk.core.exceptions import VerificationFailed
from kwalk.core.models.kube import PersistentVolumeClaim, Pod
from kwalk.core.models.objects import ResourceRef

PV_COLUMNS = (
    "NAME:.metadata.name,CAPACITY:.spec.capacity.storage,ACCESS:.spec.accessModes,"
    "RECLAIM:.spec.persistentVolumeReclaimPolicy,STATUS:.status.phase,CLAIM:.spec.claimRef.name"
)
PVC_COLUMNS = (
    "NAME:.metadata.name,STATUS:.status.phase,VOLUME:.spec.volumeName,CAPACITY:.status.capacity.storage,"
    "ACCESS:.spec.accessModes,STORAGECLASS:.spec.storageClassName"
)


class PersistentVolumeScenarioSettings(ScenarioSettings):
    pv_name: str = pd.Field("hostpath-pv", description="The name of the PersistentVolume to deploy.")
    pvc_name: str = pd.Field("dev-pvc", description="The name of the PersistentVolumeClaim to deploy.")
    secret_name: str = pd.Field("mysql-secret", description="The name of the Secret deployed next to the volume.")
    test_pod_name: str = pd.Field("pv-test-pod", description="The name of the pod used to test the volume.")
    test_image: str = pd.Field("busybox", description="The image of the test pod.")
    mount_path: str = pd.Field("/data", description="Where the volume is mounted inside the test pod.")
    bind_timeout: float = pd.Field(60, ge=0, description="How long to wait for the claim to be bound (in seconds).")
    bind_interval: float = pd.Field(5, gt=0, description="Polling interval while waiting for the claim binding.")
    pod_timeout: float = pd.Field(120, ge=0, description="How long to wait for a test pod to run (in seconds).")
    pod_interval: float = pd.Field(10, gt=0, description="Polling interval while waiting for a test pod.")

    @property
    def second_pod_name(self) -> str:
        return f"{self.test_pod_name}-2"


class PersistentVolumeScenario(BaseScenario[PersistentVolumeScenarioSettings]):
    """
    Deploys a hostPath PersistentVolume with a claim, mounts it from a test pod and checks that
    data written there survives the pod being recreated.
    """

    display_name = "persistentvolume"

    actions = {
        "run": None,
        "deploy": ("Cleanup existing resources", "Deploy storage resources", "Verify PVC binding"),
        "test": ("Create test pod", "Write test data", "Verify data persistence"),
        "cleanup": ("Cleanup existing resources",),
        "info": ("Show cluster storage", "Storage report"),
    }
    keeps_resources = ("deploy",)

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.pv = self.ref("pv", self.settings.pv_name)
        self.pvc = self.ref("pvc", self.settings.pvc_name)
        self.secret = self.ref("secret", self.settings.secret_name)
        self.test_pod = self.ref("pod", self.settings.test_pod_name)
        self.second_pod = self.ref("pod", self.settings.second_pod_name)
        self.test_data = ""

    def steps(self) -> list[Step]:
        return [
            Step(name="Show cluster storage", phase="report", run=self.show_cluster_storage),
            Step(name="Cleanup existing resources", phase="cleanup", run=self.cleanup_existing),
            Step(name="Deploy storage resources", phase="apply", run=self.deploy),
            Step(name="Verify PVC binding", phase="verify", strict=True, run=self.verify_binding),
            Step(name="Create test pod", phase="act", run=self.create_test_pod),
            Step(name="Write test data", phase="act", run=self.write_test_data),
            Step(name="Verify data persistence", phase="verify", strict=False, run=self.verify_persistence),
            Step(name="Storage report", phase="report", run=self.storage_report),
        ]

    def test_pod_manifest(self, name: str) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {"name": name, "labels": {"app": "pv-test"}},
            "spec": {
                "containers": [
                    {
                        "name": "app",
                        "image": self.settings.test_image,
                        "command": ["sleep", "3600"],
                        "volumeMounts": [{"name": "storage", "mountPath": self.settings.mount_path}],
                    }
                ],
                "volumes": [{"name": "storage", "persistentVolumeClaim": {"claimName": self.settings.pvc_name}}],
                "restartPolicy": "Never",
            },
        }

    def _data_file(self, name: str) -> str:
        return f"{self.settings.mount_path.rstrip('/')}/{name}"

    def _start_pod(self, pod: ResourceRef) -> None:
        self.kubectl.apply_documents([self.test_pod_manifest(pod.name)])
        self.track(pod)
        self.wait_exists(pod)
        self.poller.wait(
            f"Test pod {pod.name} to be running",
            lambda: self.kubectl.get_object(pod, Pod).phase == "Running",
            timeout=self.settings.pod_timeout,
            interval=self.settings.pod_interval,
        )
        self.show("Test Pod Status", "pod", pod.name)

    # Steps

    def show_cluster_storage(self) -> None:
        self.show("Storage Classes", "storageclass")
        self.show("Persistent Volumes", "pv")

    def cleanup_existing(self) -> None:
        for pod in (self.second_pod, self.test_pod):
            self.remove(pod, force=True)
        self.remove(self.pvc)
        self.remove(self.pv)
        self.remove(self.secret)

    def deploy(self) -> None:
        names = {
            "PersistentVolume": self.settings.pv_name,
            "PersistentVolumeClaim": self.settings.pvc_name,
            "Secret": self.settings.secret_name,
        }
        documents = self.load_manifest("persistentvolume.yml")
        for document in documents:
            document["metadata"]["name"] = names.get(document["kind"], document["metadata"]["name"])

        self.kubectl.apply_documents(documents)
        for ref in (self.pv, self.pvc, self.secret):
            self.track(ref)
            self.wait_exists(ref)

    def verify_binding(self) -> None:
        self.poller.wait(
            "PVC to be bound",
            lambda: self.kubectl.get_object(self.pvc, PersistentVolumeClaim).bound,
            timeout=self.settings.bind_timeout,
            interval=self.settings.bind_interval,
        )
        claim = self.kubectl.get_object(self.pvc, PersistentVolumeClaim)
        self.success(f"{self.pvc} is bound to volume {claim.spec.volume_name}")
        self.show("PV Status", "pv", self.pv.name)
        self.show("PVC Status", "pvc", self.pvc.name)

    def create_test_pod(self) -> None:
        self.remove(self.test_pod, force=True)
        self._start_pod(self.test_pod)

    def write_test_data(self) -> None:
        self.test_data = f"PersistentVolume test data - {datetime.now().isoformat(timespec='seconds')}"
        data_file = self._data_file("test-file.txt")

        self.kubectl.exec(self.test_pod, ["sh", "-c", f"echo {shlex.quote(self.test_data)} > {data_file}"])
        self.kubectl.exec(self.test_pod, ["sh", "-c", f"date > {self._data_file('timestamp.txt')}"])

        self.section("Reading test data", self.kubectl.exec(self.test_pod, ["cat", data_file]).stdout)
        self.section(
            "Listing files in persistent volume",
            self.kubectl.exec(self.test_pod, ["ls", "-la", self.settings.mount_path]).stdout,
        )

    def verify_persistence(self) -> None:
        if not self.test_data:
            raise VerificationFailed("No test data was written")

        self.info("Testing persistence across pod recreation...")
        self.remove(self.test_pod, force=True)
        self._start_pod(self.second_pod)

        recovered = self.kubectl.exec(self.second_pod, ["cat", self._data_file("test-file.txt")]).stdout
        self.section("Verifying data persistence", f"Expected: {self.test_data}\nActual: {recovered.strip()}")
        if self.test_data not in recovered:
            raise VerificationFailed("Data did not survive pod recreation")

        self.success("Data persistence test passed: data survived pod recreation")

    def storage_report(self) -> None:
        self.show("PV Details", "pv", output=f"custom-columns={PV_COLUMNS}")
        self.show("PVC Details", "pvc", output=f"custom-columns={PVC_COLUMNS}")
