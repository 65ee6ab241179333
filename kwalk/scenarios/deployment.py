import pydantic as pd

from kwalk.core.abstract.scenarios import BaseScenario, ScenarioSettings, Step
from kwalk.core.models.kube import Deployment


class DeploymentScenarioSettings(ScenarioSettings):
    deployment_name: str = pd.Field("nginx-deployment", description="The name of the Deployment to deploy.")
    container_name: str = pd.Field("nginx-container", description="The container updated by the rolling update.")
    app_label: str = pd.Field("nginx", description="The value of the app label selecting the Deployment pods.")
    replicas: int = pd.Field(3, ge=1, description="The initial number of replicas.")
    scale_up_replicas: int = pd.Field(5, ge=1, description="The number of replicas to scale up to.")
    scale_down_replicas: int = pd.Field(2, ge=1, description="The number of replicas to scale down to.")
    update_image: str = pd.Field("nginx:1.22", description="The image rolled out by the rolling update.")
    ready_timeout: float = pd.Field(120, ge=0, description="How long to wait for replicas to be ready (in seconds).")
    ready_interval: float = pd.Field(5, gt=0, description="Polling interval while waiting for ready replicas.")
    rollout_timeout: float = pd.Field(180, gt=0, description="How long `rollout status` may block (in seconds).")


class DeploymentScenario(BaseScenario[DeploymentScenarioSettings]):
    """
    Deploys an nginx Deployment, scales it up and down, rolls out a new image and rolls it back.
    """

    display_name = "deployment"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.deployment = self.ref("deployment", self.settings.deployment_name)

    @property
    def selector(self) -> str:
        return f"app={self.settings.app_label}"

    def steps(self) -> list[Step]:
        return [
            Step(name="Cleanup existing resources", phase="cleanup", run=self.cleanup_existing),
            Step(name="Deploy Deployment", phase="apply", run=self.deploy),
            Step(name="Verify ready replicas", phase="verify", strict=True, run=self.verify_ready),
            Step(name="Scale up", phase="act", run=self.scale_up),
            Step(name="Scale down", phase="act", run=self.scale_down),
            Step(name="Rolling update", phase="act", run=self.rolling_update),
            Step(name="Rollback", phase="act", run=self.rollback),
            Step(name="Final status", phase="report", run=self.final_status),
        ]

    def _ready(self, replicas: int) -> bool:
        deployment = self.kubectl.get_object(self.deployment, Deployment)
        return deployment.status.ready_replicas == replicas and deployment.status.replicas == replicas

    def wait_ready(self, replicas: int) -> None:
        self.poller.wait(
            f"{replicas} ready replicas",
            lambda: self._ready(replicas),
            timeout=self.settings.ready_timeout,
            interval=self.settings.ready_interval,
        )

    def _scale(self, replicas: int) -> None:
        self.info(f"Scaling {self.deployment} to {replicas} replicas")
        self.kubectl.scale(self.deployment, replicas)
        self.wait_ready(replicas)
        self.show("Pods", "pods", selector=self.selector)

    def _wait_rollout(self) -> None:
        self.section(
            "Rollout Status",
            self.kubectl.rollout("status", self.deployment, timeout=self.settings.rollout_timeout).stdout,
        )

    # Steps

    def cleanup_existing(self) -> None:
        self.remove(self.deployment)

    def deploy(self) -> None:
        documents = self.load_manifest("deployment.yml")
        for document in documents:
            document["metadata"]["name"] = self.settings.deployment_name
            document["spec"]["replicas"] = self.settings.replicas

        self.kubectl.apply_documents(documents)
        self.track(self.deployment)
        self.wait_exists(self.deployment)

    def verify_ready(self) -> None:
        self.wait_ready(self.settings.replicas)
        self.show("Deployment", "deployment", self.deployment.name)
        self.show("Pods", "pods", selector=self.selector)

    def scale_up(self) -> None:
        self._scale(self.settings.scale_up_replicas)

    def scale_down(self) -> None:
        self._scale(self.settings.scale_down_replicas)

    def rolling_update(self) -> None:
        self.info(f"Updating {self.settings.container_name} to {self.settings.update_image}")
        self.kubectl.set_image(self.deployment, self.settings.container_name, self.settings.update_image)
        self._wait_rollout()
        self.section("Rollout History", self.kubectl.rollout("history", self.deployment).stdout)

    def rollback(self) -> None:
        self.kubectl.rollout("undo", self.deployment)
        self._wait_rollout()
        self.success(f"{self.deployment} rolled back")

    def final_status(self) -> None:
        self.show("Deployment", "deployment", self.deployment.name)
        self.show("ReplicaSets", "replicasets", selector=self.selector)
        self.show("Pods", "pods", selector=self.selector)
