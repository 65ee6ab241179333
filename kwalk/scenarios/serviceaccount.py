from typing import Any

import pydantic as pd

from kwalk.core.abstract.scenarios import BaseScenario, ScenarioSettings, Step
from kwalk.core.exceptions import CommandFailed, ResourceNotFound, VerificationFailed
from kwalk.core.models.kube import Pod
from kwalk.core.models.objects import ResourceRef

DEMO_SELECTOR = "app=demo"


class PermissionCheck(pd.BaseModel):
    service_account: str
    verb: str
    resource: str
    allowed: bool
    all_namespaces: bool = False

    def __str__(self) -> str:
        scope = " across all namespaces" if self.all_namespaces else ""
        return f"{self.service_account} {self.verb} {self.resource}{scope}"


class PodCommandCheck(pd.BaseModel):
    service_account: str
    command: list[str]
    allowed: bool

    def __str__(self) -> str:
        return f"{self.service_account}: {' '.join(self.command)}"


PERMISSION_CHECKS = [
    PermissionCheck(service_account="pod-reader", verb="get", resource="pods", allowed=True),
    PermissionCheck(service_account="pod-reader", verb="list", resource="pods", allowed=True),
    PermissionCheck(service_account="pod-reader", verb="get", resource="configmaps", allowed=False),
    PermissionCheck(service_account="pod-reader", verb="get", resource="deployments", allowed=False),
    PermissionCheck(service_account="config-manager", verb="get", resource="configmaps", allowed=True),
    PermissionCheck(service_account="config-manager", verb="create", resource="configmaps", allowed=True),
    PermissionCheck(service_account="config-manager", verb="delete", resource="configmaps", allowed=True),
    PermissionCheck(service_account="config-manager", verb="get", resource="pods", allowed=False),
    PermissionCheck(service_account="config-manager", verb="get", resource="deployments", allowed=False),
    PermissionCheck(service_account="deployment-manager", verb="get", resource="deployments", allowed=True),
    PermissionCheck(service_account="deployment-manager", verb="create", resource="deployments", allowed=True),
    PermissionCheck(service_account="deployment-manager", verb="get", resource="pods", allowed=True),
    PermissionCheck(service_account="deployment-manager", verb="get", resource="configmaps", allowed=False),
    PermissionCheck(
        service_account="cross-namespace-reader", verb="get", resource="pods", allowed=True, all_namespaces=True
    ),
    PermissionCheck(
        service_account="cross-namespace-reader", verb="get", resource="services", allowed=True, all_namespaces=True
    ),
    PermissionCheck(
        service_account="cross-namespace-reader", verb="get", resource="deployments", allowed=False, all_namespaces=True
    ),
]

# Service account -> whether its pod gets an API token mounted
TOKEN_CHECKS = {"pod-reader": True, "config-manager": True, "no-api-access": False}


class ServiceAccountScenarioSettings(ScenarioSettings):
    pod_timeout: float = pd.Field(300, ge=0, description="How long to wait for the demo pods to run (in seconds).")
    pod_interval: float = pd.Field(5, gt=0, description="Polling interval while waiting for the demo pods.")
    token_path: str = pd.Field(
        "/var/run/secrets/kubernetes.io/serviceaccount/token",
        description="Where a mounted service account token is expected inside the pods.",
    )
    api_config_map: str = pd.Field(
        "test-config-from-pod", description="The ConfigMap created and deleted from inside a pod to test write access."
    )


class ServiceAccountScenario(BaseScenario[ServiceAccountScenarioSettings]):
    """
    Deploys ServiceAccounts bound to Roles and a ClusterRole, then checks what each of them is allowed
    to do: through `kubectl auth can-i`, through the token mounted in its pod and through API calls
    made from inside that pod.
    """

    display_name = "serviceaccount"

    actions = {
        "run": None,
        "deploy": ("Cleanup existing resources", "Deploy RBAC resources", "Wait for demo pods"),
        "test": ("Verify RBAC permissions", "Verify token mounting", "Verify API access from pods"),
        "logs": ("Pod logs",),
        "status": ("ServiceAccount status",),
        "cleanup": ("Cleanup existing resources",),
    }
    keeps_resources = ("deploy",)

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        documents = self.load_manifest("serviceaccount.yml")
        self.resources = [self.ref(doc["kind"].lower(), doc["metadata"]["name"]) for doc in documents]
        self.pods: dict[str, ResourceRef] = {
            doc["spec"]["serviceAccountName"]: self.ref("pod", doc["metadata"]["name"])
            for doc in documents
            if doc["kind"] == "Pod"
        }
        self.service_accounts = [doc["metadata"]["name"] for doc in documents if doc["kind"] == "ServiceAccount"]
        self.api_config_map = self.ref("configmap", self.settings.api_config_map)

    def steps(self) -> list[Step]:
        return [
            Step(name="Cleanup existing resources", phase="cleanup", run=self.cleanup_existing),
            Step(name="Deploy RBAC resources", phase="apply", run=self.deploy),
            Step(name="Wait for demo pods", phase="verify", strict=True, run=self.wait_for_pods),
            Step(name="Verify RBAC permissions", phase="verify", strict=False, run=self.verify_permissions),
            Step(name="Verify token mounting", phase="verify", strict=False, run=self.verify_tokens),
            Step(name="Verify API access from pods", phase="verify", strict=False, run=self.verify_api_access),
            Step(name="Pod logs", phase="report", run=self.pod_logs),
            Step(name="ServiceAccount status", phase="report", run=self.status),
        ]

    def subject(self, service_account: str) -> str:
        return f"system:serviceaccount:{self.kubectl.namespace}:{service_account}"

    def pod_command_checks(self) -> list[PodCommandCheck]:
        namespace = ["-n", self.kubectl.namespace]
        config_map = self.settings.api_config_map
        return [
            PodCommandCheck(service_account="pod-reader", command=["kubectl", "get", "pods", *namespace], allowed=True),
            PodCommandCheck(
                service_account="pod-reader", command=["kubectl", "get", "configmaps", *namespace], allowed=False
            ),
            PodCommandCheck(
                service_account="config-manager", command=["kubectl", "get", "configmaps", *namespace], allowed=True
            ),
            PodCommandCheck(
                service_account="config-manager",
                command=["kubectl", "create", "configmap", config_map, "--from-literal=test=value", *namespace],
                allowed=True,
            ),
            PodCommandCheck(
                service_account="config-manager",
                command=["kubectl", "delete", "configmap", config_map, "--ignore-not-found", *namespace],
                allowed=True,
            ),
            PodCommandCheck(
                service_account="config-manager", command=["kubectl", "get", "pods", *namespace], allowed=False
            ),
            PodCommandCheck(
                service_account="deployment-manager",
                command=["kubectl", "get", "deployments", *namespace],
                allowed=True,
            ),
        ]

    def _succeeds_in(self, pod: ResourceRef, command: list[str]) -> bool:
        """Whether a command exits cleanly inside the pod. A missing pod is an error, not a denial."""

        try:
            self.kubectl.exec(pod, command)
        except ResourceNotFound:
            raise
        except CommandFailed as e:
            self.debug(f"`{' '.join(command)}` failed in {pod}: exit code {e.exit_code}")
            return False
        return True

    def _report_checks(self, title: str, outcomes: list[tuple[Any, bool, bool]]) -> None:
        lines = []
        for check, expected, actual in outcomes:
            mark = "ok" if expected == actual else "MISMATCH"
            verdict = "allowed" if actual else "denied"
            lines.append(f"[{mark}] {check}: {verdict} (expected {'allowed' if expected else 'denied'})")
        self.section(title, "\n".join(lines))

        mismatches = [str(check) for check, expected, actual in outcomes if expected != actual]
        if mismatches:
            raise VerificationFailed(
                f"{len(mismatches)} of {len(outcomes)} checks did not match: {', '.join(mismatches)}"
            )
        self.success(f"All {len(outcomes)} checks matched")

    def _pods_running(self) -> bool:
        pods = self.kubectl.list_objects("pod", Pod, selector=DEMO_SELECTOR)
        running = {pod.metadata.name for pod in pods if pod.phase == "Running"}
        return all(ref.name in running for ref in self.pods.values())

    # Steps

    def cleanup_existing(self) -> None:
        self.remove(self.api_config_map)
        for ref in reversed(self.resources):
            self.remove(ref, force=ref.kind == "pod")

    def deploy(self) -> None:
        documents = self.load_manifest("serviceaccount.yml")
        for document in documents:
            for subject in document.get("subjects", []):
                subject["namespace"] = self.kubectl.namespace

        self.kubectl.apply_documents(documents)
        for ref in self.resources:
            self.track(ref)
            self.wait_exists(ref)
        self.success(f"Deployed {len(self.service_accounts)} ServiceAccounts with their roles and bindings")

    def wait_for_pods(self) -> None:
        self.poller.wait(
            "Demo pods to be running",
            self._pods_running,
            timeout=self.settings.pod_timeout,
            interval=self.settings.pod_interval,
        )
        self.show("Demo Pods", "pods", selector=DEMO_SELECTOR)

    def verify_permissions(self) -> None:
        outcomes = []
        for check in PERMISSION_CHECKS:
            allowed = self.kubectl.can_i(
                check.verb,
                check.resource,
                as_user=self.subject(check.service_account),
                all_namespaces=check.all_namespaces,
            )
            outcomes.append((check, check.allowed, allowed))
        self._report_checks("RBAC Permissions", outcomes)

    def verify_tokens(self) -> None:
        outcomes = []
        for service_account, expected in TOKEN_CHECKS.items():
            mounted = self._succeeds_in(self.pods[service_account], ["test", "-f", self.settings.token_path])
            outcomes.append((f"{service_account} token mounted", expected, mounted))
        self._report_checks("Token Mounting", outcomes)

    def verify_api_access(self) -> None:
        outcomes = []
        for check in self.pod_command_checks():
            allowed = self._succeeds_in(self.pods[check.service_account], check.command)
            outcomes.append((check, check.allowed, allowed))
        self._report_checks("API Access From Pods", outcomes)

    def pod_logs(self) -> None:
        for pod in self.pods.values():
            try:
                self.section(f"Logs of {pod.name}", self.kubectl.logs(pod))
            except ResourceNotFound:
                self.warning(f"{pod} not found")

    def status(self) -> None:
        self.show("ServiceAccounts", "serviceaccounts", selector=DEMO_SELECTOR)
        self.show("Roles", "roles", selector=DEMO_SELECTOR)
        self.show("RoleBindings", "rolebindings", selector=DEMO_SELECTOR)
        self.show("ClusterRoles", "clusterroles", selector=DEMO_SELECTOR)
        self.show("ClusterRoleBindings", "clusterrolebindings", selector=DEMO_SELECTOR)
        self.show("Pods", "pods", selector=DEMO_SELECTOR)
        self.show("ConfigMaps", "configmaps", selector=DEMO_SELECTOR)
        for service_account in self.service_accounts:
            self.section(f"Permissions of {service_account}", self.kubectl.permissions(self.subject(service_account)))
