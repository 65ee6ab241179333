import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest
import yaml

from kwalk.core.exceptions import CommandFailed, CommandTimeout, ResourceNotFound
from kwalk.core.integrations.kubectl import Kubectl
from kwalk.core.log_follower import LogFollower
from kwalk.core.models.config import Config
from kwalk.core.models.objects import ResourceRef
from kwalk.core.models.result import ExecResult
from kwalk.core.poller import ConditionPoller

KIND_ALIASES = {
    "pv": "persistentvolume",
    "persistentvolumes": "persistentvolume",
    "pvc": "persistentvolumeclaim",
    "persistentvolumeclaims": "persistentvolumeclaim",
    "pods": "pod",
    "po": "pod",
    "jobs": "job",
    "cronjobs": "cronjob",
    "cj": "cronjob",
    "deployments": "deployment",
    "deploy": "deployment",
    "replicasets": "replicaset",
    "rs": "replicaset",
    "secrets": "secret",
    "storageclasses": "storageclass",
    "sc": "storageclass",
    "serviceaccounts": "serviceaccount",
    "sa": "serviceaccount",
    "roles": "role",
    "rolebindings": "rolebinding",
    "clusterroles": "clusterrole",
    "clusterrolebindings": "clusterrolebinding",
    "configmaps": "configmap",
    "cm": "configmap",
}

VALUE_FLAGS = {"-n", "-o", "-l", "-f", "-c"}

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class AuthDenied(Exception):
    """`kubectl auth can-i` answered no."""


def canonical(kind: str) -> str:
    kind = kind.lower()
    return KIND_ALIASES.get(kind, kind)


def parse_args(args: list[str]) -> tuple[list[str], dict[str, str], list[str]]:
    positionals: list[str] = []
    flags: dict[str, str] = {}
    rest: list[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--":
            rest = args[i + 1 :]
            break
        if arg in VALUE_FLAGS:
            flags[arg] = args[i + 1]
            i += 2
            continue
        if arg.startswith("--"):
            key, _, value = arg.partition("=")
            flags[key] = value
        else:
            positionals.append(arg)
        i += 1
    return positionals, flags, rest


def matches(obj: dict[str, Any], selector: Optional[str]) -> bool:
    if not selector:
        return True
    labels = obj["metadata"].get("labels") or {}
    for term in selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeClock:
    """A monotonic clock that only moves when something sleeps on it."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeKubectl(Kubectl):
    """
    Kubectl backed by an in-memory cluster.
    Controllers are called before every command, so the cluster state moves on as the run polls it.
    """

    def __init__(self, config: Config) -> None:
        super().__init__(config)
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[list[str]] = []
        self.controllers: list[Callable[["FakeKubectl"], None]] = []
        self.pod_logs: dict[str, list[str]] = {}
        self.stream_failure: Optional[CommandFailed] = None
        self.streamed: list[str] = []
        self.unavailable = False
        self.blocking_deletes = False
        self.failures: dict[str, str] = {}
        self.exec_handler: Callable[[str, list[str]], str] = lambda pod, command: ""
        self.auth_handler: Callable[[str, str, str, bool], bool] = lambda user, verb, resource, all_namespaces: False
        self._created = 0

    # Cluster state helpers

    def add(self, document: dict[str, Any]) -> dict[str, Any]:
        document = json.loads(json.dumps(document))
        kind = canonical(document["kind"])
        metadata = document.setdefault("metadata", {})
        metadata.setdefault("labels", {})
        if "creationTimestamp" not in metadata:
            self._created += 1
            metadata["creationTimestamp"] = (EPOCH + timedelta(seconds=self._created)).isoformat()
        document.setdefault("status", {})
        self.objects[(kind, metadata["name"])] = document
        return document

    def obj(self, kind: str, name: str) -> Optional[dict[str, Any]]:
        return self.objects.get((canonical(kind), name))

    def of_kind(self, kind: str, selector: Optional[str] = None) -> list[dict[str, Any]]:
        kind = canonical(kind)
        return [obj for (k, _), obj in self.objects.items() if k == kind and matches(obj, selector)]

    def verbs(self) -> list[str]:
        return [call[0] for call in self.calls]

    # Command handling

    def _execute(self, command: list[str], timeout: float, stdin: Optional[str]) -> ExecResult:
        args = command[len(self._base) :]
        self.calls.append(args)
        if self.blocking_deletes and args[0] == "delete" and "--wait=true" in args:
            raise CommandTimeout(timeout, command)
        for controller in list(self.controllers):
            controller(self)

        try:
            stdout = self._handle(args, stdin)
        except AuthDenied:
            return ExecResult(args=command, exit_code=1, stdout="no\n")
        except ResourceNotFound as e:
            return ExecResult(args=command, exit_code=1, stderr=e.stderr)
        except CommandFailed as e:
            return ExecResult(args=command, exit_code=e.exit_code, stderr=e.stderr)
        return ExecResult(args=command, exit_code=0, stdout=stdout)

    def _not_found(self, kind: str, name: str) -> ResourceNotFound:
        return ResourceNotFound(1, f'Error from server (NotFound): {kind} "{name}" not found')

    def _handle(self, args: list[str], stdin: Optional[str]) -> str:
        positionals, flags, rest = parse_args(args)
        verb = positionals[0]

        if self.unavailable:
            raise CommandFailed(1, "Unable to connect to the server: dial tcp 127.0.0.1:6443: connection refused")
        if verb in self.failures:
            raise CommandFailed(1, self.failures[verb])

        handler = getattr(self, f"_do_{verb.replace('-', '_')}")
        return handler(positionals[1:], flags, rest, stdin)

    def _do_cluster_info(self, positionals, flags, rest, stdin) -> str:
        return "Kubernetes control plane is running at https://127.0.0.1:6443\n"

    def _render(self, objects: list[dict[str, Any]], output: Optional[str]) -> str:
        return "\n".join(
            f"{obj['metadata']['name']}   {obj['status'].get('phase', '')}".rstrip() for obj in objects
        )

    def _do_get(self, positionals, flags, rest, stdin) -> str:
        kind = positionals[0]
        output = flags.get("-o")
        if len(positionals) > 1:
            name = positionals[1]
            obj = self.obj(kind, name)
            if obj is None:
                raise self._not_found(kind, name)
            if output == "json":
                return json.dumps(obj)
            if output == "name":
                return f"{canonical(kind)}/{name}\n"
            return self._render([obj], output)

        objects = self.of_kind(kind, flags.get("-l"))
        if output == "json":
            return json.dumps({"kind": "List", "items": objects})
        return self._render(objects, output)

    def _do_describe(self, positionals, flags, rest, stdin) -> str:
        obj = self.obj(positionals[0], positionals[1])
        if obj is None:
            raise self._not_found(positionals[0], positionals[1])
        return f"Name: {positionals[1]}\n"

    def _do_apply(self, positionals, flags, rest, stdin) -> str:
        source = flags["-f"]
        if source == "-":
            documents = list(yaml.safe_load_all(stdin or ""))
        else:
            with open(source) as f:
                documents = list(yaml.safe_load_all(f))

        lines = []
        for document in documents:
            if not document:
                continue
            existing = self.obj(document["kind"], document["metadata"]["name"])
            if existing is not None:
                existing["spec"] = document.get("spec", {})
                lines.append(f"{canonical(document['kind'])}/{document['metadata']['name']} configured")
            else:
                self.add(document)
                lines.append(f"{canonical(document['kind'])}/{document['metadata']['name']} created")
        return "\n".join(lines)

    def _do_delete(self, positionals, flags, rest, stdin) -> str:
        kind = canonical(positionals[0])
        if "-l" in flags:
            victims = [obj["metadata"]["name"] for obj in self.of_kind(kind, flags["-l"])]
        else:
            victims = [positionals[1]] if self.obj(kind, positionals[1]) is not None else []
            if not victims and "--ignore-not-found" not in flags:
                raise self._not_found(kind, positionals[1])

        for name in victims:
            del self.objects[(kind, name)]
        return "\n".join(f'{kind} "{name}" deleted' for name in victims)

    def _do_create(self, positionals, flags, rest, stdin) -> str:
        kind, name = canonical(positionals[0]), positionals[1]
        source_kind, _, source_name = flags["--from"].partition("/")
        source = self.obj(source_kind, source_name)
        if source is None:
            raise self._not_found(source_kind, source_name)

        self.add(
            {
                "kind": kind.title(),
                "metadata": {
                    "name": name,
                    "ownerReferences": [{"kind": source["kind"], "name": source_name}],
                },
                "spec": source.get("spec", {}).get("jobTemplate", {}).get("spec", {}),
            }
        )
        return f"{kind}.batch/{name} created"

    def _do_label(self, positionals, flags, rest, stdin) -> str:
        kind, name = positionals[0], positionals[1]
        obj = self.obj(kind, name)
        if obj is None:
            raise self._not_found(kind, name)
        for pair in positionals[2:]:
            key, _, value = pair.partition("=")
            obj["metadata"]["labels"][key] = value
        return f"{canonical(kind)}/{name} labeled"

    def _do_scale(self, positionals, flags, rest, stdin) -> str:
        obj = self.obj(positionals[0], positionals[1])
        if obj is None:
            raise self._not_found(positionals[0], positionals[1])
        obj["spec"]["replicas"] = int(flags["--replicas"])
        return f"{canonical(positionals[0])}/{positionals[1]} scaled"

    def _do_set(self, positionals, flags, rest, stdin) -> str:
        kind, _, name = positionals[1].partition("/")
        obj = self.obj(kind, name)
        if obj is None:
            raise self._not_found(kind, name)
        container_name, _, image = positionals[2].partition("=")
        for container in obj["spec"]["template"]["spec"]["containers"]:
            if container["name"] == container_name:
                container["image"] = image
        return f"{canonical(kind)}/{name} image updated"

    def _do_rollout(self, positionals, flags, rest, stdin) -> str:
        verb = positionals[0]
        kind, _, name = positionals[1].partition("/")
        if self.obj(kind, name) is None:
            raise self._not_found(kind, name)
        return {
            "status": f'deployment "{name}" successfully rolled out',
            "history": "REVISION  CHANGE-CAUSE\n1         <none>\n2         <none>",
            "undo": f"{canonical(kind)}.apps/{name} rolled back",
        }[verb]

    def _do_exec(self, positionals, flags, rest, stdin) -> str:
        pod = positionals[0]
        if self.obj("pod", pod) is None:
            raise self._not_found("pods", pod)
        return self.exec_handler(pod, rest)

    def _do_auth(self, positionals, flags, rest, stdin) -> str:
        if "--list" in flags:
            return "Resources   Non-Resource URLs   Resource Names   Verbs\npods        []                  []               [get list]\n"
        verb, resource = positionals[1], positionals[2]
        if not self.auth_handler(flags["--as"], verb, resource, "--all-namespaces" in flags):
            raise AuthDenied()
        return "yes\n"

    def _do_logs(self, positionals, flags, rest, stdin) -> str:
        pod = positionals[0]
        if self.obj("pod", pod) is None:
            raise self._not_found("pods", pod)
        return "".join(f"{line}\n" for line in self.pod_logs.get(pod, []))

    def stream_logs(self, pod: ResourceRef, on_line: Callable[[str], None]) -> None:
        self.calls.append(["logs", "-f", pod.name])
        if self.stream_failure is not None:
            raise self.stream_failure
        if self.obj("pod", pod.name) is None:
            raise self._not_found("pods", pod.name)
        for line in self.pod_logs.get(pod.name, []):
            self.streamed.append(line)
            on_line(line)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for variable in ("KWALK_NAMESPACE", "KWALK_CONTEXT", "KWALK_KUBECONFIG", "KWALK_FORMAT"):
        monkeypatch.delenv(variable, raising=False)


@pytest.fixture
def make_config() -> Callable[..., Config]:
    def factory(**kwargs: Any) -> Config:
        kwargs.setdefault("scenario", "cronjob")
        kwargs.setdefault("width", 200)
        return Config(**kwargs)

    return factory


@pytest.fixture
def config(make_config: Callable[..., Config]) -> Config:
    return make_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kubectl(config: Config) -> FakeKubectl:
    return FakeKubectl(config)


@pytest.fixture
def poller(config: Config, clock: FakeClock) -> ConditionPoller:
    return ConditionPoller(config, sleep=clock.sleep, clock=clock)


@pytest.fixture
def lines() -> list[str]:
    return []


@pytest.fixture
def follower(config: Config, kubectl: FakeKubectl, poller: ConditionPoller, clock: FakeClock, lines: list[str]):
    return LogFollower(config, kubectl, poller, sleep=clock.sleep, on_line=lines.append)


def ready_deployments(fake: FakeKubectl) -> None:
    """A deployment controller that makes every desired replica ready on the next command."""

    for deployment in fake.of_kind("deployment"):
        replicas = deployment["spec"].get("replicas", 1)
        deployment["status"] = {
            "replicas": replicas,
            "readyReplicas": replicas,
            "updatedReplicas": replicas,
            "availableReplicas": replicas,
        }


class DeploymentKubectl(FakeKubectl):
    def __init__(self, config: Config) -> None:
        super().__init__(config)
        self.controllers.append(ready_deployments)
