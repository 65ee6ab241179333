import shlex

import pytest

from kwalk.core.models.result import RunStatus, StepStatus
from kwalk.core.sequencer import LifecycleSequencer
from kwalk.scenarios.persistentvolume import PersistentVolumeScenario, PersistentVolumeScenarioSettings


def storage_controller(fake) -> None:
    """Binds every claim to the first volume and starts every pod."""

    volumes = fake.of_kind("pv")
    for claim in fake.of_kind("pvc"):
        if volumes and claim["status"].get("phase") != "Bound":
            claim["status"]["phase"] = "Bound"
            claim["spec"]["volumeName"] = volumes[0]["metadata"]["name"]
    for pod in fake.of_kind("pod"):
        pod["status"].setdefault("phase", "Running")


class Volume:
    """
    The files behind the claim. With `persistent=False` every pod sees its own empty directory.
    """

    def __init__(self, persistent: bool = True) -> None:
        self.persistent = persistent
        self.files: dict[tuple[str, str], str] = {}

    def _key(self, pod: str, path: str) -> tuple[str, str]:
        return ("" if self.persistent else pod, path)

    def __call__(self, pod: str, command: list[str]) -> str:
        if command[:2] == ["sh", "-c"]:
            words = shlex.split(command[2])
            path = words[-1]
            content = "Mon Jan  1 00:00:00 UTC 2024" if words[0] == "date" else " ".join(words[1:-2])
            self.files[self._key(pod, path)] = f"{content}\n"
            return ""
        if command[0] == "cat":
            return self.files.get(self._key(pod, command[1]), "")
        if command[0] == "ls":
            return "\n".join(path for (owner, path) in self.files if owner in ("", pod))
        raise AssertionError(f"unexpected command {command}")


@pytest.fixture
def volume(kubectl) -> Volume:
    kubectl.controllers.append(storage_controller)
    kubectl.exec_handler = Volume()
    return kubectl.exec_handler


def make_run(config, kubectl, poller, follower, **settings) -> tuple[PersistentVolumeScenario, LifecycleSequencer]:
    config.scenario = "persistentvolume"
    scenario = PersistentVolumeScenario(
        config, PersistentVolumeScenarioSettings(**settings), kubectl=kubectl, poller=poller, follower=follower
    )
    sequencer = LifecycleSequencer(
        config, steps=scenario.pipeline(), teardown=scenario.teardown, scenario=scenario.display_name
    )
    return scenario, sequencer


def test_data_survives_pod_recreation(config, kubectl, poller, follower, volume):
    scenario, sequencer = make_run(config, kubectl, poller, follower)

    report = sequencer.run()

    assert report.status == RunStatus.SUCCEEDED, report.failed_step
    assert all(step.status == StepStatus.SUCCEEDED for step in report.steps)
    assert volume.files[("", "/data/test-file.txt")] == f"{scenario.test_data}\n"
    assert ("", "/data/timestamp.txt") in volume.files

    exec_pods = [call[1] for call in kubectl.calls if call[0] == "exec"]
    assert exec_pods[-1] == "pv-test-pod-2"
    assert set(exec_pods[:-1]) == {"pv-test-pod"}

    assert kubectl.objects == {}
    assert [str(ref) for ref in report.resources] == [
        "pv hostpath-pv",
        "pvc default/dev-pvc",
        "secret default/mysql-secret",
        "pod default/pv-test-pod",
        "pod default/pv-test-pod-2",
    ]


def test_lost_data_is_a_warning(config, kubectl, poller, follower, volume):
    volume.persistent = False
    scenario, sequencer = make_run(config, kubectl, poller, follower)

    report = sequencer.run()

    verify = next(step for step in report.steps if step.name == "Verify data persistence")
    assert verify.status == StepStatus.WARNING
    assert "did not survive" in verify.detail
    assert report.steps[-1].status == StepStatus.SUCCEEDED
    assert report.status == RunStatus.SUCCEEDED


def test_unbound_claim_fails_the_run(config, kubectl, poller, follower, clock):
    scenario, sequencer = make_run(config, kubectl, poller, follower, bind_timeout=60, bind_interval=5)

    report = sequencer.run()

    assert report.failed_step.name == "Verify PVC binding"
    assert clock.now == 60
    assert kubectl.of_kind("pod") == []
    assert kubectl.objects == {}


def test_deploy_action_leaves_the_storage_in_place(config, kubectl, poller, follower, volume):
    config.action = "deploy"
    scenario, sequencer = make_run(config, kubectl, poller, follower)

    report = sequencer.run()

    assert [step.name for step in report.steps] == [
        "Cleanup existing resources",
        "Deploy storage resources",
        "Verify PVC binding",
    ]
    assert report.status == RunStatus.SUCCEEDED
    assert kubectl.obj("pv", "hostpath-pv") is not None
    assert kubectl.obj("pvc", "dev-pvc")["status"]["phase"] == "Bound"
    assert kubectl.obj("secret", "mysql-secret") is not None
    assert "delete" not in kubectl.verbs()


def test_info_action_only_reports(config, kubectl, poller, follower):
    config.action = "info"
    scenario, sequencer = make_run(config, kubectl, poller, follower)

    report = sequencer.run()

    assert [step.name for step in report.steps] == ["Show cluster storage", "Storage report"]
    assert set(kubectl.verbs()) == {"get"}
    custom = [call for call in kubectl.calls if any(arg.startswith("custom-columns=") for arg in call)]
    assert [call[1] for call in custom] == ["pv", "pvc"]


def test_renamed_resources(config, kubectl, poller, follower, volume):
    scenario, sequencer = make_run(
        config, kubectl, poller, follower, pv_name="scratch-pv", pvc_name="scratch", test_pod_name="checker"
    )
    config.keep_resources = True

    report = sequencer.run()

    assert report.status == RunStatus.SUCCEEDED
    assert kubectl.obj("pvc", "scratch")["spec"]["volumeName"] == "scratch-pv"
    assert kubectl.obj("pod", "checker-2") is not None
    assert kubectl.obj("pod", "checker") is None


def test_recreation_does_not_block_on_pod_termination(config, kubectl, poller, follower, volume):
    kubectl.blocking_deletes = True
    scenario, sequencer = make_run(config, kubectl, poller, follower)

    report = sequencer.run()

    verify = next(step for step in report.steps if step.name == "Verify data persistence")
    assert verify.status == StepStatus.SUCCEEDED, verify.detail
    assert kubectl.obj("pod", "pv-test-pod") is None
    assert ["exec", "pv-test-pod-2", "-n", "default", "--", "cat", "/data/test-file.txt"] in kubectl.calls

    deletes = [call for call in kubectl.calls if call[0] == "delete" and call[1:3] == ["pod", "pv-test-pod"]]
    assert any("--force" in call for call in deletes)
    assert not any("--wait=true" in call for call in kubectl.calls)
