from __future__ import annotations

import json
import logging
import subprocess
import tempfile
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional, Sequence

import yaml

from kwalk.core.exceptions import (
    CommandFailed,
    CommandTimeout,
    ExternalUnavailable,
    KwalkError,
    ResourceNotFound,
)
from kwalk.core.models.kube import AnyKubeObject
from kwalk.core.models.objects import ResourceRef, is_cluster_scoped
from kwalk.core.models.result import ExecResult
from kwalk.utils.configurable import Configurable

if TYPE_CHECKING:
    from kwalk.core.models.config import Config

logger = logging.getLogger("kwalk")

UNAVAILABLE_MARKERS = (
    "unable to connect to the server",
    "connection refused",
    "no such host",
    "i/o timeout",
    "the server has asked for the client to provide credentials",
    "was refused - did you specify the right host or port",
)
NOT_FOUND_MARKERS = (
    "notfound",
    "not found",
    "the server doesn't have a resource type",
)


def classify_failure(exit_code: int, stderr: str, args: Sequence[str]) -> KwalkError:
    """Turn a non-zero kubectl exit into the most specific error type."""

    lower = stderr.lower()
    if any(marker in lower for marker in UNAVAILABLE_MARKERS):
        return ExternalUnavailable(stderr.strip() or f"kubectl exited with code {exit_code}")
    if any(marker in lower for marker in NOT_FOUND_MARKERS):
        return ResourceNotFound(exit_code, stderr, args)
    return CommandFailed(exit_code, stderr, args)


class Kubectl(Configurable):
    """
    Runs kubectl as a subprocess and returns what it reported.

    Every non-zero exit is turned into a typed exception when `check` is set (the default).
    Callers that only want to know whether something is absent catch `ResourceNotFound`.
    """

    def __init__(self, config: Config) -> None:
        super().__init__(config)
        self._base = [config.kubectl]
        if config.kubeconfig is not None:
            self._base += ["--kubeconfig", config.kubeconfig]
        if config.context is not None:
            self._base += ["--context", config.context]

    @property
    def namespace(self) -> str:
        return self.config.namespace

    def _ns(self, namespace: Optional[str], kind: str = "") -> list[str]:
        if kind and is_cluster_scoped(kind):
            return []
        return ["-n", namespace or self.namespace]

    def ref(self, kind: str, name: str, namespace: Optional[str] = None) -> ResourceRef:
        return ResourceRef(kind=kind, name=name, namespace=namespace or self.namespace)

    # Low level

    def _execute(self, command: list[str], timeout: float, stdin: Optional[str]) -> ExecResult:
        start = time.monotonic()
        try:
            process = subprocess.run(command, input=stdin, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError as e:
            raise ExternalUnavailable(f"{command[0]} is not installed or not in PATH") from e
        except subprocess.TimeoutExpired as e:
            raise CommandTimeout(timeout, command) from e

        return ExecResult(
            args=command,
            exit_code=process.returncode,
            stdout=process.stdout or "",
            stderr=process.stderr or "",
            duration=time.monotonic() - start,
        )

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: Optional[float] = None,
        stdin: Optional[str] = None,
    ) -> ExecResult:
        command = [*self._base, *args]
        result = self._execute(command, timeout or self.config.command_timeout, stdin)
        logger.debug(f"`{result.command}` -> {result.exit_code} ({result.duration:.2f}s)")

        if check and not result.ok:
            raise classify_failure(result.exit_code, result.stderr, command)

        return result

    def probe(self, timeout: Optional[float] = None) -> None:
        """Short connectivity check. Raises ExternalUnavailable if the cluster cannot be reached."""

        try:
            self.run(["cluster-info"], timeout=timeout or self.config.connectivity_timeout)
        except CommandFailed as e:
            raise ExternalUnavailable(f"Cannot connect to Kubernetes cluster: {e}") from e

    # Reading

    def exists(self, ref: ResourceRef) -> bool:
        try:
            self.run(["get", *ref.args, "-o", "name"])
        except ResourceNotFound:
            return False
        return True

    def get(self, ref: ResourceRef) -> dict[str, Any]:
        result = self.run(["get", *ref.args, "-o", "json"])
        return json.loads(result.stdout)

    def get_object(self, ref: ResourceRef, model: type[AnyKubeObject]) -> AnyKubeObject:
        return model.model_validate(self.get(ref))

    def list_items(
        self, kind: str, *, selector: Optional[str] = None, namespace: Optional[str] = None
    ) -> list[dict[str, Any]]:
        args = ["get", kind, *self._ns(namespace, kind), "-o", "json"]
        if selector:
            args += ["-l", selector]
        try:
            result = self.run(args)
        except ResourceNotFound:
            return []
        return json.loads(result.stdout).get("items", [])

    def list_objects(
        self,
        kind: str,
        model: type[AnyKubeObject],
        *,
        selector: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> list[AnyKubeObject]:
        return [model.model_validate(item) for item in self.list_items(kind, selector=selector, namespace=namespace)]

    def show(self, kind: str, *names: str, selector: Optional[str] = None, output: Optional[str] = "wide") -> str:
        """Human readable `kubectl get` output, used for the status sections."""

        args = ["get", kind, *names, *self._ns(None, kind)]
        if selector:
            args += ["-l", selector]
        if output:
            args += ["-o", output]
        return self.run(args).stdout

    def describe(self, ref: ResourceRef) -> str:
        return self.run(["describe", *ref.args]).stdout

    # Writing

    def apply_file(self, path: Path, *, namespace: Optional[str] = None) -> ExecResult:
        return self.run(["apply", "-f", str(path), *self._ns(namespace)])

    def apply_documents(self, documents: Iterable[dict[str, Any]], *, namespace: Optional[str] = None) -> ExecResult:
        manifest = yaml.safe_dump_all(list(documents), sort_keys=False)
        return self.run(["apply", "-f", "-", *self._ns(namespace)], stdin=manifest)

    def delete(self, ref: ResourceRef, *, force: bool = False, wait: bool = True) -> bool:
        """Delete an object. Absence is success: returns False when there was nothing to delete."""

        args = ["delete", *ref.args, "--ignore-not-found", f"--wait={str(wait).lower()}"]
        if force:
            args += ["--grace-period=0", "--force"]
        try:
            result = self.run(args)
        except ResourceNotFound:
            return False
        return bool(result.stdout.strip())

    def delete_selector(self, kind: str, selector: str, *, namespace: Optional[str] = None) -> bool:
        args = ["delete", kind, "-l", selector, *self._ns(namespace, kind), "--ignore-not-found"]
        try:
            result = self.run(args)
        except ResourceNotFound:
            return False
        return bool(result.stdout.strip())

    def create_from(self, kind: str, name: str, source: ResourceRef) -> ResourceRef:
        """Instantiate a derived object, e.g. `kubectl create job x --from=cronjob/y`."""

        self.run(["create", kind, name, f"--from={source.kind}/{source.name}", *source.namespace_args])
        return ResourceRef(kind=kind, name=name, namespace=source.namespace)

    def label(self, ref: ResourceRef, labels: dict[str, str]) -> ExecResult:
        pairs = [f"{key}={value}" for key, value in labels.items()]
        return self.run(["label", *ref.args, *pairs, "--overwrite"])

    def scale(self, ref: ResourceRef, replicas: int) -> ExecResult:
        return self.run(["scale", *ref.args, f"--replicas={replicas}"])

    def set_image(self, ref: ResourceRef, container: str, image: str) -> ExecResult:
        return self.run(["set", "image", f"{ref.kind}/{ref.name}", f"{container}={image}", *ref.namespace_args])

    def rollout(self, verb: str, ref: ResourceRef, *, timeout: Optional[float] = None) -> ExecResult:
        """`kubectl rollout status|history|undo`. `status` blocks for at most `timeout` seconds."""

        args = ["rollout", verb, f"{ref.kind}/{ref.name}", *ref.namespace_args]
        if timeout is None:
            return self.run(args)

        args.append(f"--timeout={timeout:g}s")
        return self.run(args, timeout=timeout + self.config.command_timeout)

    def exec(self, pod: ResourceRef, command: Sequence[str], *, container: Optional[str] = None) -> ExecResult:
        args = ["exec", pod.name, *pod.namespace_args]
        if container:
            args += ["-c", container]
        return self.run([*args, "--", *command])

    # Authorization

    def can_i(
        self, verb: str, resource: str, *, as_user: str, namespace: Optional[str] = None, all_namespaces: bool = False
    ) -> bool:
        """
        Asks the API server whether `as_user` may perform `verb` on `resource`.

        `kubectl auth can-i` prints yes or no and exits with 1 on a denial, so the answer is read
        from stdout. Any other failure is raised like for every other command.
        """

        args = ["auth", "can-i", verb, resource, f"--as={as_user}"]
        args += ["--all-namespaces"] if all_namespaces else self._ns(namespace)
        result = self.run(args, check=False)

        answer = result.stdout.strip().lower()
        if answer in ("yes", "no"):
            return answer == "yes"
        raise classify_failure(result.exit_code, result.stderr, result.args)

    def permissions(self, as_user: str, *, namespace: Optional[str] = None) -> str:
        return self.run(["auth", "can-i", "--list", f"--as={as_user}", *self._ns(namespace)]).stdout

    # Logs

    def logs(self, pod: ResourceRef) -> str:
        return self.run(["logs", pod.name, *pod.namespace_args]).stdout

    def stream_logs(self, pod: ResourceRef, on_line: Callable[[str], None]) -> None:
        """
        Follows `kubectl logs -f` until the stream closes.
        The subprocess is always terminated on the way out, including on KeyboardInterrupt.
        Stderr goes to a temporary file and is only read once the stream has ended.
        """

        command = [*self._base, "logs", "-f", pod.name, *pod.namespace_args]
        logger.debug(f"Streaming `{' '.join(command)}`")
        with tempfile.TemporaryFile(mode="w+") as errors:
            try:
                process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=errors, text=True)
            except FileNotFoundError as e:
                raise ExternalUnavailable(f"{command[0]} is not installed or not in PATH") from e

            with process:
                try:
                    assert process.stdout is not None
                    for line in process.stdout:
                        on_line(line.rstrip("\n"))
                    process.wait()
                finally:
                    if process.poll() is None:
                        process.terminate()
                        try:
                            process.wait(timeout=5)
                        except subprocess.TimeoutExpired:
                            process.kill()
                            process.wait()

            if process.returncode != 0:
                errors.seek(0)
                raise classify_failure(process.returncode, errors.read(), command)
