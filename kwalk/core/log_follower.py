from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable, Optional

from tenacity import RetryError, Retrying, retry_if_exception_type, retry_if_result, stop_after_attempt, wait_fixed

from kwalk.core.exceptions import CommandFailed, DependentNotFound
from kwalk.core.integrations.kubectl import Kubectl
from kwalk.core.models.kube import Pod
from kwalk.core.models.objects import DependentResource, ResourceRef
from kwalk.core.poller import ConditionPoller
from kwalk.utils.configurable import Configurable

if TYPE_CHECKING:
    from kwalk.core.models.config import Config

logger = logging.getLogger("kwalk")


class LogFollower(Configurable):
    """
    Finds the pod a job spawned and streams its output.

    Pod creation is asynchronous, so resolution polls with a fixed attempt budget instead of waiting forever
    for a pod that may never appear (e.g. a selector that matches nothing).
    """

    def __init__(
        self,
        config: Config,
        kubectl: Kubectl,
        poller: ConditionPoller,
        *,
        sleep: Callable[[float], None] = time.sleep,
        on_line: Optional[Callable[[str], None]] = None,
    ) -> None:
        super().__init__(config)
        self.kubectl = kubectl
        self.poller = poller
        self._sleep = sleep
        self.on_line = on_line or self._print_line

    def _print_line(self, line: str) -> None:
        self.console.print(line, markup=False, highlight=False)

    def _lookup(self, dependent: DependentResource) -> Optional[str]:
        pods = self.kubectl.list_objects(
            dependent.kind, Pod, selector=dependent.selector, namespace=dependent.owner.namespace
        )
        if not pods:
            return None

        def created(pod: Pod) -> float:
            timestamp = pod.metadata.creation_timestamp
            return timestamp.timestamp() if timestamp else 0.0

        return max(pods, key=created).metadata.name

    def resolve(self, dependent: DependentResource, *, attempts: int, interval: float) -> ResourceRef:
        """Resolve the dependent resource name, or raise DependentNotFound once the attempt budget is spent."""

        started = time.monotonic()
        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(interval),
            retry=retry_if_result(lambda name: name is None) | retry_if_exception_type(CommandFailed),
            sleep=self._sleep,
        )
        try:
            name = retrying(self._lookup, dependent)
        except RetryError:
            self.error(f"Could not find {dependent}")
            raise DependentNotFound(dependent.selector, attempts, time.monotonic() - started) from None

        dependent.resolved_name = name
        self.success(f"Found {dependent.kind}: {name}")
        return dependent.ref

    def follow(
        self,
        owner: ResourceRef,
        selector: str,
        *,
        attempts: int = 12,
        interval: float = 5,
        ready_timeout: float = 60,
        ready_interval: float = 2,
    ) -> ResourceRef:
        """
        Streams the logs of the pod spawned by `owner` until the stream closes or the operator cancels.
        Falls back to a one-shot fetch when the pod finished before streaming could start.
        """

        self.info(f"Following logs for {owner}")
        dependent = DependentResource(owner=owner, selector=selector)
        pod = self.resolve(dependent, attempts=attempts, interval=interval)

        self.poller.wait(
            "Pod to be running or completed",
            lambda: self.kubectl.get_object(pod, Pod).running_or_completed,
            timeout=ready_timeout,
            interval=ready_interval,
        )

        self.section("Job Logs", f"Following logs for pod: {pod.name}\nPress Ctrl+C to stop following logs\n")
        try:
            self.kubectl.stream_logs(pod, self.on_line)
        except CommandFailed as e:
            logger.debug(f"Log stream for {pod} ended with an error: {e}")
            self.warning("Pod may have completed. Showing final logs:")
            for line in self.kubectl.logs(pod).splitlines():
                self.on_line(line)

        return pod
