from __future__ import annotations

from typing import Optional, Sequence


class KwalkError(Exception):
    """
    Base class for every error raised by the orchestration core.
    """

    pass


class ExternalUnavailable(KwalkError):
    """
    The control plane (or the kubectl binary itself) cannot be reached.
    Fatal to the whole run.
    """

    pass


class CommandFailed(KwalkError):
    """
    A kubectl invocation exited with a non-zero code.
    """

    def __init__(self, exit_code: int, stderr: str, args: Optional[Sequence[str]] = None) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        self.command = list(args) if args is not None else []
        super().__init__(self._describe())

    def _describe(self) -> str:
        command = " ".join(self.command) if self.command else "kubectl"
        reason = self.stderr.strip() or "no error output"
        return f"`{command}` exited with code {self.exit_code}: {reason}"


class CommandTimeout(CommandFailed):
    """
    A kubectl invocation did not finish within its timeout.
    """

    def __init__(self, timeout: float, args: Optional[Sequence[str]] = None) -> None:
        self.timeout = timeout
        super().__init__(-1, f"timed out after {timeout:g}s", args)


class ResourceNotFound(CommandFailed):
    """
    The requested object (or its resource type) does not exist.
    Expected in cleanup and existence checks, never surfaced to the operator there.
    """

    pass


class ConditionTimeout(KwalkError):
    """
    A condition wait ran out of time before its predicate became true.
    """

    def __init__(self, description: str, attempts: int, elapsed: float) -> None:
        self.description = description
        self.attempts = attempts
        self.elapsed = elapsed
        super().__init__(f"{description}: condition not met after {attempts} attempts ({elapsed:.1f}s)")


class DependentNotFound(ConditionTimeout):
    """
    A dependent resource (e.g. the pod spawned by a job) never appeared.
    """

    def __init__(self, selector: str, attempts: int, elapsed: float) -> None:
        self.selector = selector
        super().__init__(f"dependent resource {selector}", attempts, elapsed)

    def __str__(self) -> str:
        return f"could not find dependent resource matching '{self.selector}' after {self.attempts} attempts"


class VerificationFailed(KwalkError):
    """
    A resource was read back but does not satisfy the expected invariant.
    """

    pass


class Interrupted(KeyboardInterrupt):
    """
    Raised from the SIGTERM handler so that termination follows the same teardown path as Ctrl+C.
    """

    pass
