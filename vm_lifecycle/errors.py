class LifecycleError(RuntimeError):
    """Base class for every failure surfaced by the orchestration layer."""


class MalformedSpec(LifecycleError, ValueError):
    def __init__(self, raw: str, detail: str):
        self.raw = raw
        self.detail = detail
        super().__init__(
            f"malformed product string {raw!r}: {detail}; expected CPU:RAM:[HDD(s)]"
        )


class OutOfRange(LifecycleError, ValueError):
    def __init__(self, *, field: str, value: int, minimum: int, maximum: int):
        self.field = field
        self.value = value
        self.minimum = minimum
        self.maximum = maximum
        super().__init__(
            f"{field}={value} out of range, must be between {minimum} and {maximum}"
        )


class UnsupportedDiskDelta(LifecycleError, ValueError):
    def __init__(self, current: tuple[int, ...], target: tuple[int, ...], detail: str):
        self.current = current
        self.target = target
        self.detail = detail
        super().__init__(
            f"unsupported disk change {list(current)} -> {list(target)}: {detail}"
        )


class RemoteCallFailed(LifecycleError):
    def __init__(
        self,
        *,
        command: str,
        resource: str,
        detail: str,
        result_code: str | None = None,
        status_code: int | None = None,
    ):
        self.command = command
        self.resource = resource
        self.detail = detail
        self.result_code = result_code
        self.status_code = status_code
        super().__init__(
            f"remote command {command} on {resource} failed"
            f" (result_code={result_code}): {detail}"
        )


class ResourceVanished(LifecycleError):
    def __init__(self, *, instance_id: str, phase: str, detail: str = ""):
        self.instance_id = instance_id
        self.phase = phase
        self.detail = detail
        message = f"instance {instance_id} vanished during {phase}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class FatalTerminationReason(LifecycleError):
    def __init__(self, *, instance_id: str, code: str, result_code: str | None, detail: str):
        self.instance_id = instance_id
        self.code = code
        self.result_code = result_code
        self.detail = detail
        super().__init__(
            f"termination of {instance_id} aborted ({code}, result_code={result_code}): {detail}"
        )


class ConvergenceTimeout(LifecycleError):
    def __init__(
        self,
        *,
        description: str,
        timeout_sec: float,
        attempts: int,
        last_observation: object | None = None,
        last_error: BaseException | None = None,
    ):
        self.description = description
        self.timeout_sec = timeout_sec
        self.attempts = attempts
        self.last_observation = last_observation
        self.last_error = last_error
        message = f"timed out after {timeout_sec:g}s ({attempts} polls) waiting for {description}"
        if last_error is not None:
            message = f"{message}; last error: {last_error}"
        super().__init__(message)


class ImageNotFound(LifecycleError):
    def __init__(self, image_id: str):
        self.image_id = image_id
        super().__init__(f"no such image to launch from: {image_id}")


class OperationCancelled(LifecycleError):
    def __init__(self, description: str):
        self.description = description
        super().__init__(f"cancelled while {description}")
