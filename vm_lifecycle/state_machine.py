from vm_lifecycle.models import OperationState


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    OperationState.PENDING.value: {
        OperationState.RUNNING.value,
        OperationState.CANCELLED.value,
        OperationState.FAILED.value,
    },
    OperationState.RUNNING.value: {
        OperationState.SUCCEEDED.value,
        OperationState.FAILED.value,
        OperationState.TIMED_OUT.value,
        OperationState.CANCELLED.value,
    },
    OperationState.SUCCEEDED.value: set(),
    OperationState.FAILED.value: set(),
    OperationState.TIMED_OUT.value: set(),
    OperationState.CANCELLED.value: set(),
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())
