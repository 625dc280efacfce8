import json
import uuid
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from vm_lifecycle.models import Event, Operation, OperationState, TERMINAL_OPERATION_STATES
from vm_lifecycle.state_machine import can_transition


def now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def write_event(
    session: Session,
    event_type: str,
    payload: dict,
    *,
    operation_id: str | None = None,
    instance_id: str | None = None,
) -> None:
    session.add(
        Event(
            timestamp=now_utc(),
            operation_id=operation_id,
            instance_id=instance_id,
            event_type=event_type,
            payload_json=json.dumps(payload, sort_keys=True, default=str),
        )
    )


def create_operation(session: Session, kind: str, instance_id: str) -> Operation:
    now = now_utc()
    operation = Operation(
        operation_id=uuid.uuid4().hex,
        kind=kind,
        instance_id=instance_id,
        state=OperationState.PENDING.value,
        created_at=now,
        updated_at=now,
    )
    session.add(operation)
    session.flush()
    write_event(
        session,
        "operation.created",
        {"kind": kind},
        operation_id=operation.operation_id,
        instance_id=instance_id,
    )
    return operation


def get_operation(session: Session, operation_id: str) -> Operation | None:
    return session.get(Operation, operation_id)


def list_operations(
    session: Session, instance_id: str | None = None, state: str | None = None
) -> list[Operation]:
    query = select(Operation)
    if instance_id:
        query = query.where(Operation.instance_id == instance_id)
    if state:
        query = query.where(Operation.state == state)
    return list(session.scalars(query.order_by(Operation.created_at.desc())))


def list_events(session: Session, operation_id: str) -> list[Event]:
    return list(
        session.scalars(
            select(Event).where(Event.operation_id == operation_id).order_by(Event.id.asc())
        )
    )


def transition_operation(
    session: Session, operation: Operation, target: str, last_error: str | None = None
) -> bool:
    if not can_transition(operation.state, target):
        return False
    previous = operation.state
    operation.state = target
    operation.updated_at = now_utc()
    if target in TERMINAL_OPERATION_STATES:
        operation.finished_at = operation.updated_at
    if last_error:
        operation.last_error = last_error
    write_event(
        session,
        f"operation.{target.lower()}",
        {"from": previous, "error": last_error},
        operation_id=operation.operation_id,
        instance_id=operation.instance_id,
    )
    return True
