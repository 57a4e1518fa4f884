from replytrack.services import (
    action_runner,
    correlation_service,
    inbound_dispatcher,
    outbound_service,
    replica_sync,
    task_store,
)


__all__ = [
    "action_runner",
    "correlation_service",
    "inbound_dispatcher",
    "outbound_service",
    "replica_sync",
    "task_store",
]
