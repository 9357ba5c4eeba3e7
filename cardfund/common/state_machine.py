"""Status transitions for queue jobs and deposit transactions."""

JOB_TRANSITIONS: dict[str, set[str]] = {
    # PENDING -> COMPLETED when the work finished outside the queue.
    "PENDING": {"PROCESSING", "COMPLETED", "FAILED"},
    # PROCESSING -> PROCESSING is a reclaim after the visibility timeout.
    "PROCESSING": {"PROCESSING", "PENDING", "COMPLETED", "FAILED"},
    "COMPLETED": set(),
    # Operator retry of a failed job.
    "FAILED": {"PENDING"},
}

TRANSACTION_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"SUCCESS", "FAILED"},
    "SUCCESS": set(),
    "FAILED": set(),
}


def validate_transition(current: str, new: str, table: dict[str, set[str]] = JOB_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the given state machine."""

    if new not in table.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
