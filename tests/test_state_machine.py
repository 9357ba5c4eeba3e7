"""Unit tests for job and deposit-transaction state guardrails."""

import pytest

from cardfund.common.state_machine import TRANSACTION_TRANSITIONS, validate_transition


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition("PENDING", "PROCESSING")
    validate_transition("PROCESSING", "PENDING")


def test_invalid_transition():
    """A completed job never moves again."""

    with pytest.raises(ValueError):
        validate_transition("COMPLETED", "PENDING")


def test_failed_job_can_only_be_requeued():
    validate_transition("FAILED", "PENDING")
    with pytest.raises(ValueError):
        validate_transition("FAILED", "COMPLETED")


@pytest.mark.parametrize("terminal", ["SUCCESS", "FAILED"])
def test_transaction_terminal_states_are_immutable(terminal):
    for target in ("PENDING", "SUCCESS", "FAILED"):
        with pytest.raises(ValueError):
            validate_transition(terminal, target, TRANSACTION_TRANSITIONS)
