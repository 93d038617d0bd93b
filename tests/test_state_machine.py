"""Unit tests for payment state-machine guardrails and provider code mapping."""

import pytest

from onetouch.common.errors import InvalidTransitionError
from onetouch.common.state_machine import (
    Flow,
    PaymentState,
    is_forward,
    map_provider_state,
    validate_transition,
)


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition(Flow.TOKEN, PaymentState.CREATED, PaymentState.INITIALIZED)


def test_invalid_transition():
    """Illegal transition must raise to protect orchestration correctness."""

    with pytest.raises(ValueError):
        validate_transition(Flow.TOKEN, PaymentState.CREATED, PaymentState.SENT)


def test_terminal_states_never_move():
    for flow in Flow:
        for target in PaymentState:
            with pytest.raises(InvalidTransitionError):
                validate_transition(flow, PaymentState.COMPLETE, target)
            with pytest.raises(InvalidTransitionError):
                validate_transition(flow, PaymentState.FAILED, target)


def test_flows_do_not_share_paths():
    with pytest.raises(InvalidTransitionError):
        validate_transition(Flow.NOREG, PaymentState.CREATED, PaymentState.INITIALIZED)
    with pytest.raises(InvalidTransitionError):
        validate_transition(Flow.TOKEN, PaymentState.CREATED, PaymentState.REDIRECT_ISSUED)


@pytest.mark.parametrize(
    "code,expected",
    [(2, PaymentState.PROCESSING), (3, PaymentState.PENDING), (4, PaymentState.COMPLETE), ("4", PaymentState.COMPLETE)],
)
def test_token_flow_codes(code, expected):
    assert map_provider_state(Flow.TOKEN, code) is expected


@pytest.mark.parametrize(
    "code,expected",
    [(2, PaymentState.PROCESSING), (3, PaymentState.COMPLETE), (4, PaymentState.FAILED)],
)
def test_noreg_flow_codes(code, expected):
    assert map_provider_state(Flow.NOREG, code) is expected


@pytest.mark.parametrize("code", [0, 1, 5, 99, "x", None])
def test_unknown_codes_fail(code):
    """Anything outside a flow's table is a failure, never a success."""

    assert map_provider_state(Flow.TOKEN, code) is PaymentState.FAILED
    assert map_provider_state(Flow.NOREG, code) is PaymentState.FAILED


def test_same_code_means_different_things_per_flow():
    assert map_provider_state(Flow.TOKEN, 4) is PaymentState.COMPLETE
    assert map_provider_state(Flow.NOREG, 4) is PaymentState.FAILED


def test_backward_moves_are_not_forward():
    assert not is_forward(Flow.TOKEN, PaymentState.PENDING, PaymentState.PROCESSING)
    assert not is_forward(Flow.TOKEN, PaymentState.PENDING, PaymentState.PENDING)
    assert is_forward(Flow.TOKEN, PaymentState.SENT, PaymentState.COMPLETE)
