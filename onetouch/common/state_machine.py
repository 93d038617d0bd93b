"""Payment state machine transitions enforced by the orchestrator.

The token flow and the no-registration flow share their terminal states but
not their paths, and the provider reports status with two different integer
encodings. Each flow therefore has its own transition table and its own
state-code table; they are never merged.
"""

from enum import Enum

from onetouch.common.errors import InvalidTransitionError


class Flow(str, Enum):
    TOKEN = "TOKEN"
    NOREG = "NOREG"


class PaymentState(str, Enum):
    CREATED = "CREATED"
    INITIALIZED = "INITIALIZED"
    DETAILS_CHECKED = "DETAILS_CHECKED"
    SENT = "SENT"
    REDIRECT_ISSUED = "REDIRECT_ISSUED"
    PROCESSING = "PROCESSING"
    PENDING = "PENDING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset({PaymentState.COMPLETE, PaymentState.FAILED})

_S = PaymentState
# Status polls may legitimately report progress for a payment whose local
# record stopped at INITIALIZED or DETAILS_CHECKED (crash or timeout).
_PROVIDER_PROGRESS = {_S.PROCESSING, _S.PENDING, _S.COMPLETE, _S.FAILED}

ALLOWED_TRANSITIONS: dict[Flow, dict[PaymentState, set[PaymentState]]] = {
    Flow.TOKEN: {
        _S.CREATED: {_S.INITIALIZED, _S.FAILED},
        _S.INITIALIZED: {_S.DETAILS_CHECKED} | _PROVIDER_PROGRESS,
        _S.DETAILS_CHECKED: {_S.SENT} | _PROVIDER_PROGRESS,
        _S.SENT: set(_PROVIDER_PROGRESS),
        _S.PROCESSING: {_S.PENDING, _S.COMPLETE, _S.FAILED},
        _S.PENDING: {_S.COMPLETE, _S.FAILED},
        _S.COMPLETE: set(),
        _S.FAILED: set(),
    },
    Flow.NOREG: {
        _S.CREATED: {_S.REDIRECT_ISSUED, _S.FAILED},
        _S.REDIRECT_ISSUED: set(_PROVIDER_PROGRESS),
        _S.PROCESSING: {_S.PENDING, _S.COMPLETE, _S.FAILED},
        _S.PENDING: {_S.COMPLETE, _S.FAILED},
        _S.COMPLETE: set(),
        _S.FAILED: set(),
    },
}

# payment/send/status (token flow).
TOKEN_FLOW_STATE_CODES: dict[int, PaymentState] = {
    2: _S.PROCESSING,
    3: _S.PENDING,
    4: _S.COMPLETE,
}

# api/payment/noreg/send/status. 3 means paid (card possibly saved), 4 means failed.
NOREG_FLOW_STATE_CODES: dict[int, PaymentState] = {
    2: _S.PROCESSING,
    3: _S.COMPLETE,
    4: _S.FAILED,
}

STATE_CODE_TABLES: dict[Flow, dict[int, PaymentState]] = {
    Flow.TOKEN: TOKEN_FLOW_STATE_CODES,
    Flow.NOREG: NOREG_FLOW_STATE_CODES,
}


def map_provider_state(flow: Flow, code) -> PaymentState:
    """Translate a provider state code using the flow's own table.

    Codes outside the table (including non-numeric ones) mean FAILED.
    """

    try:
        numeric = int(code)
    except (TypeError, ValueError):
        return PaymentState.FAILED
    return STATE_CODE_TABLES[Flow(flow)].get(numeric, PaymentState.FAILED)


def is_forward(flow: Flow, current: PaymentState, new: PaymentState) -> bool:
    """True when moving `current -> new` is an allowed, forward step."""

    return PaymentState(new) in ALLOWED_TRANSITIONS[Flow(flow)].get(PaymentState(current), set())


def validate_transition(flow: Flow, current: PaymentState, new: PaymentState) -> None:
    """Raise when a transition is not allowed by the flow's state machine."""

    if not is_forward(flow, current, new):
        raise InvalidTransitionError(
            f"Invalid transition for {Flow(flow).value} flow: {PaymentState(current).value} -> {PaymentState(new).value}"
        )
