from __future__ import annotations

from typing import Final


class InvalidTransitionError(ValueError):
    pass


IDLE: Final = "IDLE"
VALIDATING: Final = "VALIDATING"
OCR_IN_FLIGHT: Final = "OCR_IN_FLIGHT"
PARSING_IN_FLIGHT: Final = "PARSING_IN_FLIGHT"
VALIDATING_RESULT: Final = "VALIDATING_RESULT"
SUCCESS: Final = "SUCCESS"
FAILURE: Final = "FAILURE"

TERMINAL_STATES: Final[set[str]] = {SUCCESS, FAILURE}

ALLOWED_TRANSITIONS: Final[dict[str, set[str]]] = {
    IDLE: {VALIDATING, FAILURE},
    VALIDATING: {OCR_IN_FLIGHT, FAILURE},
    OCR_IN_FLIGHT: {PARSING_IN_FLIGHT, FAILURE},
    PARSING_IN_FLIGHT: {VALIDATING_RESULT, FAILURE},
    VALIDATING_RESULT: {SUCCESS, FAILURE},
    SUCCESS: set(),
    FAILURE: set(),
}


def can_transition(from_state: str, to_state: str) -> bool:
    from_norm = from_state.strip().upper()
    to_norm = to_state.strip().upper()
    return to_norm in ALLOWED_TRANSITIONS.get(from_norm, set())


def transition_state(from_state: str, to_state: str) -> str:
    from_norm = from_state.strip().upper()
    to_norm = to_state.strip().upper()

    if from_norm not in ALLOWED_TRANSITIONS:
        raise InvalidTransitionError(f"Unknown state: {from_state}")
    if to_norm not in ALLOWED_TRANSITIONS:
        raise InvalidTransitionError(f"Unknown state: {to_state}")
    if to_norm not in ALLOWED_TRANSITIONS[from_norm]:
        raise InvalidTransitionError(f"Invalid transition: {from_norm} -> {to_norm}")
    return to_norm
