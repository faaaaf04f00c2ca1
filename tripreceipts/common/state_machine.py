"""State machines for the receipt page session and per-order email dispatch."""

PAGE_TRANSITIONS: dict[str, set[str]] = {
    "UNINITIALIZED": {"CSRF_READY", "TORN_DOWN"},
    "CSRF_READY": {"ACTION_ENABLED", "TORN_DOWN"},
    "ACTION_ENABLED": {"TORN_DOWN"},
    "TORN_DOWN": set(),
}

DISPATCH_TRANSITIONS: dict[str, set[str]] = {
    "IDLE": {"SENDING"},
    "SENDING": {"SENT", "FAILED"},
    "SENT": {"IDLE"},
    "FAILED": {"IDLE"},
}


def validate_transition(current: str, new: str, transitions: dict[str, set[str]] = PAGE_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in transitions.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def is_terminal(state: str, transitions: dict[str, set[str]] = PAGE_TRANSITIONS) -> bool:
    """True for states with no outgoing transitions."""

    return not transitions.get(state)
