"""Per-(order, trigger) notification attempt state machine."""

UNSENT = "UNSENT"
RESERVED = "RESERVED"
SENT = "SENT"
FAILED = "FAILED"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    UNSENT: {RESERVED},
    # RESERVED -> RESERVED is a stale reclaim; RESERVED -> UNSENT is a lease release.
    RESERVED: {SENT, FAILED, RESERVED, UNSENT},
    FAILED: {RESERVED},
    SENT: set(),
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
