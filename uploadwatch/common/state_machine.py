"""Per-source polling states walked by the scheduler within one cycle."""

IDLE = "IDLE"
CHECKING = "CHECKING"
CATCHING_UP = "CATCHING_UP"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    IDLE: {CHECKING},
    CHECKING: {CATCHING_UP, IDLE},
    CATCHING_UP: {CATCHING_UP, IDLE},
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


class SourcePollState:
    """Tracks one source through a cycle; always ends in IDLE."""

    def __init__(self, source_id: str) -> None:
        self.source_id = source_id
        self.state = IDLE
        self.history: list[str] = [IDLE]

    def move(self, new: str) -> None:
        validate_transition(self.state, new)
        self.state = new
        self.history.append(new)
