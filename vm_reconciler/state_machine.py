from enum import Enum


class ScanState(str, Enum):
    AWAITING_BEGIN = "awaiting-begin"
    IN_COMMAND = "in-command"
    AWAITING_END = "awaiting-end"
    DONE = "done"


# state -> (marker that leaves the state, next state)
TRANSITIONS: dict[ScanState, tuple[str, ScanState]] = {
    ScanState.AWAITING_BEGIN: ("CMD-BEGIN", ScanState.IN_COMMAND),
    ScanState.IN_COMMAND: ("CMD-FINISH", ScanState.AWAITING_END),
    ScanState.AWAITING_END: ("CMD-END", ScanState.DONE),
}


def marker_line(marker: str, boundary: str) -> str:
    return f"{marker}-{boundary}"


# Lines before the begin marker are prompt and echo noise. Only lines
# between the finish and end markers are kept.
class OutputScanner:
    def __init__(self, boundary: str):
        self.boundary = boundary
        self.state = ScanState.AWAITING_BEGIN
        self._footer: list[str] = []

    @property
    def done(self) -> bool:
        return self.state == ScanState.DONE

    @property
    def footer(self) -> str:
        return "".join(self._footer)

    def feed(self, line: str) -> ScanState:
        if self.done:
            return self.state
        marker, next_state = TRANSITIONS[self.state]
        if line.rstrip("\r\n") == marker_line(marker, self.boundary):
            self.state = next_state
        elif self.state == ScanState.AWAITING_END:
            self._footer.append(line)
        return self.state
