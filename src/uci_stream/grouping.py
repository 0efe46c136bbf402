from dataclasses import dataclass, field

from uci_stream.models import InfoEvent, info_payload


@dataclass
class GroupedResults:
    """Latest accepted update for every result line (MultiPV) of the current search."""

    fen: str | None = None
    lines: dict[int, InfoEvent] = field(default_factory=dict)

    def reset(self, fen: str | None) -> None:
        self.fen = fen
        self.lines = {}

    def accept(self, event: InfoEvent) -> dict:
        """Store the update under its result line and return the full snapshot."""
        self.lines[event.record.multi_pv] = event
        return self.snapshot()

    def snapshot(self) -> dict:
        return {
            "fen": self.fen,
            "lines": {mpv: info_payload(event) for mpv, event in sorted(self.lines.items())},
        }
