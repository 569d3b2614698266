"""
Cumulative-text to delta conversion.

The agent reports its reply as growing snapshots ("He", "Hello", "Hello
there"). Clients want only what is new ("He", "llo", " there").
"""
from typing import Optional


class DeltaTracker:
    """
    Converts cumulative-text snapshots into minimal deltas.

    Concatenating every returned delta reproduces the last snapshot, provided
    each snapshot extends the one before. A snapshot shorter than what was
    already emitted yields no delta.
    """

    def __init__(self):
        self.last_emitted_length = 0
        self._text = ""
        self._finished = False

    @property
    def text(self) -> str:
        """Everything emitted so far."""
        return self._text

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, snapshot: str) -> Optional[str]:
        """Return the new suffix of `snapshot`, or None for a no-op snapshot."""
        if self._finished:
            raise RuntimeError("DeltaTracker already finished")
        if len(snapshot) <= self.last_emitted_length:
            return None
        delta = snapshot[self.last_emitted_length:]
        self.last_emitted_length = len(snapshot)
        self._text += delta
        return delta

    def finish(self) -> str:
        """Close the tracker. The final event always carries an empty delta."""
        if self._finished:
            raise RuntimeError("DeltaTracker already finished")
        self._finished = True
        return ""
