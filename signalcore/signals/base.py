"""Collaborator protocol for the external pattern detector."""

from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from signalcore.signals.models import PatternFinding


@runtime_checkable
class PatternSource(Protocol):
    """Supplies pattern findings for a symbol/timeframe (possibly none)."""

    def find_patterns(self, symbol: str, timeframe: str) -> Sequence[PatternFinding]:
        ...
