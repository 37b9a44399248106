"""
Error Taxonomy — Position Reconstruction
========================================

Two families:

  • Soft exclusions — a position cannot be finalized. Raised inside a pass,
    caught by the same pass, recorded in an ExclusionReport and the position
    is dropped after the pass. Never surfaced to the caller.
      IncompletePosition   missing opening or closing log subset
      InvariantViolation   tick outside the valid domain / no Mint event
      NegativeFeeAnomaly   fee decomposition produced a negative value

  • Hard failures — surfaced to the caller.
      NoPriceData          price history starts after the queried time
      MissingRequiredField a pass read a field an earlier pass never set
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Set


class LedgerError(Exception):
    """Base class for all position-reconstruction errors."""


# ── Soft exclusions ─────────────────────────────────────────────────────


class ExclusionReason(LedgerError):
    """A position that must be dropped from the output set."""

    def __init__(self, token_id: int, detail: str = ""):
        self.token_id = token_id
        self.detail = detail
        msg = f"Position {token_id} excluded: {type(self).__name__}"
        super().__init__(f"{msg} ({detail})" if detail else msg)


class IncompletePosition(ExclusionReason):
    """No opening (or closing) transaction found for the position."""


class InvariantViolation(ExclusionReason):
    """Opening transaction ticks could not be converted to prices."""


class NegativeFeeAnomaly(ExclusionReason):
    """Fee decomposition went negative: upstream data irregularity."""


# ── Hard failures ───────────────────────────────────────────────────────


class NoPriceData(LedgerError, LookupError):
    """No price sample at or before the queried timestamp."""


class MissingRequiredField(LedgerError, AttributeError):
    """A position field was read before the pass that sets it ran."""

    def __init__(self, token_id: int, field_name: str):
        self.token_id = token_id
        self.field_name = field_name
        super().__init__(f"Position {token_id}: missing required field '{field_name}'")


# ── Exclusion bookkeeping ───────────────────────────────────────────────


@dataclass
class ExclusionReport:
    """
    Aggregated soft exclusions for one pipeline run.

    counts:   reason name → number of positions excluded for it
    excluded: reason name → token ids (kept for drill-down, not printed)
    """

    counts: Counter = field(default_factory=Counter)
    excluded: Dict[str, Set[int]] = field(default_factory=dict)

    def record(self, reason: ExclusionReason) -> None:
        name = type(reason).__name__
        self.counts[name] += 1
        self.excluded.setdefault(name, set()).add(reason.token_id)

    def count(self, reason_type: type) -> int:
        return self.counts[reason_type.__name__]

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def ids(self, reason_type: type) -> Set[int]:
        return set(self.excluded.get(reason_type.__name__, set()))

    def lines(self) -> list:
        """Human-readable summary lines, negative fees reported on their own."""
        out = []
        for name in ("IncompletePosition", "InvariantViolation"):
            if self.counts[name]:
                out.append(f"  ⚪ Excluded {self.counts[name]} positions: {name}")
        anomalies = self.counts["NegativeFeeAnomaly"]
        if anomalies:
            out.append(
                f"  ⚠️  Removed {anomalies} positions with negative fees "
                "(upstream data irregularity)"
            )
        return out
