"""
Audit trail of constant-folding attempts.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class FoldOutcome(Enum):
    """Result of one folding attempt."""
    FOLDED = "folded"
    DECLINED = "declined"  # output larger than the size threshold
    FAILED = "failed"      # the execution oracle could not evaluate the node


@dataclass(frozen=True)
class FoldedOp:
    """One folding attempt. ``error_msg`` is set exactly when the fold did not happen."""
    op_type: str
    op_name: str
    inputs: Tuple[str, ...]
    outputs: Tuple[str, ...]
    outcome: FoldOutcome
    error_msg: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'inputs', tuple(self.inputs))
        object.__setattr__(self, 'outputs', tuple(self.outputs))
        if (self.outcome is FoldOutcome.FOLDED) != (self.error_msg is None):
            raise ValueError("error_msg must be set exactly when the fold did not succeed")

    @property
    def success(self) -> bool:
        return self.outcome is FoldOutcome.FOLDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "op_type": self.op_type,
            "op_name": self.op_name,
            "inputs": list(self.inputs),
            "outputs": list(self.outputs),
            "outcome": self.outcome.value,
            "success": self.success,
            "error_msg": self.error_msg,
        }


class FoldingRecord:
    """
    Ordered, append-only log of folding attempts with running counts.

    A fresh record belongs to each simplification run and is handed back to
    the caller with the result. ``clear`` resets it for reuse.
    """

    def __init__(self):
        self._folded_ops: List[FoldedOp] = []
        self._total_attempted = 0
        self._total_succeeded = 0
        self._total_failed = 0

    def record_fold(self, op: FoldedOp) -> None:
        """Append an attempt and update the counts."""
        self._folded_ops.append(op)
        self._total_attempted += 1
        if op.success:
            self._total_succeeded += 1
        else:
            self._total_failed += 1

    def clear(self) -> None:
        self._folded_ops = []
        self._total_attempted = 0
        self._total_succeeded = 0
        self._total_failed = 0

    @property
    def total_attempted(self) -> int:
        return self._total_attempted

    @property
    def total_succeeded(self) -> int:
        return self._total_succeeded

    @property
    def total_failed(self) -> int:
        return self._total_failed

    @property
    def folded_ops(self) -> Tuple[FoldedOp, ...]:
        return tuple(self._folded_ops)

    @property
    def failures(self) -> Tuple[FoldedOp, ...]:
        return tuple(op for op in self._folded_ops if not op.success)

    def snapshot(self) -> 'FoldingRecord':
        """Independent copy; later appends to either record do not affect the other."""
        record = FoldingRecord()
        for op in self._folded_ops:
            record.record_fold(op)
        return record

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_attempted": self.total_attempted,
            "total_succeeded": self.total_succeeded,
            "total_failed": self.total_failed,
            "folded_ops": [op.to_dict() for op in self._folded_ops],
        }

    def __len__(self) -> int:
        return len(self._folded_ops)

    def __iter__(self):
        return iter(self._folded_ops)

    def __eq__(self, other) -> bool:
        if not isinstance(other, FoldingRecord):
            return NotImplemented
        return self._folded_ops == other._folded_ops

    def __repr__(self) -> str:
        return (f"FoldingRecord(attempted={self.total_attempted}, "
                f"succeeded={self.total_succeeded}, failed={self.total_failed})")
