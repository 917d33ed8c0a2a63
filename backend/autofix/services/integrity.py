import logging
from dataclasses import dataclass, field
from typing import Any, List

logger = logging.getLogger(__name__)


@dataclass
class GuardResult:
    records: List[Any] = field(default_factory=list)
    corrupted: bool = False
    reason: str = ""


def check_collection(name: str, value: Any) -> GuardResult:
    """Shape check for a collection just read back from storage.

    An earlier write path stored some collections as lists of bare id
    strings. Such a list, or any value that is not a list at all, is
    reported as corrupted with no records so the caller can overwrite the
    stored copy. Anything else passes through untouched; per-record
    validation is the caller's job.
    """
    if value is None:
        return GuardResult()
    if not isinstance(value, list):
        logger.warning("Discarding %s: stored value is %s, not a list", name, type(value).__name__)
        return GuardResult(corrupted=True, reason=f"expected list, got {type(value).__name__}")
    if not value:
        return GuardResult()
    if isinstance(value[0], str):
        logger.warning("Discarding %s: found %d bare string entries instead of records", name, len(value))
        return GuardResult(corrupted=True, reason="bare string entries")
    return GuardResult(records=value)
