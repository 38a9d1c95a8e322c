from cliper.ingestion.distill import MemoryCandidate, distill_locally
from cliper.ingestion.validation import (
    ConsistencyChecker,
    ConsistencyResult,
    LocalConsistencyChecker,
    validate_memory,
)

__all__ = [
    "MemoryCandidate",
    "distill_locally",
    "ConsistencyChecker",
    "ConsistencyResult",
    "LocalConsistencyChecker",
    "validate_memory",
]
