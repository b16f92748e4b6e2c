"""エントリ解決 (順位付け・状態機械・差分適用)。"""

from .models import (
    GameDigest,
    IgdbGameDiff,
    NeedsApproval,
    ResolutionOutcome,
    ResolutionState,
    Resolved,
    ScoredCandidate,
    SearchHints,
    StoreEntry,
    Unknown,
)

__all__ = [
    "GameDigest",
    "IgdbGameDiff",
    "NeedsApproval",
    "ResolutionOutcome",
    "ResolutionState",
    "Resolved",
    "ScoredCandidate",
    "SearchHints",
    "StoreEntry",
    "Unknown",
]
