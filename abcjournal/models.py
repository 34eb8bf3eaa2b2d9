# -*- coding: utf-8 -*-
"""Entry record, AI result types and the sync state machine.

Entries are plain dataclasses using snake_case attributes. Their dict form
(``to_dict`` / ``from_dict``) uses the camelCase keys shared with the
mobile client and the sync backend.

Legacy records carry ``analysis`` / ``counterBelief`` instead of
``aiResponse`` / ``disputeHistory``. ``from_dict`` upgrades them with
:func:`upgrade_legacy_fields`; the SQL migration uses the same helpers.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .clock import parse_iso

REQUIRED_TEXT_FIELDS = ("adversity", "belief")
OPTIONAL_TEXT_FIELDS = ("consequence", "dispute", "energy")
TEXT_FIELDS = REQUIRED_TEXT_FIELDS + OPTIONAL_TEXT_FIELDS

# Editing any of these makes an existing analysis stale.
ANALYZED_FIELDS = ("adversity", "belief", "consequence")

LEGACY_DIMENSIONS = ("permanence", "pervasiveness", "personalization")


# ---------------------------------------------------------------------
# AI results
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ThinkingPattern:
    """A named distortion found in the belief, with the exact quote."""

    label: str
    quote: str
    explanation: str

    def to_dict(self) -> Dict[str, str]:
        return {"label": self.label, "quote": self.quote, "explanation": self.explanation}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ThinkingPattern":
        return cls(
            label=str(data["label"]),
            quote=str(data["quote"]),
            explanation=str(data.get("explanation") or ""),
        )


@dataclass(frozen=True)
class AnalyzeBeliefResult:
    restated_belief: str
    thinking_patterns: Tuple[ThinkingPattern, ...] = ()
    educational_summary: str = ""
    created_at: Optional[str] = None
    is_stale: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "restatedBelief": self.restated_belief,
            "thinkingPatterns": [p.to_dict() for p in self.thinking_patterns],
            "educationalSummary": self.educational_summary,
            "createdAt": self.created_at,
            "isStale": self.is_stale,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AnalyzeBeliefResult":
        patterns = data.get("thinkingPatterns") or []
        if not isinstance(patterns, list):
            raise TypeError("thinkingPatterns must be a list")
        return cls(
            restated_belief=str(data["restatedBelief"]),
            thinking_patterns=tuple(ThinkingPattern.from_dict(p) for p in patterns),
            educational_summary=str(data.get("educationalSummary") or ""),
            created_at=data.get("createdAt"),
            is_stale=bool(data.get("isStale", False)),
        )


@dataclass(frozen=True)
class DisputeBeliefResult:
    acknowledgement: str
    disputes: Tuple[str, ...]
    alternative_belief: str
    encouragement: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "acknowledgement": self.acknowledgement,
            "disputes": list(self.disputes),
            "alternativeBelief": self.alternative_belief,
            "encouragement": self.encouragement,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DisputeBeliefResult":
        disputes = data.get("disputes") or []
        if not isinstance(disputes, list):
            raise TypeError("disputes must be a list")
        return cls(
            acknowledgement=str(data.get("acknowledgement") or ""),
            disputes=tuple(str(d) for d in disputes),
            alternative_belief=str(data.get("alternativeBelief") or ""),
            encouragement=str(data.get("encouragement") or ""),
        )


@dataclass(frozen=True)
class DisputeRecord:
    """One element of an entry's dispute history."""

    result: DisputeBeliefResult
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        data = self.result.to_dict()
        data["createdAt"] = self.created_at
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DisputeRecord":
        return cls(result=DisputeBeliefResult.from_dict(data), created_at=str(data["createdAt"]))


# ---------------------------------------------------------------------
# Sync state machine
# ---------------------------------------------------------------------

class SyncState(Enum):
    """Where an entry stands relative to the last remote sync.

    ``dirty_since`` and ``is_deleted`` are the persisted encoding of this
    state; the transition rules below are the only way they change.
    """

    CLEAN = "clean"
    DIRTY = "dirty"
    DELETED_DIRTY = "deleted_dirty"
    DELETED_SYNCED = "deleted_synced"

    @classmethod
    def of(cls, dirty_since: Optional[str], is_deleted: bool) -> "SyncState":
        if is_deleted:
            return cls.DELETED_SYNCED if dirty_since is None else cls.DELETED_DIRTY
        return cls.CLEAN if dirty_since is None else cls.DIRTY

    @property
    def is_dirty(self) -> bool:
        return self in (SyncState.DIRTY, SyncState.DELETED_DIRTY)

    @property
    def is_deleted(self) -> bool:
        return self in (SyncState.DELETED_DIRTY, SyncState.DELETED_SYNCED)

    def on_local_mutation(self) -> "SyncState":
        return SyncState.DELETED_DIRTY if self.is_deleted else SyncState.DIRTY

    def on_soft_delete(self) -> "SyncState":
        return SyncState.DELETED_DIRTY

    def on_remote_write(self, is_deleted: bool) -> "SyncState":
        return SyncState.DELETED_SYNCED if is_deleted else SyncState.CLEAN

    def on_acknowledge(self, dirty_since: Optional[str], synced_at: str) -> Tuple["SyncState", bool]:
        """Apply a sync acknowledgment made at *synced_at*.

        Returns ``(new_state, stale)``. The acknowledgment only lands when no
        local mutation happened after *synced_at*.
        """
        if not self.is_dirty:
            return self, False
        if dirty_since is not None and parse_iso(dirty_since) > parse_iso(synced_at):
            return self, True
        if self is SyncState.DELETED_DIRTY:
            return SyncState.DELETED_SYNCED, False
        return SyncState.CLEAN, False


# ---------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------

@dataclass
class Entry:
    id: str
    adversity: str
    belief: str
    created_at: str
    updated_at: str
    consequence: Optional[str] = None
    dispute: Optional[str] = None
    energy: Optional[str] = None
    ai_response: Optional[AnalyzeBeliefResult] = None
    ai_retry_count: int = 0
    dispute_history: List[DisputeRecord] = field(default_factory=list)
    dirty_since: Optional[str] = None
    is_deleted: bool = False
    account_id: Optional[str] = None

    @property
    def sync_state(self) -> SyncState:
        return SyncState.of(self.dirty_since, self.is_deleted)

    @property
    def needs_analysis(self) -> bool:
        """True when enrichment should (re)run for this entry."""
        if self.is_deleted:
            return False
        return self.ai_response is None or self.ai_response.is_stale

    def copy(self) -> "Entry":
        # Result objects are frozen; only the history list needs its own copy.
        return replace(self, dispute_history=list(self.dispute_history))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "adversity": self.adversity,
            "belief": self.belief,
            "consequence": self.consequence,
            "dispute": self.dispute,
            "energy": self.energy,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "aiResponse": self.ai_response.to_dict() if self.ai_response else None,
            "aiRetryCount": self.ai_retry_count,
            "disputeHistory": [d.to_dict() for d in self.dispute_history],
            "dirtySince": self.dirty_since,
            "isDeleted": self.is_deleted,
            "accountId": self.account_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Entry":
        """Build an Entry from its camelCase dict form, upgrading legacy shapes."""
        data = upgrade_legacy_fields(data)
        ai_response = data.get("aiResponse")
        retry = data.get("aiRetryCount")
        return cls(
            id=str(data["id"]),
            adversity=str(data["adversity"]),
            belief=str(data["belief"]),
            consequence=data.get("consequence"),
            dispute=data.get("dispute"),
            energy=data.get("energy"),
            created_at=str(data["createdAt"]),
            updated_at=str(data["updatedAt"]),
            ai_response=AnalyzeBeliefResult.from_dict(ai_response) if ai_response else None,
            ai_retry_count=retry if isinstance(retry, int) and retry >= 0 else 0,
            dispute_history=[DisputeRecord.from_dict(d) for d in data.get("disputeHistory") or []],
            dirty_since=data.get("dirtySince"),
            is_deleted=bool(data.get("isDeleted", False)),
            account_id=data.get("accountId"),
        )


# ---------------------------------------------------------------------
# Legacy shape
# ---------------------------------------------------------------------

def analysis_to_response(analysis: Mapping[str, Any], belief: str) -> AnalyzeBeliefResult:
    """Convert a legacy explanatory-style ``analysis`` blob to an AnalyzeBeliefResult."""
    dimensions = analysis.get("dimensions") or {}
    patterns = []
    for name in LEGACY_DIMENSIONS:
        dim = dimensions.get(name) or {}
        phrase = dim.get("detectedPhrase")
        if not phrase:
            continue
        score = dim.get("score") or "unscored"
        patterns.append(
            ThinkingPattern(label=f"{name}: {score}", quote=str(phrase), explanation=str(dim.get("insight") or ""))
        )
    return AnalyzeBeliefResult(
        restated_belief=belief,
        thinking_patterns=tuple(patterns),
        educational_summary=str(analysis.get("emotionalLogic") or ""),
    )


def counter_belief_to_record(counter_belief: str, created_at: str) -> DisputeRecord:
    """Convert a legacy ``counterBelief`` string to a single dispute record."""
    result = DisputeBeliefResult(
        acknowledgement="",
        disputes=(),
        alternative_belief=counter_belief,
        encouragement="",
    )
    return DisputeRecord(result=result, created_at=created_at)


def upgrade_legacy_fields(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of *data* in the canonical shape.

    Legacy values only fill canonical fields that are still empty, and the
    legacy keys are dropped from the result.
    """
    out = dict(data)
    analysis = out.pop("analysis", None)
    counter_belief = out.pop("counterBelief", None)
    if analysis and not out.get("aiResponse"):
        out["aiResponse"] = analysis_to_response(analysis, str(out.get("belief", ""))).to_dict()
    if counter_belief and not out.get("disputeHistory"):
        stamp = str(out.get("updatedAt") or out.get("createdAt"))
        out["disputeHistory"] = [counter_belief_to_record(counter_belief, stamp).to_dict()]
    return out
