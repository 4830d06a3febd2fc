"""Introspector Tracing - one trace per session, synthesized (Tier 0) or ingested (Tier 1)."""

from .merger import MergeResult, OtlpMerger, flatten_attributes, normalize_span
from .spans import Provenance, Span, SpanKind, SpanStatus, session_trace_id
from .synthesizer import SpanSynthesizer
from .tiers import CollectionTier, TierDetector

__all__ = [
    "CollectionTier",
    "MergeResult",
    "OtlpMerger",
    "Provenance",
    "Span",
    "SpanKind",
    "SpanStatus",
    "SpanSynthesizer",
    "TierDetector",
    "flatten_attributes",
    "normalize_span",
    "session_trace_id",
]
