"""Parent-based sampling decisions for request spans.

Root spans are sampled with probability ``ratio``. Child spans copy the
sampled bit of the inbound context so only the trace's originator decides.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from .config import clamp_ratio
from .context_propagation import SAMPLED_FLAG, TraceContext

_TRACE_ID_BITS = 128
_SPAN_ID_BITS = 64


@dataclass(frozen=True, slots=True)
class SamplingOutcome:
    """Identity and sampling decision for a request span.

    Attributes:
        trace_id: 128-bit trace id, inherited from the parent when present.
        span_id: Freshly generated 64-bit id of the new span.
        sampled: Whether the span is recorded, exported and propagated.
        is_root: True when no inbound context was available.
        parent_span_id: Span id of the remote parent, if any.
        trace_state: Opaque vendor state carried from the parent.
    """

    trace_id: int
    span_id: int
    sampled: bool
    is_root: bool
    parent_span_id: int | None = None
    trace_state: str | None = None

    @property
    def trace_flags(self) -> int:
        return SAMPLED_FLAG if self.sampled else 0


# Shared outcome for the telemetry-off path; never propagated or exported.
UNSAMPLED_OUTCOME = SamplingOutcome(trace_id=0, span_id=0, sampled=False, is_root=True)


class SamplingDecisionEngine:
    """Decides whether a request span is sampled.

    Args:
        ratio: Root-span sampling probability, clamped into [0.0, 1.0].
        rng: Random source; pass a seeded ``random.Random`` for determinism.
        seed: Convenience seed used when ``rng`` is not given.
    """

    def __init__(self, ratio: float, rng: random.Random | None = None, seed: int | None = None) -> None:
        self._ratio = clamp_ratio(float(ratio))
        if rng is None:
            rng = random.Random(seed) if seed is not None else random.Random()
        self._rng = rng

    @property
    def ratio(self) -> float:
        return self._ratio

    def _new_trace_id(self) -> int:
        trace_id = 0
        while trace_id == 0:
            trace_id = self._rng.getrandbits(_TRACE_ID_BITS)
        return trace_id

    def _new_span_id(self) -> int:
        span_id = 0
        while span_id == 0:
            span_id = self._rng.getrandbits(_SPAN_ID_BITS)
        return span_id

    def decide(self, inbound: TraceContext | None) -> SamplingOutcome:
        if inbound is None:
            trace_id = self._new_trace_id()
            span_id = self._new_span_id()
            # random() is in [0, 1): ratio 0.0 never samples, 1.0 always does
            sampled = self._rng.random() < self._ratio
            return SamplingOutcome(trace_id=trace_id, span_id=span_id, sampled=sampled, is_root=True)

        return SamplingOutcome(
            trace_id=inbound.trace_id,
            span_id=self._new_span_id(),
            sampled=inbound.sampled,
            is_root=False,
            parent_span_id=inbound.span_id,
            trace_state=inbound.trace_state,
        )


def decide(
    inbound: TraceContext | None, ratio: float, rng: random.Random | None = None
) -> SamplingOutcome:
    """One-shot decision with a throwaway engine."""
    return SamplingDecisionEngine(ratio, rng=rng).decide(inbound)
