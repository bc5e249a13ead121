"""Confidence-weighted success scoring for small samples, and the coarse
subscriber similarity used to find comparable past cases."""

from __future__ import annotations

import math

from abo.schemas.situation import SubscriberSnapshot

# 95% two-sided normal quantile
_Z = 1.96


def wilson_lower_bound(successes: int, total: int, z: float = _Z) -> float:
    """Lower bound of the Wilson score interval for a success proportion.

    One success out of one trial scores about 0.21, not 1.0; the bound
    approaches the raw rate only as the sample grows.
    """
    if total <= 0:
        return 0.0
    p = successes / total
    z2 = z * z
    centre = p + z2 / (2 * total)
    margin = z * math.sqrt(p * (1 - p) / total + z2 / (4 * total * total))
    return max(0.0, (centre - margin) / (1 + z2 / total))


def sample_weight(sample_size: int, k: float = 5.0) -> float:
    """How much to trust an observed rate over a prior: n / (n + k)."""
    if sample_size <= 0:
        return 0.0
    return sample_size / (sample_size + k)


# ── Situation similarity ─────────────────────────────────────────


def tenure_band(months: int) -> str:
    if months < 3:
        return "0-3"
    if months < 6:
        return "3-6"
    if months < 12:
        return "6-12"
    return "12+"


def mrr_band(cents: int) -> str:
    if cents < 1000:
        return "<10"
    if cents < 5000:
        return "10-50"
    if cents < 20000:
        return "50-200"
    return "200+"


def situation_similarity(a: SubscriberSnapshot, b: SubscriberSnapshot) -> float:
    """How alike two subscribers are, from 0.0 to 1.0.

    Same plan counts 0.4, same revenue band and same tenure band 0.3 each.
    Missing plans never match.
    """
    score = 0.0
    if a.plan and b.plan and a.plan.casefold() == b.plan.casefold():
        score += 0.4
    if mrr_band(a.mrr) == mrr_band(b.mrr):
        score += 0.3
    if tenure_band(a.tenure_months) == tenure_band(b.tenure_months):
        score += 0.3
    return round(score, 4)
