"""Circuit breaker over core token mass before and after a session."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BreakerDecision:
    """Accept/reject verdict plus the raw figures for logging."""

    tripped: bool
    pre_mass: int
    post_mass: int
    threshold: float
    ratio: float | None

    def as_dict(self) -> dict:
        return {
            "tripped": self.tripped,
            "pre_mass": self.pre_mass,
            "post_mass": self.post_mass,
            "threshold": self.threshold,
            "ratio": self.ratio,
        }


def evaluate(pre_mass: int, post_mass: int, threshold: float) -> BreakerDecision:
    """Trip when ``post_mass / pre_mass`` exceeds *threshold*.

    With nothing to protect (``pre_mass == 0``) the breaker never trips and
    the ratio is reported as ``None``.
    """
    if pre_mass <= 0:
        return BreakerDecision(
            tripped=False,
            pre_mass=pre_mass,
            post_mass=post_mass,
            threshold=threshold,
            ratio=None,
        )
    ratio = post_mass / pre_mass
    return BreakerDecision(
        tripped=ratio > threshold,
        pre_mass=pre_mass,
        post_mass=post_mass,
        threshold=threshold,
        ratio=ratio,
    )
