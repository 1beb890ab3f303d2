"""Health gate evaluation between rollout stages."""

import builtins
from dataclasses import dataclass

from ..enums import GateVerdict
from ..models import HealthSnapshot, HealthThresholds


@dataclass(frozen=True)
class GateResult:
    """Result of one health gate evaluation."""

    verdict: GateVerdict
    reason: str | None = None
    violations: tuple[str, ...] = ()

    @property
    def passed(self) -> bool:
        return self.verdict == GateVerdict.PASS

    @classmethod
    def passing(cls) -> "GateResult":
        return cls(verdict=GateVerdict.PASS)

    @classmethod
    def failing(cls, violations: builtins.list[str]) -> "GateResult":
        return cls(
            verdict=GateVerdict.FAIL,
            reason="; ".join(violations),
            violations=tuple(violations),
        )


class HealthGate:
    """Pure comparison of a health snapshot against thresholds.

    Never fetches data; the coordinator obtains snapshots from the
    HealthEvaluator and hands them in.
    """

    def __init__(self, relative_floor: float = 0.1):
        # smallest baseline used as the denominator of a relative increase
        self.relative_floor = relative_floor

    def evaluate(
        self,
        snapshot: HealthSnapshot,
        thresholds: HealthThresholds,
        baseline: HealthSnapshot | None = None,
    ) -> GateResult:
        """Evaluate a snapshot; comparisons are written so NaN fails."""
        violations: builtins.list[str] = []

        if not snapshot.success_rate >= thresholds.success_rate_min:
            violations.append(
                f"success rate {snapshot.success_rate:.4f} below minimum "
                f"{thresholds.success_rate_min:.4f}"
            )

        for metric, maximum in sorted(thresholds.metric_maxima.items()):
            value = snapshot.metrics.get(metric)
            if value is None:
                violations.append(f"metric '{metric}' missing from snapshot")
            elif not value <= maximum:
                violations.append(f"metric '{metric}' {value} exceeds maximum {maximum}")

        if baseline is not None:
            violations.extend(
                self._relative_violations(snapshot, baseline, thresholds)
            )

        if violations:
            return GateResult.failing(violations)
        return GateResult.passing()

    def _relative_violations(
        self,
        snapshot: HealthSnapshot,
        baseline: HealthSnapshot,
        thresholds: HealthThresholds,
    ) -> builtins.list[str]:
        violations = []
        for metric, max_increase in sorted(thresholds.max_relative_increase.items()):
            current = snapshot.metrics.get(metric)
            reference = baseline.metrics.get(metric)
            if reference is None:
                continue
            if current is None:
                violations.append(f"metric '{metric}' missing from snapshot")
                continue

            increase = (current - reference) / max(abs(reference), self.relative_floor) * 100
            if not increase <= max_increase:
                violations.append(
                    f"metric '{metric}' increased {increase:.1f}% over baseline "
                    f"(limit {max_increase:.1f}%)"
                )
        return violations
