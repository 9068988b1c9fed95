"""Weighted combination of forensic probe results into one authenticity verdict."""
import logging
from typing import Any, Dict, Iterable, Optional

from .types import CompositeAuthenticityResult, Confidence, ForensicProbeResult, VerdictConfidence

logger = logging.getLogger(__name__)


class ScoreAggregator:
    """Renormalised weighted mean over the probes that produced a score.

    Errored probes (``score is None``) are left out of both the weighted sum
    and the confidence mean rather than counted as zero.
    """

    WEIGHTS = {
        'ela': 0.22,
        'compression': 0.18,
        'exif': 0.13,
        'noise': 0.18,
        'color': 0.10,
        'edge': 0.10,
        'frequency': 0.09,
    }

    CONFIDENCE_VALUES = {
        Confidence.HIGH: 1.0,
        Confidence.MEDIUM: 0.7,
        Confidence.LOW: 0.4,
        Confidence.ERROR: 0.0,
    }

    AUTHENTIC_THRESHOLD = 0.6

    def aggregate(
        self,
        probes: Iterable[ForensicProbeResult],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CompositeAuthenticityResult:
        probes = list(probes)
        weighted_sum = 0.0
        weight_total = 0.0
        confidence_sum = 0.0
        completed = 0

        for probe in probes:
            if probe.score is None:
                continue
            weight = self.WEIGHTS.get(probe.probe_name)
            if weight is None:
                logger.warning(f"Ignoring unknown probe {probe.probe_name!r}")
                continue
            weighted_sum += probe.score * weight
            weight_total += weight
            confidence_sum += self.CONFIDENCE_VALUES[probe.confidence]
            completed += 1

        score = weighted_sum / weight_total if weight_total > 0 else 0.5
        mean_confidence = confidence_sum / completed if completed else 0.5

        if mean_confidence >= 0.8 and score >= 0.75:
            level = VerdictConfidence.HIGH
        elif mean_confidence >= 0.6 and score >= 0.5:
            level = VerdictConfidence.MEDIUM
        else:
            level = VerdictConfidence.LOW

        logger.debug(
            f"Aggregated {completed}/{len(probes)} probes: score={score:.3f} "
            f"confidence={mean_confidence:.2f} level={level.value}"
        )

        return CompositeAuthenticityResult(
            score_autenticidad=score,
            es_autentico=score >= self.AUTHENTIC_THRESHOLD,
            nivel_confianza=level,
            per_probe=probes,
            confianza_promedio=mean_confidence,
            analisis_completados=completed,
            metadata=dict(metadata or {}),
        )
