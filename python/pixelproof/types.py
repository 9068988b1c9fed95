"""Type definitions for pixelproof."""
from __future__ import annotations
import math
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Any, Optional, Union

import numpy as np

FEATURE_VECTOR_LENGTH = 10

ImageSource = Union[str, os.PathLike, bytes, bytearray]


class Confidence(Enum):
    """Confidence attached to an analyzer or probe judgement."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    ERROR = "error"


class VerdictConfidence(Enum):
    """Overall confidence label of the composite authenticity verdict."""
    HIGH = "alta"
    MEDIUM = "media"
    LOW = "baja"


class ImageDecodeError(Exception):
    """Raised when an image source is missing or cannot be decoded."""


class AnalysisCancelled(Exception):
    """Raised inside an analyzer when its deadline passed or it was cancelled."""


class CancellationToken:
    """Cooperative cancellation shared between a caller and one analyzer run.

    Analyzers call :meth:`check` between samples and blocks so that a caller
    abandoning the request is honoured mid-computation.  A token created
    with ``started=False`` does not count down until :meth:`start`, so time
    spent queued for a worker is not charged to the analysis.
    """

    def __init__(self, timeout_s: Optional[float] = None, started: bool = True,
                 parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._timeout_s = timeout_s
        self._deadline = None
        self._parent = parent
        self._started = False
        if started:
            self.start()

    def start(self) -> None:
        """Arm the deadline; later calls are no-ops."""
        if self._started:
            return
        if self._timeout_s is not None:
            self._deadline = time.monotonic() + self._timeout_s
        self._started = True

    @property
    def started(self) -> bool:
        return self._started

    def child(self, timeout_s: Optional[float] = None, started: bool = True) -> "CancellationToken":
        """Token that is cancelled with this one and may carry a shorter deadline."""
        return CancellationToken(timeout_s, started=started, parent=self)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._parent is not None and self._parent.cancelled:
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the nearest deadline, or None when unbounded."""
        own = None if self._deadline is None else max(0.0, self._deadline - time.monotonic())
        inherited = None if self._parent is None else self._parent.remaining()
        if own is None:
            return inherited
        if inherited is None:
            return own
        return min(own, inherited)

    def check(self) -> None:
        if self.cancelled:
            raise AnalysisCancelled("analysis cancelled or deadline exceeded")


@dataclass
class PixelBuffer:
    """Decoded 8-bit pixels, shape (height, width, channels)."""
    width: int
    height: int
    channels: int
    samples: np.ndarray


@dataclass
class ImageMetadata:
    """Best-effort metadata reported by the decoder."""
    format: Optional[str] = None
    density: Optional[float] = None
    size_bytes: int = 0
    mode: Optional[str] = None
    has_exif: bool = False


@dataclass
class DecodedImage:
    """One request's decoded image: pixels, metadata and the original bytes."""
    pixels: PixelBuffer
    metadata: ImageMetadata
    raw: bytes
    source_name: Optional[str] = None


@dataclass
class AnalysisConfig:
    """Options for an analysis run."""
    seed: Optional[int] = None
    max_workers: int = 4
    analyzer_timeout_ms: int = 3000
    forensic_timeout_ms: int = 5000
    encoder_timeout_ms: int = 2000
    max_image_bytes: int = 15 * 1024 * 1024
    analyzer_mode: str = "real"
    enabled_analyzers: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.analyzer_mode not in ("real", "stub"):
            raise ValueError(f"analyzer_mode must be 'real' or 'stub', got {self.analyzer_mode!r}")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        for name in ("analyzer_timeout_ms", "forensic_timeout_ms", "encoder_timeout_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    @classmethod
    def from_env(cls, prefix: str = "PIXELPROOF_", environ: Optional[Dict[str, str]] = None) -> "AnalysisConfig":
        """Build a config from environment variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        kwargs: Dict[str, Any] = {}
        int_fields = (
            "seed", "max_workers", "analyzer_timeout_ms", "forensic_timeout_ms",
            "encoder_timeout_ms", "max_image_bytes",
        )
        for name in int_fields:
            raw = env.get(prefix + name.upper())
            if raw is None or raw == "":
                continue
            try:
                kwargs[name] = int(raw)
            except ValueError:
                raise ValueError(f"{prefix}{name.upper()} must be an integer, got {raw!r}")
        mode = env.get(prefix + "ANALYZER_MODE")
        if mode:
            kwargs["analyzer_mode"] = mode.strip().lower()
        enabled = env.get(prefix + "ENABLED_ANALYZERS")
        if enabled:
            kwargs["enabled_analyzers"] = [n.strip() for n in enabled.split(",") if n.strip()]
        return cls(**kwargs)


@dataclass(frozen=True)
class AnalysisRequest:
    """A single image submitted for analysis."""
    source: ImageSource
    correlation_id: str = "N/A"
    image_id: str = "N/A"
    config: AnalysisConfig = field(default_factory=AnalysisConfig)


@dataclass
class AnalyzerResult:
    """Result record produced by every analyzer.

    ``score`` is on a 0-10 scale (high = likely human-captured) or ``None``
    when the analyzer could not reach a judgement.
    """
    name: str
    version: str
    score: Optional[float]
    confidence: Confidence
    details: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    feature_vector: Optional[List[float]] = None
    duration_ms: float = 0.0

    def __post_init__(self):
        if self.score is not None:
            score = float(self.score)
            self.score = None if not math.isfinite(score) else min(10.0, max(0.0, score))
        if self.feature_vector is not None:
            if len(self.feature_vector) != FEATURE_VECTOR_LENGTH:
                raise ValueError(
                    f"feature_vector must have {FEATURE_VECTOR_LENGTH} elements, got {len(self.feature_vector)}"
                )
            self.feature_vector = [
                min(1.0, max(0.0, float(v))) if math.isfinite(float(v)) else 0.5
                for v in self.feature_vector
            ]

    @property
    def failed(self) -> bool:
        return self.score is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "score": self.score,
            "confidence": self.confidence.value,
            "details": self.details,
            "metadata": self.metadata,
            "feature_vector": self.feature_vector,
            "duration_ms": self.duration_ms,
        }


@dataclass
class ForensicProbeResult:
    """Output of one forensic probe; ``score`` is None when the probe errored."""
    probe_name: str
    score: Optional[float]
    confidence: Confidence
    raw_metrics: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.score is not None:
            score = float(self.score)
            if not math.isfinite(score):
                self.score = None
                self.confidence = Confidence.ERROR
            else:
                self.score = min(1.0, max(0.0, score))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "probe_name": self.probe_name,
            "score": self.score,
            "confidence": self.confidence.value,
            "raw_metrics": self.raw_metrics,
        }


@dataclass
class CompositeAuthenticityResult:
    """Weighted verdict over the forensic probes."""
    score_autenticidad: float
    es_autentico: bool
    nivel_confianza: VerdictConfidence
    per_probe: List[ForensicProbeResult] = field(default_factory=list)
    confianza_promedio: float = 0.0
    analisis_completados: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score_autenticidad": self.score_autenticidad,
            "es_autentico": self.es_autentico,
            "nivel_confianza": self.nivel_confianza.value,
            "confianza_promedio": self.confianza_promedio,
            "analisis_completados": self.analisis_completados,
            "per_probe": [p.to_dict() for p in self.per_probe],
            "metadata": self.metadata,
        }
