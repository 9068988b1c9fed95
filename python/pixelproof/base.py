"""Analyzer interface and the shared run template.

Every analyzer goes through :meth:`ImageAnalyzer._run`, which decodes (or
receives an already decoded image), times the run, logs it with the
request's correlation id and turns any exception into the failure payload
(``score=None``, ``confidence=error``, ``details['mensaje']``).  Nothing
raises past :meth:`Analyzer.analyze`.
"""
import concurrent.futures
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import numpy as np

from .decoding import ImageDecoder
from .types import (
    AnalysisCancelled,
    AnalysisConfig,
    AnalysisRequest,
    AnalyzerResult,
    CancellationToken,
    Confidence,
    DecodedImage,
    FEATURE_VECTOR_LENGTH,
    ImageDecodeError,
    ImageSource,
)

logger = logging.getLogger(__name__)

# How often a caller re-checks a job that is still queued for a worker
QUEUE_POLL_S = 0.05


def wait_for_result(future: concurrent.futures.Future, token: CancellationToken):
    """Wait for ``future`` within ``token``'s deadline.

    The token is expected to be started by the worker that runs the job, so
    queue time before that does not count.  Raises
    :class:`concurrent.futures.TimeoutError` once the deadline passes or the
    token is cancelled while still queued.
    """
    while not token.started:
        try:
            return future.result(timeout=QUEUE_POLL_S)
        except concurrent.futures.TimeoutError:
            if token.cancelled:
                raise
    return future.result(timeout=token.remaining())


@dataclass
class AnalysisContext:
    """Per-run state handed to an analyzer implementation."""
    correlation_id: str = "N/A"
    image_id: str = "N/A"
    config: AnalysisConfig = field(default_factory=AnalysisConfig)
    cancel: CancellationToken = field(default_factory=CancellationToken)

    def rng(self) -> np.random.Generator:
        """Random generator for windowed sampling; seeded when the config has a seed."""
        return np.random.default_rng(self.config.seed)


class Analyzer(ABC):
    """Capability interface implemented by real and stub analyzers."""

    name: str = "ANALIZADOR"
    version: str = "0.0.0"

    @abstractmethod
    def analyze(
        self,
        source: ImageSource,
        correlation_id: str = "N/A",
        image_id: str = "N/A",
        config: Optional[AnalysisConfig] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> AnalyzerResult:
        """Decode ``source`` and analyze it."""

    @abstractmethod
    def analyze_decoded(
        self,
        image: DecodedImage,
        correlation_id: str = "N/A",
        image_id: str = "N/A",
        config: Optional[AnalysisConfig] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> AnalyzerResult:
        """Analyze an image that the caller already decoded."""

    def run(self, request: AnalysisRequest, cancel: Optional[CancellationToken] = None) -> AnalyzerResult:
        return self.analyze(request.source, request.correlation_id, request.image_id, request.config, cancel)


class ImageAnalyzer(Analyzer):
    """Base class for analyzers that work on a decoded image."""

    # Smallest width and height the analysis can say anything about
    MIN_DIMENSION = 2

    def __init__(self, decoder: Optional[ImageDecoder] = None):
        self.decoder = decoder or ImageDecoder()

    def analyze(self, source, correlation_id="N/A", image_id="N/A", config=None, cancel=None):
        return self._run(lambda: self.decoder.decode(source), correlation_id, image_id, config, cancel)

    def analyze_decoded(self, image, correlation_id="N/A", image_id="N/A", config=None, cancel=None):
        return self._run(lambda: image, correlation_id, image_id, config, cancel)

    @abstractmethod
    def _analyze(self, image: DecodedImage, ctx: AnalysisContext) -> AnalyzerResult:
        """Compute the result; may raise, the template handles it."""

    def _run(
        self,
        load: Callable[[], DecodedImage],
        correlation_id: str,
        image_id: str,
        config: Optional[AnalysisConfig],
        cancel: Optional[CancellationToken],
    ) -> AnalyzerResult:
        ctx = AnalysisContext(
            correlation_id=correlation_id,
            image_id=image_id,
            config=config or AnalysisConfig(),
            cancel=cancel or CancellationToken(),
        )
        tag = f"[{self.name} v{self.version}] correlation={correlation_id} image={image_id}"
        start = time.perf_counter()
        logger.debug(f"{tag}: analysis started", extra=self._log_extra(ctx))

        try:
            image = load()
            self._check_dimensions(image)
            ctx.cancel.check()
            result = self._analyze(image, ctx)
        except ImageDecodeError as e:
            logger.warning(f"{tag}: input rejected: {e}", extra=self._log_extra(ctx))
            result = self.failure(f"Imagen indeterminable: {e}")
        except AnalysisCancelled as e:
            logger.warning(f"{tag}: {e}", extra=self._log_extra(ctx))
            result = self.failure(f"Análisis cancelado: {e}", motivo="timeout")
        except Exception as e:
            logger.exception(f"{tag}: analysis failed", extra=self._log_extra(ctx))
            result = self.failure(f"Error crítico durante el análisis: {e}")

        result.duration_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            f"{tag}: finished score={result.score} confidence={result.confidence.value} "
            f"in {result.duration_ms} ms",
            extra=self._log_extra(ctx, duration_ms=result.duration_ms),
        )
        return result

    def _check_dimensions(self, image: DecodedImage) -> None:
        w, h = image.pixels.width, image.pixels.height
        if w < self.MIN_DIMENSION or h < self.MIN_DIMENSION:
            raise ImageDecodeError(f"dimensiones insuficientes ({w}x{h})")

    def failure(self, message: str, **details: Any) -> AnalyzerResult:
        """Failure payload: no score, error confidence, human-readable message."""
        return AnalyzerResult(
            name=self.name,
            version=self.version,
            score=None,
            confidence=Confidence.ERROR,
            details={"mensaje": message, **details},
        )

    def _log_extra(self, ctx: AnalysisContext, **more: Any) -> Dict[str, Any]:
        return {
            "analyzer": self.name,
            "analyzer_version": self.version,
            "correlation_id": ctx.correlation_id,
            "image_id": ctx.image_id,
            **more,
        }


class StubAnalyzer(ImageAnalyzer):
    """Neutral stand-in used when configuration selects stub analyzers.

    Still decodes the input, so missing or corrupt images fail exactly as
    with the real analyzers.
    """

    version = "stub"
    MIN_DIMENSION = 1

    def __init__(self, name: str, decoder: Optional[ImageDecoder] = None):
        super().__init__(decoder)
        self.name = name

    def _analyze(self, image: DecodedImage, ctx: AnalysisContext) -> AnalyzerResult:
        return AnalyzerResult(
            name=self.name,
            version=self.version,
            score=5.0,
            confidence=Confidence.LOW,
            details={"mensaje": "Analizador simulado: resultado neutral."},
            metadata={"stub": True},
            feature_vector=[0.5] * FEATURE_VECTOR_LENGTH,
        )
