"""
pixelproof - Python Implementation

Forensic image authenticity analysis: texture, definition, artifact and
forensic-probe analyzers over raw pixel buffers.
"""

from .types import (
    AnalysisConfig,
    AnalysisRequest,
    AnalyzerResult,
    CancellationToken,
    CompositeAuthenticityResult,
    Confidence,
    DecodedImage,
    ForensicProbeResult,
    ImageDecodeError,
    AnalysisCancelled,
    VerdictConfidence,
)
from .decoding import ImageDecoder
from .base import Analyzer, ImageAnalyzer, StubAnalyzer
from .texture import TextureAnalyzer
from .definition import DefinitionAnalyzer
from .artifacts import ArtifactAnalyzer
from .forensics import ForensicSuite
from .aggregator import ScoreAggregator
from .service import AnalysisService, AnalysisReport, build_analyzers

__version__ = "0.1.0"
__all__ = [
    "AnalysisConfig",
    "AnalysisRequest",
    "AnalyzerResult",
    "CancellationToken",
    "CompositeAuthenticityResult",
    "Confidence",
    "DecodedImage",
    "ForensicProbeResult",
    "ImageDecodeError",
    "AnalysisCancelled",
    "VerdictConfidence",
    "ImageDecoder",
    "Analyzer",
    "ImageAnalyzer",
    "StubAnalyzer",
    "TextureAnalyzer",
    "DefinitionAnalyzer",
    "ArtifactAnalyzer",
    "ForensicSuite",
    "ScoreAggregator",
    "AnalysisService",
    "AnalysisReport",
    "build_analyzers",
]
