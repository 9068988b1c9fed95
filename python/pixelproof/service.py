"""Analysis service: decode once, run every enabled analyzer concurrently."""
import concurrent.futures
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .artifacts import ArtifactAnalyzer
from .base import Analyzer, StubAnalyzer, wait_for_result
from .decoding import ImageDecoder
from .definition import DefinitionAnalyzer
from .forensics import ForensicSuite
from .texture import TextureAnalyzer
from .types import (
    AnalysisConfig,
    AnalyzerResult,
    CancellationToken,
    Confidence,
    ImageDecodeError,
    ImageSource,
)

logger = logging.getLogger(__name__)

ANALYZER_CLASSES = {
    cls.name: cls
    for cls in (TextureAnalyzer, DefinitionAnalyzer, ArtifactAnalyzer, ForensicSuite)
}


def build_analyzers(config: AnalysisConfig, decoder: Optional[ImageDecoder] = None) -> Dict[str, Analyzer]:
    """Real or stub analyzers keyed by name, restricted to ``config.enabled_analyzers``."""
    decoder = decoder or ImageDecoder(config.max_image_bytes)
    names = list(config.enabled_analyzers) or list(ANALYZER_CLASSES)
    unknown = [n for n in names if n not in ANALYZER_CLASSES]
    if unknown:
        raise ValueError(f"Unknown analyzers: {', '.join(unknown)}; available: {', '.join(ANALYZER_CLASSES)}")

    analyzers: Dict[str, Analyzer] = {}
    for name in names:
        if config.analyzer_mode == "stub":
            analyzers[name] = StubAnalyzer(name, decoder)
        else:
            analyzers[name] = ANALYZER_CLASSES[name](decoder=decoder)
    logger.debug(f"Built {config.analyzer_mode} analyzers: {', '.join(analyzers)}")
    return analyzers


@dataclass
class AnalysisReport:
    """Every analyzer's result for one image."""
    correlation_id: str
    image_id: str
    results: Dict[str, AnalyzerResult] = field(default_factory=dict)
    duration_ms: float = 0.0

    @property
    def forensic(self) -> Optional[AnalyzerResult]:
        return self.results.get(ForensicSuite.name)

    @property
    def is_authentic(self) -> bool:
        forensic = self.forensic
        return bool(forensic and not forensic.failed and forensic.details.get('esAutentico'))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "image_id": self.image_id,
            "duration_ms": self.duration_ms,
            "results": {name: result.to_dict() for name, result in self.results.items()},
        }


class AnalysisService:
    """Composes the analyzers and owns the worker pool.

    Call :meth:`init` before :meth:`analyze` and :meth:`shutdown` when done,
    or use the service as a context manager.
    """

    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        decoder: Optional[ImageDecoder] = None,
        analyzers: Optional[Dict[str, Analyzer]] = None,
    ):
        self.config = config or AnalysisConfig()
        self.decoder = decoder or ImageDecoder(self.config.max_image_bytes)
        self.analyzers = analyzers if analyzers is not None else build_analyzers(self.config, self.decoder)
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None

    def init(self) -> "AnalysisService":
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=self.config.max_workers,
                thread_name_prefix="pixelproof",
            )
            logger.info(
                f"Analysis service started with {self.config.max_workers} workers "
                f"and analyzers {', '.join(self.analyzers)}"
            )
        return self

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait, cancel_futures=True)
            self._executor = None
            logger.info("Analysis service stopped")

    def __enter__(self) -> "AnalysisService":
        return self.init()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def timeout_for(self, name: str) -> float:
        """Deadline in seconds for the named analyzer."""
        if name == ForensicSuite.name:
            return self.config.forensic_timeout_ms / 1000
        return self.config.analyzer_timeout_ms / 1000

    def analyze(self, source: ImageSource, correlation_id: str = "N/A", image_id: str = "N/A") -> AnalysisReport:
        if self._executor is None:
            raise RuntimeError("AnalysisService.init() must be called before analyze()")

        start = time.perf_counter()
        report = AnalysisReport(correlation_id=correlation_id, image_id=image_id)
        tag = f"correlation={correlation_id} image={image_id}"

        try:
            image = self.decoder.decode(source)
        except ImageDecodeError as e:
            logger.warning(f"{tag}: image rejected: {e}")
            for name, analyzer in self.analyzers.items():
                report.results[name] = _failure(analyzer, f"Imagen indeterminable: {e}")
            report.duration_ms = _elapsed_ms(start)
            return report
        except Exception as e:
            logger.exception(f"{tag}: decoder failed")
            for name, analyzer in self.analyzers.items():
                report.results[name] = _failure(analyzer, f"Error crítico al decodificar la imagen: {e}")
            report.duration_ms = _elapsed_ms(start)
            return report

        tokens: Dict[str, CancellationToken] = {}
        futures: Dict[str, concurrent.futures.Future] = {}
        for name, analyzer in self.analyzers.items():
            # The deadline starts when a worker picks the analyzer up
            tokens[name] = CancellationToken(self.timeout_for(name), started=False)
            futures[name] = self._executor.submit(
                _run_one, analyzer, image, correlation_id, image_id, self.config, tokens[name],
            )

        for name, future in futures.items():
            token = tokens[name]
            try:
                report.results[name] = wait_for_result(future, token)
            except concurrent.futures.TimeoutError:
                token.cancel()
                future.cancel()
                logger.warning(f"{tag}: analyzer {name} exceeded {self.timeout_for(name)} s")
                report.results[name] = _failure(
                    self.analyzers[name], "Análisis cancelado por tiempo excedido.", motivo="timeout",
                )
            except Exception as e:
                logger.exception(f"{tag}: analyzer {name} raised")
                report.results[name] = _failure(
                    self.analyzers[name], f"Error crítico durante el análisis: {e}",
                )

        report.duration_ms = _elapsed_ms(start)
        logger.info(f"{tag}: {len(report.results)} analyzers finished in {report.duration_ms} ms")
        return report


def _run_one(analyzer: Analyzer, image, correlation_id: str, image_id: str,
             config: AnalysisConfig, token: CancellationToken) -> AnalyzerResult:
    token.start()
    return analyzer.analyze_decoded(image, correlation_id, image_id, config, token)


def _failure(analyzer: Analyzer, message: str, **details: Any) -> AnalyzerResult:
    return AnalyzerResult(
        name=analyzer.name,
        version=analyzer.version,
        score=None,
        confidence=Confidence.ERROR,
        details={"mensaje": message, **details},
    )


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)
