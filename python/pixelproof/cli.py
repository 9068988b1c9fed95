"""Command-line interface for pixelproof."""
import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path

from .service import AnalysisService
from .types import AnalysisConfig


def analyze_command(args):
    """Analyze an image command."""
    image_path = Path(args.file)
    if not image_path.exists():
        print(f"Error: File not found: {args.file}", file=sys.stderr)
        sys.exit(1)

    try:
        config = AnalysisConfig.from_env()
        overrides = {}
        if args.workers is not None:
            overrides["max_workers"] = args.workers
        if args.seed is not None:
            overrides["seed"] = args.seed
        if args.stub:
            overrides["analyzer_mode"] = "stub"
        if overrides:
            config = dataclasses.replace(config, **overrides)
        service = AnalysisService(config)
    except ValueError as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    with service:
        report = service.analyze(image_path, correlation_id=args.correlation_id, image_id=args.image_id)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False, default=str))
    else:
        print(f"\n{'='*60}")
        print("  Image Authenticity Report")
        print(f"{'='*60}\n")
        print(f"File: {image_path.resolve()}")
        print(f"Correlation: {report.correlation_id}")

        print("\nAnalyzers:")
        for name, result in report.results.items():
            icon = "✗" if result.failed else "✓"
            score = "n/a" if result.failed else f"{result.score:.2f}/10"
            print(f"  {icon} {name} v{result.version}: {score} ({result.confidence.value})")
            message = result.details.get("mensaje") or result.details.get("mensajeScore") \
                or result.details.get("mensajePrincipal")
            if message and (args.verbose or result.failed):
                print(f"      {message}")

        forensic = report.forensic
        if forensic is not None and not forensic.failed:
            print("\nForensic verdict:")
            print(f"  Authentic: {'yes' if forensic.details.get('esAutentico') else 'no'}")
            print(f"  Score: {forensic.details.get('scoreAutenticidad')}")
            print(f"  Confidence: {forensic.details.get('nivelConfianza')}")
            if args.verbose:
                for probe, data in forensic.metadata.get("detallesAnalisis", {}).items():
                    score = data["score"]
                    shown = "error" if score is None else f"{score:.3f}"
                    print(f"    • {probe}: {shown} ({data['confidence']})")

        print(f"\nDuration: {report.duration_ms} ms")
        print(f"\n{'='*60}\n")

    sys.exit(0 if report.is_authentic else 1)


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="pixelproof",
        description="Forensic analysis of image authenticity"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    analyze_parser = subparsers.add_parser("analyze", help="Analyze an image")
    analyze_parser.add_argument("file", help="Image to analyze")
    analyze_parser.add_argument("-j", "--json", action="store_true", help="Output as JSON")
    analyze_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    analyze_parser.add_argument("-w", "--workers", type=int, help="Number of parallel worker threads")
    analyze_parser.add_argument("--seed", type=int, help="Seed for the sampling analyzers")
    analyze_parser.add_argument("--stub", action="store_true", help="Use neutral stub analyzers")
    analyze_parser.add_argument("--correlation-id", default="N/A", help="Correlation id for logging")
    analyze_parser.add_argument("--image-id", default="N/A", help="Image id for logging")
    analyze_parser.set_defaults(func=analyze_command)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args.func(args)


if __name__ == "__main__":
    main()
