"""Command-line interface for running call-stack anomaly analyses."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from callstack_anomaly.backend.services.analysis_service import AnalysisService
from callstack_anomaly.common.errors import CallStackAnomalyError
from callstack_anomaly.common.logging_setup import configure_logging
from callstack_anomaly.common.settings import ANALYSIS_VARIANTS, TRACE_SOURCES
from callstack_anomaly.db.repository import load_payload_from_file

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Call-stack anomaly detection tools")
    parser.add_argument(
        "--trace",
        type=Path,
        help="JSON file with a captured call-tree trace (optional)",
    )
    parser.add_argument(
        "--source",
        choices=sorted(TRACE_SOURCES),
        help="Built-in trace to use when --trace is not given (default from settings)",
    )
    parser.add_argument(
        "--pretty",
        action="store_true",
        help="Print indented JSON",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run an analysis and print its report")
    run_parser.add_argument("--variant", choices=ANALYSIS_VARIANTS, help="Analysis variant")
    run_parser.add_argument("--n-value", type=int, help="Statistical sensitivity (0-100)")
    run_parser.add_argument("--model-file", type=Path, help="Model file to train or apply")
    run_parser.add_argument("--learning-rate", type=float, help="Training learning rate")
    run_parser.add_argument("--epochs", type=int, help="Training epochs (1-100)")
    run_parser.add_argument("--batch-size", type=int, help="Training batch size (1-1000)")
    run_parser.add_argument("--threshold", type=float, help="Anomaly threshold for model-based detection")
    run_parser.add_argument(
        "--results-csv",
        type=Path,
        help="Also write the per-call scores to this CSV file",
    )

    subparsers.add_parser("arrays", help="Show the cached arrays container of the trace")
    subparsers.add_parser("clear", help="Delete the cached arrays container of the trace")

    return parser


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "analysis_variant": args.variant,
        "n_value": args.n_value,
        "model_file_path": str(args.model_file) if args.model_file else None,
        "learning_rate": args.learning_rate,
        "epochs": args.epochs,
        "batch_size": args.batch_size,
        "anomaly_threshold": args.threshold,
    }


def _print(data: Any, pretty: bool) -> None:
    print(json.dumps(data, indent=2 if pretty else None, ensure_ascii=False))


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging()

    service = AnalysisService()
    try:
        payload = load_payload_from_file(args.trace) if args.trace else None

        if args.command == "run":
            report = service.run_analysis(payload, source=args.source, overrides=_overrides(args))
            _print(report.as_dict(), args.pretty)
            results = service.last_results()
            if args.results_csv and results is not None:
                results.write_csv(args.results_csv)
                print(f"Results saved to {args.results_csv}")
            return 0 if report.succeeded else 1

        if args.command == "arrays":
            _print(service.describe_arrays(payload, source=args.source), args.pretty)
            return 0

        if args.command == "clear":
            deleted = service.clear_arrays(payload, source=args.source)
            print("Arrays deleted" if deleted else "No arrays to delete")
            return 0
    except (CallStackAnomalyError, ValueError, OSError) as exc:
        logger.error("Command %s failed: %s", args.command, exc)
        print(f"error: {exc}")
        return 1

    parser.error("Invalid command")
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
