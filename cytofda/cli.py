"""Command-line interface for cytofda pipelines."""

from __future__ import annotations

import argparse
from typing import Iterable

from cytofda.pipeline import run_analysis, run_preprocessing


def preprocess_main(argv: Iterable[str] | None = None) -> int:
    """Run the preprocessing pipeline.

    Args:
        argv: Command-line arguments (if None, uses sys.argv).

    Returns:
        Exit code (0 for success).
    """
    parser = argparse.ArgumentParser(description="cytofda preprocessing: transform, gate, curate")
    parser.add_argument(
        "--config",
        default="configs/cytofda_preprocess.json",
        help="Path to preprocessing config",
    )
    args = parser.parse_args(list(argv) if argv is not None else None)

    summary = run_preprocessing(args.config)
    print(f"samples={summary['n_samples']}")
    print(f"sample_sheet={summary['sample_sheet']}")
    return 0


def analyze_main(argv: Iterable[str] | None = None) -> int:
    """Run the differential abundance pipeline.

    Args:
        argv: Command-line arguments (if None, uses sys.argv).

    Returns:
        Exit code (0 for success).
    """
    parser = argparse.ArgumentParser(description="cytofda differential abundance analysis")
    parser.add_argument(
        "--config",
        default="configs/cytofda_analysis.json",
        help="Path to analysis config",
    )
    args = parser.parse_args(list(argv) if argv is not None else None)

    summary = run_analysis(args.config)
    print(f"hyperspheres={summary['n_hyperspheres']}")
    for name, counts in summary["contrasts"].items():
        print(f"{name}: significant={counts['significant']} nonredundant={counts['nonredundant']}")
    return 0


def main(argv: Iterable[str] | None = None) -> int:
    """Main CLI entry point.

    Args:
        argv: Command-line arguments (if None, uses sys.argv).

    Returns:
        Exit code.
    """
    parser = argparse.ArgumentParser(description="cytofda CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("preprocess", help="Transform, gate and curate FCS files")
    sub.add_parser("analyze", help="Count hyperspheres and test contrasts")

    args, remainder = parser.parse_known_args(list(argv) if argv is not None else None)
    if args.command == "preprocess":
        return preprocess_main(remainder)
    if args.command == "analyze":
        return analyze_main(remainder)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
