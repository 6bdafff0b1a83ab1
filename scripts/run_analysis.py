#!/usr/bin/env python3
"""Run the cytofda differential abundance analysis."""

from __future__ import annotations

import argparse

from cytofda.pipeline.run import run_analysis


def main() -> int:
    """Main CLI entry point for differential abundance analysis.

    Returns:
        Exit code (0 for success).
    """
    parser = argparse.ArgumentParser(description="cytofda differential abundance pipeline")
    parser.add_argument(
        "--config",
        default="configs/cytofda_analysis.json",
        help="Path to pipeline config",
    )

    args = parser.parse_args()
    run_analysis(args.config)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
