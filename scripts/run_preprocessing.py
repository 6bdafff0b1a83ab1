#!/usr/bin/env python3
"""Run cytofda preprocessing on the FCS files of a sample sheet."""

from __future__ import annotations

import argparse

from cytofda.pipeline.run import run_preprocessing


def main() -> int:
    """Main CLI entry point for preprocessing.

    Returns:
        Exit code (0 for success).
    """
    parser = argparse.ArgumentParser(description="cytofda preprocessing pipeline")
    parser.add_argument(
        "--config",
        default="configs/cytofda_preprocess.json",
        help="Path to pipeline config",
    )

    args = parser.parse_args()
    run_preprocessing(args.config)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
