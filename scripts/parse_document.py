#!/usr/bin/env python3
"""Run the parsing pipeline on a local file and print the JSON result.

Usage:
    python scripts/parse_document.py invoices.pdf
    python scripts/parse_document.py estimate.xlsx --kind estimate
    python scripts/parse_document.py invoices.pdf --strategy cost-optimized --force

Requirements:
    - Provider credentials (e.g. APP_OPENAI_API_KEY) for model-backed strategies;
      without any, the pipeline runs heuristics only
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import get_args

from docparse.orchestration.processor import DocumentProcessor
from docparse.shared.config import StrategyName, get_settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Parse an invoice or estimate document")
    parser.add_argument("path", type=Path, help="PDF, CSV or XLSX file")
    parser.add_argument(
        "--kind",
        choices=("invoice", "estimate"),
        default="invoice",
        help="Document kind (default: invoice)",
    )
    parser.add_argument(
        "--strategy",
        choices=get_args(StrategyName),
        help="Override the parsing strategy for this run",
    )
    parser.add_argument("--user-id", help="Caller identity for stored settings")
    parser.add_argument(
        "--force", action="store_true", help="Parse every page, bypassing the page classifier"
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    settings = get_settings()
    if args.strategy:
        settings = settings.model_copy(update={"parsing_strategy": args.strategy})
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    if not args.path.is_file():
        print(f"File not found: {args.path}", file=sys.stderr)
        return 2

    content = args.path.read_bytes()
    with DocumentProcessor.from_settings(settings, user_id=args.user_id) as processor:
        if args.kind == "estimate":
            estimate = processor.process_estimate(content, args.path.name)
            print(estimate.model_dump_json(indent=2))
            return 0 if estimate.trades else 1

        result = processor.process_invoices(content, force=args.force, filename=args.path.name)
        print(result.model_dump_json(indent=2))
        return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
