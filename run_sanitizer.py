#!/usr/bin/env python3
"""
CLI script to run the AMP sanitizer over HTML files.

Each file is decoded with its declared charset, sanitized, and either
written to the output directory (-o) or printed to stdout.  Settings come
from AMP_SANITIZER_* environment variables (a .env file is loaded first).

Examples:
  python run_sanitizer.py page.html
  python run_sanitizer.py pages/*.html -o amp/ --errors-json errors.json
  python run_sanitizer.py page.html --keep-invalid -v
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
load_dotenv()

from amp_sanitizer.config import PipelineConfig
from amp_sanitizer.main import AmpResponsePreparer
from amp_sanitizer.policy import AllSanitized


def main():
    parser = argparse.ArgumentParser(description="Convert HTML files to valid AMP")
    parser.add_argument("files", nargs="+", help="HTML files to process")
    parser.add_argument("--output", "-o", help="Output directory for sanitized files")
    parser.add_argument("--keep-invalid", action="store_true",
                        help="Only strip known-safe errors; keep the rest (page becomes non-AMP)")
    parser.add_argument("--errors-json", help="Write validation errors of every file to this JSON file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()

    config = PipelineConfig.from_env()
    log_level = logging.DEBUG if args.verbose else max(config.log_level, logging.WARNING)

    # Default strips every error; --keep-invalid falls back to the config's safe codes
    policy = None if args.keep_invalid else AllSanitized()
    preparer = AmpResponsePreparer(config=config, policy=policy, log_level=log_level)

    output_dir = Path(args.output) if args.output else None
    if output_dir:
        output_dir.mkdir(parents=True, exist_ok=True)

    results = []
    failed = 0

    for filepath in args.files:
        path = Path(filepath)
        print(f"Sanitizing: {path.name}", file=sys.stderr)

        try:
            response = preparer.prepare_file(path)
        except OSError as e:
            failed += 1
            results.append({"file": path.name, "status": "error", "error": str(e)})
            print(f"  ✗ Error: {e}", file=sys.stderr)
            continue

        sanitized = sum(1 for error in response.validation_errors if error.sanitized)
        kept = len(response.validation_errors) - sanitized
        results.append({
            "file": path.name,
            "status": "amp" if response.is_amp else "non-amp",
            "etag": response.etag,
            "errors": [error.model_dump(mode="json") for error in response.validation_errors],
        })

        if output_dir:
            # Sanitized documents always declare UTF-8
            (output_dir / path.name).write_text(response.html, encoding="utf-8")
        else:
            print(response.html)

        marker = "✓" if response.is_amp else "!"
        print(f"  {marker} {sanitized} errors sanitized, {kept} kept", file=sys.stderr)

    if args.errors_json:
        # ensure_ascii=False preserves unicode characters in the JSON
        Path(args.errors_json).write_text(json.dumps(results, indent=2, ensure_ascii=False), encoding="utf-8")
        print(f"\nErrors saved to: {args.errors_json}", file=sys.stderr)

    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
