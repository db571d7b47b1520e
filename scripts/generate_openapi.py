#!/usr/bin/env python3
"""
Generate the OpenAPI schema JSON of the render service.

Builds the FastAPI app from render_service.render_controller and dumps its
OpenAPI schema. The app is not started, so no browser is launched.

Usage:
    python scripts/generate_openapi.py [--out <path>]

If --out is not provided, defaults to docs/openapi.json relative to repo root.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Ensure project root is on sys.path when executing directly
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from render_service.render_controller import create_app  # noqa: E402

DEFAULT_OUT = ROOT / "docs" / "openapi.json"


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate OpenAPI JSON from FastAPI app")
    parser.add_argument("--out", type=Path, default=DEFAULT_OUT, help="Output file path for openapi.json")
    args = parser.parse_args()

    schema = create_app().openapi()

    out_path: Path = args.out
    out_path.parent.mkdir(parents=True, exist_ok=True)

    # Keep a stable, pretty deterministic output for diffs
    with out_path.open("w", encoding="utf-8") as f:
        json.dump(schema, f, ensure_ascii=False, indent=2, sort_keys=True)
        f.write("\n")


if __name__ == "__main__":
    main()
