"""
Quick local helper: submits a template batch to a running service and prints
progress events as they stream back.
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path

# Ensure project root is importable when running from scripts/
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from batchgen_service.client import stream_batch


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stream a batch generation run")
    parser.add_argument("--templates", required=True, help="Path to a JSON file holding the templates list")
    parser.add_argument("--base-image", help="Base image URL shared by all templates")
    parser.add_argument("--model", help="Model identifier for every template")
    parser.add_argument("--collection-id", help="Collection id for collection runs")
    parser.add_argument("--url", default="http://localhost:8000", help="Service base URL")
    parser.add_argument("--token", required=True, help="Bearer session token")
    parser.add_argument("--collection", action="store_true", help="Use the collection endpoint instead of preview")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    templates_path = Path(args.templates)
    if not templates_path.exists():
        raise FileNotFoundError(f"Templates file not found: {templates_path}")

    payload = {
        "templates": json.loads(templates_path.read_text()),
        "baseImageUrl": args.base_image,
        "model": args.model,
        "collectionId": args.collection_id,
    }
    for event in stream_batch(args.url, payload, token=args.token, preview=not args.collection):
        print(json.dumps(event))


if __name__ == "__main__":
    main()
