from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys
from typing import cast

from portraitist.main import app


def render_openapi() -> str:
    return json.dumps(app.openapi(), indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Write the portrait API's OpenAPI document, or check it for drift."
    )
    _ = parser.add_argument("--output", default="openapi.json", help="Target JSON file")
    _ = parser.add_argument(
        "--check",
        action="store_true",
        help="Exit 1 if the file differs from the live schema instead of writing it",
    )
    args = parser.parse_args()

    target = Path(cast(str, args.output))
    rendered = render_openapi()

    if cast(bool, args.check):
        current = target.read_text(encoding="utf-8") if target.exists() else ""
        if current != rendered:
            print(f"{target} is out of date; rerun without --check", file=sys.stderr)
            raise SystemExit(1)
        return

    target.parent.mkdir(parents=True, exist_ok=True)
    _ = target.write_text(rendered, encoding="utf-8")
    print(f"wrote {target} ({len(app.routes)} routes)")


if __name__ == "__main__":
    main()
