#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import os
import pathlib
import sys

import uvicorn

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(description="Serve the marketplace API and realtime endpoint.")
    parser.add_argument("--host", default="127.0.0.1", help="bind address")
    parser.add_argument("--port", type=int, default=8000, help="bind port")
    args = parser.parse_args()

    level = os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    uvicorn.run("jobflow.main:app", host=args.host, port=args.port, log_level=level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
