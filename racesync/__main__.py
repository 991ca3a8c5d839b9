"""Run the coordinator: python -m racesync [--host HOST] [--port PORT]"""
from __future__ import annotations

import argparse


def main() -> None:
    parser = argparse.ArgumentParser(prog="racesync", description="Race sync coordinator")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args()

    import uvicorn

    uvicorn.run("racesync.main:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
