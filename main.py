"""Tempest RPG server launcher."""

import argparse
import logging
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = os.getenv("PORT", "13013")


def main():
    parser = argparse.ArgumentParser(description="Tempest RPG server")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Save/mailbox storage directory (default: ./data)")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=int(PORT))
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.data_dir:
        os.environ["DATA_DIR"] = str(args.data_dir.resolve())

    from tempest_rpg.app import create_app

    print(f"Starting Tempest RPG on http://localhost:{args.port} ...")
    uvicorn.run(create_app(), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
