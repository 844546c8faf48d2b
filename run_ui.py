#!/usr/bin/env python3
"""Run the contract workflow host screen.

Usage:
    python run_ui.py          # Start on default port 5000
    python run_ui.py --port 8080  # Start on custom port
"""

import argparse
import logging


def main():
    parser = argparse.ArgumentParser(description="Studio contract workflow host screen")
    parser.add_argument("--port", type=int, default=5000, help="Port to run on (default: 5000)")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )

    from studioflow.ui.app import run_server

    print(f"""
Contract workflow API: http://localhost:{args.port}/api/state
Events stream:         http://localhost:{args.port}/api/events

  1. POST /api/workflow/open with a lead, package and invoice
  2. Edit, review, create and send the contract
  3. POST /api/simulate/sign and /api/simulate/payment (local backend only)
  4. POST /api/workflow/complete

Press Ctrl+C to stop the server
""")

    run_server(host=args.host, port=args.port, debug=False)


if __name__ == "__main__":
    main()
