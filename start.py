"""AgentRoom launcher. Run: python start.py [--host 127.0.0.1] [--port 8000]"""

import argparse
import logging
import os

import uvicorn

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("agentroom.launcher")


def main():
    parser = argparse.ArgumentParser(description="Run the AgentRoom server.")
    parser.add_argument("--host", default=os.environ.get("AGENTROOM_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("AGENTROOM_PORT", "8000")))
    parser.add_argument("--reload", action="store_true", help="Reload on code changes (development).")
    args = parser.parse_args()

    logger.info("Starting AgentRoom on http://%s:%s", args.host, args.port)
    uvicorn.run(
        "agentroom.main:app",
        host=args.host,
        port=args.port,
        log_level="info",
        reload=args.reload,
    )


if __name__ == "__main__":
    main()
