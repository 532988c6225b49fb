"""
OCR Pipeline Service — Main Entry Point
=======================================
Starts the Flask-based OCR job service and resumes unfinished jobs.

Usage:
    python main.py                    # Default: 0.0.0.0:5000
    python main.py --port 8000        # Custom port
    python main.py --debug            # Debug mode
"""

import argparse
import logging

from ocr_pipeline.config import PipelineConfig
from ocr_pipeline.server import app, create_app

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)-8s %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="OCR Pipeline Service")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host")
    parser.add_argument("--port", type=int, default=5000, help="Bind port")
    parser.add_argument("--debug", action="store_true", help="Debug mode")
    args = parser.parse_args()

    config = PipelineConfig.from_env()

    # create_app() initializes the DB and re-spawns unfinished jobs
    logger.info("Creating Flask app (initializes DB + object store)...")
    create_app({"PIPELINE_CONFIG": config, "RECOVER_JOBS": True})

    logger.info(f"Database path: {config.db_path}")
    logger.info(f"Object store: {config.storage_root}")
    logger.info(f"Starting server on {args.host}:{args.port}")
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
