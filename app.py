"""
app.py – Flask application entry point for the movie tagger.

Creates the Flask app, registers the ``routes`` Blueprint and, when run as a
script, starts the background scheduler and the development server.
"""

from __future__ import annotations

import argparse
import atexit
import logging

from flask import Flask

from config import load_config, save_config
from routes import bp
from engine import stop_engines
from scheduler import start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)


def create_app() -> Flask:
    flask_app = Flask(__name__)
    flask_app.register_blueprint(bp)
    return flask_app


app = create_app()


def _shutdown() -> None:
    """Stop running cycles, then the background jobs."""
    stop_engines()
    stop_scheduler()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Tag movies and expose each tag as a Jellyfin library.")
    parser.add_argument("--host", default="0.0.0.0", help="Address to bind the web UI to")
    parser.add_argument("--port", type=int, default=5000, help="Port of the web UI")
    parser.add_argument("--movie-dir", help="Directory holding the movie collection")
    parser.add_argument("--tag-dir", help="Directory the tag link tree is written to")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (defaults to the configured log_level)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)

    # First run writes the default config file
    config = load_config()

    # Directories given on the command line override and persist the config.
    overrides = {
        key: value
        for key, value in (("movie_path", args.movie_dir), ("tag_path", args.tag_dir))
        if value
    }
    if overrides:
        config.update(overrides)
        save_config(config)

    logging.basicConfig(
        level=(args.log_level or str(config.get("log_level", "INFO"))).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting movie tagger on %s:%d", args.host, args.port)

    atexit.register(_shutdown)
    start_scheduler()
    app.run(host=args.host, port=args.port, debug=False)


if __name__ == "__main__":
    main()
