"""
routes.py – Flask Blueprint containing all HTTP route handlers.

Every route is registered on the ``bp`` Blueprint which is registered with
the Flask application in ``app.py``.  Route handlers are intentionally thin:
they validate inputs, delegate to the engine, and serialise results back to
JSON.  Every tag change answers with the full cycle report so the UI can show
partial success.
"""

from __future__ import annotations

import logging
from typing import Any

import requests
from flask import Blueprint, jsonify, request, send_file
from flask.typing import ResponseReturnValue

from config import load_config, save_config, server_configured
from engine import TagEngine, get_engine
from errors import ConfigError, GatewayError, InvalidTagName, IoError
from inventory import MovieEntry, index_by_id, scan_movies
from jellyfin import JellyfinGateway
from scheduler import update_scheduler_jobs
from tags import Assignment

bp = Blueprint("main", __name__)
logger = logging.getLogger(__name__)

PER_PAGE_DEFAULT = 25
PER_PAGE_MAX = 100


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error(message: str, status: int) -> ResponseReturnValue:
    return jsonify({"status": "error", "message": message}), status


@bp.errorhandler(ConfigError)
def _config_error(exc: ConfigError) -> ResponseReturnValue:
    return _error(str(exc), 400)


@bp.errorhandler(InvalidTagName)
def _tag_error(exc: InvalidTagName) -> ResponseReturnValue:
    return _error(str(exc), 400)


@bp.errorhandler(IoError)
def _io_error(exc: IoError) -> ResponseReturnValue:
    logger.error("Filesystem error: %s", exc)
    return _error(str(exc), 500)


def _movies(engine: TagEngine) -> dict[str, MovieEntry]:
    recursive = bool(engine.config.get("recursive_scan", False))
    return index_by_id(scan_movies(engine.movie_root, recursive=recursive))


def _movie_json(movie: MovieEntry, engine: TagEngine) -> dict[str, Any]:
    return {
        "id": movie.movie_id,
        "name": movie.name,
        "path": movie.path,
        "has_poster": movie.poster_path is not None,
        "tags": sorted(engine.store.tags_for(movie.path)),
    }


def _paging() -> tuple[int, int]:
    """Read ``page`` / ``per_page`` query args, clamped to sane bounds."""
    page = request.args.get("page", 1, type=int) or 1
    per_page = request.args.get("per_page", PER_PAGE_DEFAULT, type=int) or PER_PAGE_DEFAULT
    return max(1, page), min(max(1, per_page), PER_PAGE_MAX)


def _report_response(report: Any) -> ResponseReturnValue:
    status_code = 500 if report.status == "error" else 200
    return jsonify(report.to_dict()), status_code


# ---------------------------------------------------------------------------
# Config routes
# ---------------------------------------------------------------------------


@bp.route("/api/config", methods=["GET"])
def get_config() -> ResponseReturnValue:
    """Return the current application configuration as JSON."""
    return jsonify(load_config())


@bp.route("/api/config", methods=["POST"])
def update_config() -> ResponseReturnValue:
    """Persist a new application configuration supplied in the request body.

    The entire configuration object is replaced with the POSTed JSON.

    Returns:
        JSON with ``status`` and the saved ``config``, or a 500 error if the
        config file could not be written.
    """
    new_config = request.get_json(silent=True)
    if not isinstance(new_config, dict):
        return _error("Request body must be a JSON object", 400)
    try:
        save_config(new_config)
    except OSError as exc:
        logger.exception("Failed to write config file")
        return _error(f"Config file write failed: {exc}", 500)

    # Update background jobs based on new config
    try:
        update_scheduler_jobs()
    except ValueError:
        logger.exception("Failed to update scheduler jobs")

    return jsonify({"status": "success", "config": new_config})


@bp.route("/api/test-server", methods=["POST"])
def test_server() -> ResponseReturnValue:
    """Verify connectivity to a Jellyfin server.

    Expects a JSON body with ``jellyfin_url`` and ``api_key`` fields.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _error("Request body must be a JSON object", 400)
    url: str = str(data.get("jellyfin_url", "")).rstrip("/")
    api_key: str = str(data.get("api_key", ""))

    if not url or not api_key:
        return _error("URL and API Key are required", 400)

    try:
        response = requests.get(
            f"{url}/System/Info",
            headers={"X-Emby-Token": api_key},
            timeout=5,
        )
    except requests.exceptions.RequestException as exc:
        return _error(f"Connection error: {exc!s}", 400)
    if response.status_code == 200:
        return jsonify({"status": "success", "message": "Connected to Jellyfin successfully!"})
    return _error(f"Server returned status {response.status_code}", 400)


# ---------------------------------------------------------------------------
# Movies & tags
# ---------------------------------------------------------------------------


@bp.route("/api/movies", methods=["GET"])
def list_movies() -> ResponseReturnValue:
    """Return one page of movies, sorted by name, with their tags."""
    engine = get_engine(load_config())
    movies = sorted(_movies(engine).values(), key=lambda m: (m.name.lower(), m.path))
    page, per_page = _paging()
    last_page = max(1, -(-len(movies) // per_page))
    page = min(page, last_page)
    start = (page - 1) * per_page
    return jsonify({
        "page": page,
        "per_page": per_page,
        "last_page": last_page,
        "total": len(movies),
        "movies": [_movie_json(m, engine) for m in movies[start:start + per_page]],
    })


@bp.route("/api/movies/<movie_id>", methods=["GET"])
def get_movie(movie_id: str) -> ResponseReturnValue:
    engine = get_engine(load_config())
    movie = _movies(engine).get(movie_id)
    if movie is None:
        return _error("Movie not found", 404)
    return jsonify(_movie_json(movie, engine))


@bp.route("/api/movies/<movie_id>/poster.jpg", methods=["GET"])
def movie_poster(movie_id: str) -> ResponseReturnValue:
    engine = get_engine(load_config())
    movie = _movies(engine).get(movie_id)
    if movie is None or movie.poster_path is None:
        return _error("Poster not found", 404)
    return send_file(movie.poster_path, mimetype="image/jpeg")


@bp.route("/api/movies/<movie_id>/tags/<tag>", methods=["POST"])
def toggle_tag(movie_id: str, tag: str) -> ResponseReturnValue:
    """Toggle *tag* on a movie, then reconcile links and visibility."""
    engine = get_engine(load_config())
    movie = _movies(engine).get(movie_id)
    if movie is None:
        return _error("Movie not found", 404)

    tagged = engine.store.toggle(tag, movie.path)
    logger.info("%s tag %r on %s", "Added" if tagged else "Removed", tag, movie.name)
    report = engine.trigger()
    payload = report.to_dict()
    payload["movie"] = _movie_json(movie, engine)
    return jsonify(payload), 500 if report.status == "error" else 200


@bp.route("/api/tags", methods=["GET"])
def list_tags() -> ResponseReturnValue:
    engine = get_engine(load_config())
    return jsonify({
        "tags": [
            {"name": tag, "movies": len(engine.store.movies_for(tag))}
            for tag in engine.store.tags()
        ]
    })


@bp.route("/api/reconcile", methods=["POST"])
def reconcile() -> ResponseReturnValue:
    """Run a reconcile-and-sync cycle.

    The body may carry ``{"assignments": {"<tag>": ["<movie id>", ...]}}``,
    which replaces every current assignment before the cycle runs.
    """
    engine = get_engine(load_config())
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return _error("Request body must be a JSON object", 400)

    snapshot = data.get("assignments")
    if snapshot is None:
        return _report_response(engine.reconcile_and_sync())
    if not isinstance(snapshot, dict):
        return _error("'assignments' must map tag names to movie ids", 400)

    movies = _movies(engine)
    assignments: list[Assignment] = []
    unknown: list[str] = []
    for tag, movie_ids in snapshot.items():
        if not isinstance(movie_ids, list):
            return _error(f"Movies of tag {tag!r} must be a list", 400)
        for movie_id in movie_ids:
            movie = movies.get(str(movie_id))
            if movie is None:
                unknown.append(str(movie_id))
                continue
            assignments.append(Assignment(str(tag), movie.path))
    if unknown:
        return _error(f"Unknown movie ids: {', '.join(sorted(unknown))}", 400)

    return _report_response(engine.reconcile_and_sync(assignments))


@bp.route("/api/reload", methods=["POST"])
def reload() -> ResponseReturnValue:
    """Re-seed the tag store from the links currently on disk."""
    engine = get_engine(load_config())
    count = engine.reload()
    return jsonify({"status": "success", "assignments": count})


@bp.route("/api/cleanup", methods=["POST"])
def cleanup() -> ResponseReturnValue:
    """Delete broken symlinks under the tag directory."""
    engine = get_engine(load_config())
    return jsonify({"status": "success", "deleted": engine.cleanup()})


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@bp.route("/api/users", methods=["GET"])
def list_users() -> ResponseReturnValue:
    """List Jellyfin users with the libraries each one can see."""
    config = load_config()
    if not server_configured(config):
        return _error("Server settings not configured", 400)
    gateway = JellyfinGateway.from_config(config)
    try:
        users = gateway.describe_users()
        libraries = gateway.list_libraries()
    except GatewayError as exc:
        return _error(f"Jellyfin error: {exc}", 502)
    names_by_id = {library_id: name for name, library_id in libraries.items()}
    for user in users:
        user["libraries"] = sorted(
            libraries if user["all_folders"]
            else (names_by_id[f] for f in user["enabled_folders"] if f in names_by_id)
        )
        user["is_managed"] = config.get("account") in (user["id"], user["name"])
    return jsonify({"status": "success", "users": users})
