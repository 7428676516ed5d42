import os
import threading
import time

import pytest
import requests
from unittest.mock import patch
from werkzeug.serving import make_server

from tests import virtual_jellyfin as jelly_mock


@pytest.fixture(scope="session")
def virtual_jellyfin_server():
    """Run the virtual Jellyfin server in a background thread."""
    server = make_server("127.0.0.1", 0, jelly_mock.app, threaded=True)
    server_thread = threading.Thread(target=server.serve_forever)
    server_thread.daemon = True
    server_thread.start()

    # Wait for server to be ready
    base_url = f"http://127.0.0.1:{server.server_port}"
    timeout = 5
    start_time = time.time()
    while time.time() - start_time < timeout:
        try:
            requests.get(f"{base_url}/System/Info", headers={"X-Emby-Token": "test_key"}, timeout=1)
            break
        except requests.exceptions.ConnectionError:
            time.sleep(0.1)
    else:
        pytest.fail("Virtual Jellyfin server failed to start")

    yield base_url
    server.shutdown()


@pytest.fixture
def virtual_jellyfin(virtual_jellyfin_server):
    """Base URL of the virtual Jellyfin server, reset to its initial state."""
    jelly_mock.reset()
    return virtual_jellyfin_server


@pytest.fixture(autouse=True)
def mock_scheduler():
    patcher = patch('scheduler._scheduler')
    mock_bg_sched_instance = patcher.start()
    yield mock_bg_sched_instance
    patcher.stop()


@pytest.fixture(autouse=True)
def fresh_engines():
    from engine import reset_engines
    reset_engines()
    yield
    reset_engines()


from app import app as flask_app


@pytest.fixture
def app():
    from copy import deepcopy
    old_config = deepcopy(flask_app.config)
    flask_app.config.update({
        "TESTING": True,
    })

    with flask_app.app_context():
        yield flask_app

    flask_app.config = old_config


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def temp_config(tmp_path):
    """Fixture to provide a temporary configuration file."""
    test_config_dir = tmp_path / "config"
    test_config_dir.mkdir()
    test_config_file = test_config_dir / "config.json"

    # Mock CONFIG_FILE in config module
    import config
    original_config_file = config.CONFIG_FILE
    original_config_dir = config.CONFIG_DIR

    config.CONFIG_FILE = str(test_config_file)
    config.CONFIG_DIR = str(test_config_dir)

    yield test_config_file

    # Restore original paths
    config.CONFIG_FILE = original_config_file
    config.CONFIG_DIR = original_config_dir


@pytest.fixture
def media(tmp_path):
    """A movie root with three titles and an empty tag root beside it."""
    movies = tmp_path / "movies"
    movies.mkdir()
    (movies / "A.mkv").write_bytes(b"a")
    (movies / "B.mkv").write_bytes(b"b")
    heat = movies / "Heat (1995)"
    heat.mkdir()
    (heat / "Heat.mkv").write_bytes(b"h")
    (heat / "poster.jpg").write_bytes(b"\xff\xd8\xff")
    tags = tmp_path / "tags"
    tags.mkdir()
    return os.path.realpath(movies), os.path.realpath(tags)


@pytest.fixture
def media_config(media):
    """Config dict pointing at the ``media`` fixture, no server configured."""
    import copy
    from config import DEFAULT_CONFIG
    movie_root, tag_root = media
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["movie_path"] = movie_root
    cfg["tag_path"] = tag_root
    return cfg
