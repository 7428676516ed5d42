import os
import pytest
from unittest.mock import patch, MagicMock
from config import save_config
from inventory import movie_id_for


@pytest.fixture
def configured(temp_config, media_config):
    save_config(media_config)
    return media_config


def _id(media, name):
    movie_root, _ = media
    return movie_id_for(os.path.join(movie_root, name))


def test_get_config(client, temp_config):
    response = client.get('/api/config')
    assert response.status_code == 200
    data = response.get_json()
    assert "jellyfin_url" in data

def test_update_config(client, temp_config):
    new_cfg = {"jellyfin_url": "http://new-url", "api_key": "new-key"}
    response = client.post('/api/config', json=new_cfg)
    assert response.status_code == 200
    assert response.get_json()["config"]["jellyfin_url"] == "http://new-url"

    # Verify it was saved
    response = client.get('/api/config')
    data = response.get_json()
    assert data["jellyfin_url"] == "http://new-url"

def test_update_config_non_dict(client, temp_config):
    response = client.post('/api/config', data="not json", content_type='application/json')
    assert response.status_code == 400

@patch('routes.update_scheduler_jobs')
def test_update_config_scheduler_fail(mock_sched, client, temp_config):
    mock_sched.side_effect = ValueError("Fail")
    response = client.post('/api/config', json={"jellyfin_url": "http://jf"})
    assert response.status_code == 200 # Should not fail the whole request
    assert response.get_json()["status"] == "success"

@patch('routes.requests.get')
def test_test_server_success(mock_get, client):
    mock_response = MagicMock()
    mock_response.status_code = 200
    mock_get.return_value = mock_response

    response = client.post('/api/test-server', json={"jellyfin_url": "http://test", "api_key": "key"})
    assert response.status_code == 200
    assert "successfully" in response.get_json()["message"]

@patch('routes.requests.get')
def test_test_server_failure(mock_get, client):
    mock_response = MagicMock()
    mock_response.status_code = 401
    mock_get.return_value = mock_response

    response = client.post('/api/test-server', json={"jellyfin_url": "http://test", "api_key": "wrong"})
    assert response.status_code == 400
    assert response.get_json()["status"] == "error"

def test_test_server_missing_fields(client):
    response = client.post('/api/test-server', json={"jellyfin_url": "http://test"})
    assert response.status_code == 400

def test_movies_unconfigured(client, temp_config):
    response = client.get('/api/movies')
    assert response.status_code == 400
    assert response.get_json()["status"] == "error"

def test_list_movies(client, configured):
    response = client.get('/api/movies')
    assert response.status_code == 200
    data = response.get_json()
    assert data["total"] == 3
    assert data["per_page"] == 25
    assert [m["name"] for m in data["movies"]] == ["A.mkv", "B.mkv", "Heat (1995)"]
    assert data["movies"][2]["has_poster"] is True

def test_list_movies_paging(client, configured):
    response = client.get('/api/movies?page=2&per_page=2')
    data = response.get_json()
    assert data["page"] == 2
    assert data["last_page"] == 2
    assert [m["name"] for m in data["movies"]] == ["Heat (1995)"]

    # Out of range values are clamped
    data = client.get('/api/movies?page=99&per_page=1000').get_json()
    assert data["per_page"] == 100
    assert data["page"] == 1

def test_get_movie(client, configured, media):
    response = client.get(f'/api/movies/{_id(media, "A.mkv")}')
    assert response.status_code == 200
    assert response.get_json()["name"] == "A.mkv"

    assert client.get('/api/movies/deadbeef').status_code == 404

def test_movie_poster(client, configured, media):
    response = client.get(f'/api/movies/{_id(media, "Heat (1995)")}/poster.jpg')
    assert response.status_code == 200
    assert response.mimetype == "image/jpeg"
    assert response.data == b"\xff\xd8\xff"
    response.close()

    response = client.get(f'/api/movies/{_id(media, "A.mkv")}/poster.jpg')
    assert response.status_code == 404

def test_toggle_tag(client, configured, media):
    _, tag_root = media
    movie_id = _id(media, "A.mkv")

    response = client.post(f'/api/movies/{movie_id}/tags/Favorites')
    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "success"
    assert data["movie"]["tags"] == ["Favorites"]
    assert os.path.islink(os.path.join(tag_root, "Favorites", "A.mkv"))

    tags = client.get('/api/tags').get_json()["tags"]
    assert tags == [{"name": "Favorites", "movies": 1}]

    response = client.post(f'/api/movies/{movie_id}/tags/Favorites')
    assert response.get_json()["movie"]["tags"] == []
    assert not os.path.exists(os.path.join(tag_root, "Favorites"))

def test_toggle_invalid_tag(client, configured, media):
    response = client.post(f'/api/movies/{_id(media, "A.mkv")}/tags/.hidden')
    assert response.status_code == 400

def test_toggle_unknown_movie(client, configured):
    response = client.post('/api/movies/deadbeef/tags/Favorites')
    assert response.status_code == 404

def test_reconcile_snapshot(client, configured, media):
    _, tag_root = media
    response = client.post('/api/reconcile', json={
        "assignments": {
            "Favorites": [_id(media, "A.mkv"), _id(media, "B.mkv")],
            "Kids": [_id(media, "B.mkv")],
        }
    })
    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "success"
    assert len(data["links"]["created"]) == 3
    assert data["links"]["live_tags"] == ["Favorites", "Kids"]
    assert sorted(os.listdir(tag_root)) == ["Favorites", "Kids"]

def test_reconcile_unknown_movie(client, configured):
    response = client.post('/api/reconcile', json={"assignments": {"T": ["deadbeef"]}})
    assert response.status_code == 400
    assert "deadbeef" in response.get_json()["message"]

def test_reconcile_without_body(client, configured):
    response = client.post('/api/reconcile')
    assert response.status_code == 200
    assert response.get_json()["status"] == "success"

def test_reload(client, configured, media):
    movie_root, tag_root = media
    os.mkdir(os.path.join(tag_root, "Kids"))
    os.symlink(os.path.join(movie_root, "B.mkv"), os.path.join(tag_root, "Kids", "B.mkv"))

    response = client.post('/api/reload')
    assert response.status_code == 200
    assert response.get_json()["assignments"] == 1
    assert client.get('/api/tags').get_json()["tags"] == [{"name": "Kids", "movies": 1}]

@patch('engine.TagEngine.reload', return_value=7)
def test_reload_goes_through_engine(mock_reload, client, configured):
    response = client.post('/api/reload')
    assert response.get_json()["assignments"] == 7
    mock_reload.assert_called_once()

def test_cleanup(client, configured, media):
    _, tag_root = media
    os.mkdir(os.path.join(tag_root, "T"))
    os.symlink("/nonexistent/movie.mkv", os.path.join(tag_root, "T", "movie.mkv"))
    response = client.post('/api/cleanup')
    assert response.status_code == 200
    assert response.get_json()["deleted"] == 1

def test_users_unconfigured(client, temp_config):
    response = client.get('/api/users')
    assert response.status_code == 400

def test_users(client, temp_config, virtual_jellyfin):
    save_config({"jellyfin_url": virtual_jellyfin, "api_key": "test_key", "account": "kid"})
    response = client.get('/api/users')
    assert response.status_code == 200
    users = {u["name"]: u for u in response.get_json()["users"]}
    assert users["Admin"]["libraries"] == ["Movies", "TV Shows"]
    assert users["kid"]["libraries"] == ["Movies"]
    assert users["kid"]["is_managed"] is True
    assert users["Admin"]["is_managed"] is False

def test_users_bad_key(client, temp_config, virtual_jellyfin):
    save_config({"jellyfin_url": virtual_jellyfin, "api_key": "BAD_KEY", "account": "kid"})
    response = client.get('/api/users')
    assert response.status_code == 502

def test_toggle_grants_library(client, temp_config, media_config, media, virtual_jellyfin):
    from tests.virtual_jellyfin import data

    media_config.update({
        "jellyfin_url": virtual_jellyfin,
        "api_key": "test_key",
        "account": "kid",
        "auto_create_libraries": True,
        "tag_path_in_jellyfin": "/jf/tags",
    })
    save_config(media_config)

    response = client.post(f'/api/movies/{_id(media, "A.mkv")}/tags/Favorites')
    assert response.status_code == 200
    report = response.get_json()
    assert report["status"] == "success"
    assert [c["tag"] for c in report["grants"]["created_libraries"]] == ["Favorites"]

    favorites = next(lib for lib in data["libraries"] if lib["Name"] == "Favorites")
    assert favorites["Locations"] == ["/jf/tags/Favorites"]
    kid = next(u for u in data["users"] if u["Id"] == "kid_id")
    assert set(kid["Policy"]["EnabledFolders"]) == {"movies_id", favorites["ItemId"]}

    # Untagging revokes the grant but leaves the unrelated Movies library alone
    response = client.post(f'/api/movies/{_id(media, "A.mkv")}/tags/Favorites')
    assert response.get_json()["grants"]["revoked"][0]["tag"] == "Favorites"
    assert kid_folders(data) == ["movies_id"]


def kid_folders(data):
    kid = next(u for u in data["users"] if u["Id"] == "kid_id")
    return kid["Policy"]["EnabledFolders"]
