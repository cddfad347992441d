from datetime import timedelta

import pytest
from run import create_app

@pytest.fixture
def api_client(tmp_path):
    """Flask test client on a fresh SQLite file, plus the injected service and token issuer."""
    app = create_app({"database": str(tmp_path / "api.sqlite"), "bcrypt_rounds": 4,
                      "jwt_secret": "test-secret", "logging_level": "WARNING"})
    app.testing = True
    with app.test_client() as client:
        yield client, app.config["SERVICE"], app.config["TOKENS"]

@pytest.fixture
def seeded(api_client):
    client, svc, tokens = api_client
    a = svc.create_anime("Mushishi", "mushishi", status="completed")
    for n in (1, 2):
        svc.create_episode(a.id, n, title=f"Ep {n}")
    user = svc.register("ginko", "g@x.com", "pw")
    return {"anime": a, "user": user, "token": tokens.issue(user.id)}

def _bearer(token):
    return {"Authorization": f"Bearer {token}"}

# ---------- auth states ----------
def test_optional_route_without_header_is_anonymous(api_client, seeded):
    client, _, _ = api_client
    resp = client.get("/api/anime/mushishi")
    assert resp.status_code == 200
    assert resp.get_json()["user_data"] == {"is_favorite": False, "rating": None}

def test_required_route_without_header_is_401(api_client, seeded):
    client, _, _ = api_client
    resp = client.post("/api/anime/favorite", json={"animeId": seeded["anime"].id, "action": "add"})
    assert resp.status_code == 401
    assert resp.get_json() == {"message": "Authentication required"}

def test_malformed_header_is_treated_as_missing(api_client, seeded):
    client, _, _ = api_client
    assert client.get("/api/anime/mushishi", headers={"Authorization": "Token abc"}).status_code == 200
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer "}).status_code == 401

@pytest.mark.parametrize("path", ["/api/anime/mushishi", "/api/anime/mushishi/episode/1", "/api/auth/me"])
def test_expired_token_is_401_on_optional_and_required(api_client, seeded, path):
    client, _, tokens = api_client
    expired = tokens.issue(seeded["user"].id, expires_delta=timedelta(seconds=-60))
    resp = client.get(path, headers=_bearer(expired))
    assert resp.status_code == 401
    assert resp.get_json()["message"] == "Invalid or expired token"

def test_garbage_token_is_401(api_client, seeded):
    client, _, _ = api_client
    resp = client.get("/api/anime/mushishi", headers=_bearer("not.a.jwt"))
    assert resp.status_code == 401

def test_token_for_deleted_user_is_401(api_client, seeded):
    client, svc, _ = api_client
    svc.repo.delete_user(seeded["user"].id)
    resp = client.get("/api/auth/verify", headers=_bearer(seeded["token"]))
    assert resp.status_code == 401
    assert resp.get_json()["message"] == "User not found"

def test_verify_and_me_hide_password(api_client, seeded):
    client, _, _ = api_client
    verify = client.get("/api/auth/verify", headers=_bearer(seeded["token"])).get_json()
    assert verify["valid"] is True
    assert verify["user"]["username"] == "ginko"
    assert "password" not in verify["user"]
    me = client.get("/api/auth/me", headers=_bearer(seeded["token"])).get_json()
    assert me["user"]["email"] == "g@x.com" and "password" not in me["user"]

def test_admin_routes_require_admin(api_client, seeded):
    client, svc, _ = api_client
    body = {"title": "New", "slug": "new"}
    assert client.post("/api/admin/anime", json=body).status_code == 401
    resp = client.post("/api/admin/anime", json=body, headers=_bearer(seeded["token"]))
    assert resp.status_code == 403
    assert resp.get_json()["message"] == "Admin access required"
    svc.grant_admin(seeded["user"].id)
    assert client.post("/api/admin/anime", json=body, headers=_bearer(seeded["token"])).status_code == 201

# ---------- catalog ----------
def test_list_shape_and_pagination(api_client, seeded):
    client, svc, _ = api_client
    for i in range(4):
        svc.create_anime(f"Extra {i}", f"extra-{i}")
    data = client.get("/api/anime/list?page=2&limit=2&sort=title&order=asc").get_json()
    assert data["pagination"] == {"page": 2, "limit": 2, "total": 5, "pages": 3}
    assert [a["title"] for a in data["animes"]] == ["Extra 2", "Extra 3"]

def test_list_ignores_non_numeric_query_values(api_client, seeded):
    client, _, _ = api_client
    data = client.get("/api/anime/list?page=abc&limit=&genre=x").get_json()
    assert data["pagination"]["page"] == 1
    assert data["pagination"]["limit"] == 20
    assert data["pagination"]["total"] == 1

def test_popular_and_latest(api_client, seeded):
    client, svc, _ = api_client
    svc.create_anime("Newer", "newer")
    assert [a["slug"] for a in client.get("/api/anime/latest?limit=1").get_json()["animes"]] == ["newer"]
    client.get("/api/anime/mushishi")
    assert client.get("/api/anime/popular").get_json()["animes"][0]["slug"] == "mushishi"

def test_episode_payload(api_client, seeded):
    client, _, _ = api_client
    data = client.get("/api/anime/mushishi/episode/1", headers=_bearer(seeded["token"])).get_json()
    assert set(data) == {"anime", "episode", "video_sources", "comments", "navigation", "user_data"}
    assert data["navigation"]["previous"] is None
    assert data["navigation"]["next"]["number"] == 2
    assert data["user_data"] == {"watch_progress": None}
    last = client.get("/api/anime/mushishi/episode/2").get_json()
    assert last["navigation"]["next"] is None

def test_unknown_slug_and_episode(api_client, seeded):
    client, _, _ = api_client
    assert client.get("/api/anime/nope").get_json() == {"message": "Anime not found"}
    resp = client.get("/api/anime/mushishi/episode/7")
    assert resp.status_code == 404 and resp.get_json()["message"] == "Episode not found"

# ---------- interactions ----------
def test_watch_progress_roundtrip(api_client, seeded):
    client, svc, _ = api_client
    ep = svc.repo.get_episode_by_number(seeded["anime"].id, 1)
    resp = client.post("/api/anime/watch-progress", json={"episodeId": ep.id, "progress": 321},
                       headers=_bearer(seeded["token"]))
    assert resp.status_code == 200
    data = client.get("/api/anime/mushishi/episode/1", headers=_bearer(seeded["token"])).get_json()
    assert data["user_data"]["watch_progress"] == 321
    watched = client.get("/api/users/watched", headers=_bearer(seeded["token"])).get_json()["animes"]
    assert [a["slug"] for a in watched] == ["mushishi"]

def test_favorite_add_twice_and_remove_missing(api_client, seeded):
    client, _, _ = api_client
    h = _bearer(seeded["token"])
    anime_id = seeded["anime"].id
    first = client.post("/api/anime/favorite", json={"animeId": anime_id, "action": "add"}, headers=h)
    second = client.post("/api/anime/favorite", json={"animeId": anime_id, "action": "add"}, headers=h)
    assert first.get_json()["success"] is True
    assert second.status_code == 200 and second.get_json()["success"] is False
    favs = client.get("/api/users/favorites", headers=h).get_json()["animes"]
    assert len(favs) == 1 and favs[0]["added_at"]
    client.post("/api/anime/favorite", json={"animeId": anime_id, "action": "remove"}, headers=h)
    again = client.post("/api/anime/favorite", json={"animeId": anime_id, "action": "remove"}, headers=h)
    assert again.status_code == 200
    assert again.get_json() == {"message": "Removed from favorites", "success": False}

def test_comment_created(api_client, seeded):
    client, svc, _ = api_client
    ep = svc.repo.get_episode_by_number(seeded["anime"].id, 2)
    resp = client.post("/api/anime/comment", json={"episodeId": ep.id, "text": "Quiet and eerie"},
                       headers=_bearer(seeded["token"]))
    assert resp.status_code == 201
    comment = resp.get_json()["comment"]
    assert comment["username"] == "ginko" and comment["episode_id"] == ep.id
    page = client.get("/api/anime/mushishi/episode/2").get_json()
    assert [c["text"] for c in page["comments"]] == ["Quiet and eerie"]

def test_anime_comments_listing(api_client, seeded):
    client, _, _ = api_client
    client.post("/api/anime/comment", json={"animeId": seeded["anime"].id, "text": "Classic"},
                headers=_bearer(seeded["token"]))
    data = client.get("/api/anime/mushishi/comments").get_json()
    assert [c["text"] for c in data["comments"]] == ["Classic"]

# ---------- users ----------
def test_profile_public_and_own(api_client, seeded):
    client, _, _ = api_client
    uid = seeded["user"].id
    public = client.get(f"/api/users/profile/{uid}").get_json()["user"]
    assert public["username"] == "ginko" and "password" not in public
    assert client.get("/api/users/profile/999").status_code == 404
    assert client.get("/api/users/profile").status_code == 401
    own = client.get("/api/users/profile", headers=_bearer(seeded["token"])).get_json()["user"]
    assert own["id"] == uid

def test_profile_update(api_client, seeded):
    client, svc, _ = api_client
    svc.register("taken", "t@x.com", "pw")
    h = _bearer(seeded["token"])
    clash = client.put("/api/users/profile", json={"username": "taken"}, headers=h)
    assert clash.status_code == 400 and clash.get_json()["message"] == "Username already taken"
    ok = client.put("/api/users/profile", json={"avatar": "g.png", "password": "pw2"}, headers=h)
    assert ok.status_code == 200 and ok.get_json()["user"]["avatar"] == "g.png"
    login = client.post("/api/auth/login", json={"email": "g@x.com", "password": "pw2"})
    assert login.status_code == 200

def test_search_is_case_insensitive_for_cyrillic(api_client, seeded):
    client, svc, _ = api_client
    svc.create_anime("Атака титанов", "ataka-titanov")
    data = client.get("/api/anime/list", query_string={"search": "АТАКА"}).get_json()
    assert [a["slug"] for a in data["animes"]] == ["ataka-titanov"]
    assert data["pagination"]["total"] == 1
