import json
import sqlite3

import pytest

import run
from anistream.repo import SqliteRepo
from anistream.security import PasswordHasher
from anistream.service import AnimeService
from scripts.init_db import DEMO_ANIMES, DEMO_EPISODES, seed

EXPECTED_TABLES = {
    "animes", "episodes", "video_sources", "genres", "anime_genres", "studios", "anime_studios",
    "users", "ratings", "favorites", "comments", "watched_episodes",
}

@pytest.fixture
def app(tmp_path):
    return run.create_app({"database": str(tmp_path / "structural.sqlite"), "bcrypt_rounds": 4,
                           "jwt_secret": "test-secret", "logging_level": "WARNING"})

def _rules(app):
    return {(r.rule, m) for r in app.url_map.iter_rules() for m in r.methods if m in ("GET", "POST", "PUT", "DELETE")}

def test_public_routes_registered(app):
    rules = _rules(app)
    for rule, method in [
        ("/api/anime/list", "GET"), ("/api/anime/popular", "GET"), ("/api/anime/latest", "GET"),
        ("/api/anime/<slug>", "GET"), ("/api/anime/<slug>/episode/<int:number>", "GET"),
        ("/api/anime/watch-progress", "POST"), ("/api/anime/favorite", "POST"),
        ("/api/anime/rate", "POST"), ("/api/anime/comment", "POST"),
        ("/api/auth/register", "POST"), ("/api/auth/login", "POST"),
        ("/api/auth/me", "GET"), ("/api/auth/verify", "GET"),
        ("/api/users/profile", "GET"), ("/api/users/profile", "PUT"),
        ("/api/users/watched", "GET"), ("/api/users/favorites", "GET"),
    ]:
        assert (rule, method) in rules, (rule, method)

def test_admin_routes_registered(app):
    admin = {rule for rule, _ in _rules(app) if rule.startswith("/api/admin/")}
    assert "/api/admin/anime" in admin
    assert "/api/admin/episodes/<int:episode_id>" in admin
    assert "/api/admin/sources/<int:source_id>" in admin

def test_create_app_injects_collaborators(app):
    assert isinstance(app.config["SERVICE"], AnimeService)
    assert app.config["TOKENS"].user_id(app.config["TOKENS"].issue(5)) == 5

def test_schema_creates_all_tables(tmp_path):
    db = str(tmp_path / "nested" / "dir" / "schema.sqlite")
    SqliteRepo(db).init_schema()
    con = sqlite3.connect(db)
    names = {row[0] for row in con.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    con.close()
    assert EXPECTED_TABLES <= names

def test_load_config_merges_file_and_env(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"port": 8080, "jwt_secret": "from-file"}), encoding="utf-8")
    monkeypatch.setenv("JWT_SECRET", "from-env")
    monkeypatch.delenv("DATABASE", raising=False)
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    conf = run.load_config(str(path))
    assert conf["port"] == 8080
    assert conf["jwt_secret"] == "from-env"
    assert conf["database"] == run.DEFAULT_CFG["database"]

def test_load_config_falls_back_on_bad_file(tmp_path, monkeypatch):
    for env in run.ENV_OVERRIDES:
        monkeypatch.delenv(env, raising=False)
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    assert run.load_config(str(path)) == run.DEFAULT_CFG
    assert run.load_config(str(tmp_path / "missing.json")) == run.DEFAULT_CFG

def test_seed_script_populates_catalog(tmp_path):
    repo = SqliteRepo(str(tmp_path / "seed.sqlite"))
    repo.init_schema()
    svc = AnimeService(repo, passwords=PasswordHasher(rounds=4))
    seed(svc)
    listing = svc.list_animes()
    assert listing["pagination"]["total"] == len(DEMO_ANIMES)
    assert all(a.episodes_count == DEMO_EPISODES for a in listing["animes"])
    admin = svc.authenticate("admin@example.com", "admin")
    assert admin.is_admin
