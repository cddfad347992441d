import json
import os
import logging
from typing import Optional

from flask import Flask

from anistream.repo import SqliteRepo
from anistream.security import PasswordHasher, TokenIssuer
from anistream.service import AnimeService
from anistream.web import register_routes, register_error_handlers

DEFAULT_CFG = {
    "database": "data/anistream.db",
    "debug": True,
    "host": "127.0.0.1",
    "port": 5000,
    "logging_level": "INFO",
    "jwt_secret": "dev-jwt-secret-change-me",
    "jwt_expires_days": 7,
    "bcrypt_rounds": 12,
}

# environment variables that win over config.json
ENV_OVERRIDES = {
    "DATABASE": "database",
    "JWT_SECRET": "jwt_secret",
    "LOG_LEVEL": "logging_level",
}


def load_config(path="config.json"):
    merged = DEFAULT_CFG.copy()
    if not os.path.exists(path):
        print("config.json not found, using defaults")
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                merged.update(json.load(f))
        except (OSError, ValueError) as e:
            print("Failed to read config.json:", e, ", using defaults")
    for env, key in ENV_OVERRIDES.items():
        if os.environ.get(env):
            merged[key] = os.environ[env]
    return merged


cfg = load_config()


def configure_logging(level_name: str, debug: bool = False):
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # quieter werkzeug when not debugging
    logging.getLogger("werkzeug").setLevel(logging.INFO if debug else logging.WARNING)


def create_app(overrides: Optional[dict] = None):
    """
    Build the Flask app. ``overrides`` is merged over the loaded config
    (tests use it to point at a temporary database).
    """
    conf = dict(cfg, **(overrides or {}))
    configure_logging(conf.get("logging_level", "INFO"), bool(conf.get("debug")))
    logger = logging.getLogger(__name__)
    logger.info("Starting app with config: %s",
                {k: v for k, v in conf.items() if k not in ("database", "jwt_secret")})

    app = Flask(__name__)
    app.secret_key = os.environ.get("SECRET_KEY", "dev-key")
    app.json.sort_keys = False

    repo = SqliteRepo(conf["database"])
    repo.init_schema()
    service = AnimeService(repo, passwords=PasswordHasher(rounds=int(conf["bcrypt_rounds"])))
    tokens = TokenIssuer(conf["jwt_secret"], expires_days=float(conf["jwt_expires_days"]))
    app.config["SERVICE"] = service
    app.config["TOKENS"] = tokens

    register_routes(app, service, tokens)
    register_error_handlers(app)
    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host=cfg.get("host", "127.0.0.1"), port=cfg.get("port", 5000), debug=cfg.get("debug", True))
