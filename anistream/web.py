# anistream/web.py
import logging
from dataclasses import fields
from typing import Optional

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.routing import IntegerConverter

from anistream.auth import AuthContext, admin_required, auth_optional, auth_required
from anistream.models import AnimeUpdate, EpisodeUpdate, SQLITE_MAX_INTEGER
from anistream.security import TokenIssuer
from anistream.service import (
    AnimeService, AuthError, ForbiddenError, NotFoundError, ValidationError,
)

logger = logging.getLogger(__name__)

anime_bp = Blueprint("anime", __name__, url_prefix="/api/anime")
auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")
users_bp = Blueprint("users", __name__, url_prefix="/api/users")
admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")

BLUEPRINTS = (anime_bp, auth_bp, users_bp, admin_bp)


class RowIdConverter(IntegerConverter):
    """``<int:...>`` limited to what sqlite can bind; larger values do not match the route."""

    def __init__(self, map, *args, **kwargs):
        kwargs.setdefault("max", SQLITE_MAX_INTEGER)
        super().__init__(map, *args, **kwargs)


def register_routes(app, service: AnimeService, tokens: TokenIssuer):
    """
    Register the API blueprints and ensure SERVICE/TOKENS are in app.config.
    Call this once during app creation (run.create_app does this).
    """
    app.config.setdefault("SERVICE", service)
    app.config.setdefault("TOKENS", tokens)
    app.url_map.converters["int"] = RowIdConverter
    for bp in BLUEPRINTS:
        app.register_blueprint(bp)

    @app.after_request
    def log_request(response):
        logger.debug("%s %s -> %s", request.method, request.path, response.status_code)
        return response

    logger.debug("Registered %d blueprints and injected SERVICE/TOKENS", len(BLUEPRINTS))


def _message(text: str, status: int):
    return jsonify({"message": text}), status


def register_error_handlers(app):
    """Map the service exceptions onto status codes with a JSON body."""
    @app.errorhandler(ValidationError)
    def handle_validation_error(e):
        logger.warning("ValidationError: %s", e)
        return _message(str(e), 400)

    @app.errorhandler(AuthError)
    def handle_auth_error(e):
        logger.info("AuthError on %s: %s", request.path, e)
        return _message(str(e), 401)

    @app.errorhandler(ForbiddenError)
    def handle_forbidden(e):
        return _message(str(e), 403)

    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        logger.info("NotFoundError: %s", e)
        return _message(str(e), 404)

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        if e.code == 404:
            return _message("Route not found", 404)
        return _message(e.description or e.name, e.code)

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return _message("Internal server error", 500)


# helpers to get injected collaborators
def current_service() -> AnimeService:
    return current_app.config["SERVICE"]


def current_tokens() -> TokenIssuer:
    return current_app.config["TOKENS"]


def _int_arg(name: str, default: Optional[int]) -> Optional[int]:
    raw = request.args.get(name, "")
    try:
        return int(raw)
    except ValueError:
        return default


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    return body


def _update_from(body: dict, update_cls):
    names = {f.name for f in fields(update_cls)}
    return update_cls(**{k: v for k, v in body.items() if k in names})


# -----------------------
# Catalog
# -----------------------
@anime_bp.route("/list")
def anime_list():
    return jsonify(current_service().list_animes(
        page=_int_arg("page", 1),
        limit=_int_arg("limit", 20),
        sort=request.args.get("sort") or "title",
        order=request.args.get("order") or "ASC",
        genre=_int_arg("genre", None),
        search=request.args.get("search") or None,
    ))


@anime_bp.route("/popular")
def anime_popular():
    return jsonify({"animes": current_service().popular_animes(_int_arg("limit", 10))})


@anime_bp.route("/latest")
def anime_latest():
    return jsonify({"animes": current_service().latest_animes(_int_arg("limit", 10))})


@anime_bp.route("/genres")
def genre_list():
    return jsonify({"genres": current_service().list_genres()})


@anime_bp.route("/studios")
def studio_list():
    return jsonify({"studios": current_service().list_studios()})


@anime_bp.route("/<slug>")
@auth_optional
def anime_details(slug: str, auth: AuthContext):
    return jsonify(current_service().anime_details(slug, user_id=auth.user_id))


@anime_bp.route("/<slug>/episode/<int:number>")
@auth_optional
def anime_episode(slug: str, number: int, auth: AuthContext):
    return jsonify(current_service().episode_page(slug, number, user_id=auth.user_id))


@anime_bp.route("/<slug>/comments")
def anime_comment_list(slug: str):
    return jsonify({"comments": current_service().anime_comments(slug)})


# -----------------------
# Viewer interactions
# -----------------------
@anime_bp.route("/watch-progress", methods=["POST"])
@auth_required
def save_watch_progress(auth: AuthContext):
    body = _json_body()
    current_service().record_progress(auth.user_id, body.get("episodeId"), body.get("progress"))
    return jsonify({"message": "Progress saved successfully"})


@anime_bp.route("/favorite", methods=["POST"])
@auth_required
def toggle_favorite(auth: AuthContext):
    body = _json_body()
    message, success = current_service().toggle_favorite(auth.user_id, body.get("animeId"), body.get("action"))
    return jsonify({"message": message, "success": success})


@anime_bp.route("/rate", methods=["POST"])
@auth_required
def rate_anime(auth: AuthContext):
    body = _json_body()
    new_rating = current_service().rate_anime(auth.user_id, body.get("animeId"), body.get("score"))
    return jsonify({"message": "Rating saved successfully", "new_rating": new_rating})


@anime_bp.route("/comment", methods=["POST"])
@auth_required
def add_comment(auth: AuthContext):
    body = _json_body()
    comment = current_service().add_comment(auth.user_id, body.get("text"), anime_id=body.get("animeId"),
                                            episode_id=body.get("episodeId"), parent_id=body.get("parentId"))
    return jsonify({"message": "Comment added successfully", "comment": comment}), 201


# -----------------------
# Auth
# -----------------------
@auth_bp.route("/register", methods=["POST"])
def register():
    body = _json_body()
    user = current_service().register(body.get("username"), body.get("email"), body.get("password"))
    return jsonify({"message": "User registered successfully", "user": user.public(),
                    "token": current_tokens().issue(user.id)}), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    body = _json_body()
    user = current_service().authenticate(body.get("email"), body.get("password"))
    return jsonify({"message": "Login successful", "user": user.public(),
                    "token": current_tokens().issue(user.id)})


@auth_bp.route("/me")
@auth_required
def me(auth: AuthContext):
    return jsonify({"user": current_service().get_user(auth.user_id).public()})


@auth_bp.route("/verify")
@auth_required
def verify(auth: AuthContext):
    return jsonify({"valid": True, "user": auth.user.public()})


# -----------------------
# Users
# -----------------------
@users_bp.route("/profile")
@auth_required
def own_profile(auth: AuthContext):
    return jsonify({"user": auth.user.public()})


@users_bp.route("/profile/<int:user_id>")
def profile(user_id: int):
    return jsonify({"user": current_service().get_user(user_id).public()})


@users_bp.route("/profile", methods=["PUT"])
@auth_required
def update_profile(auth: AuthContext):
    body = _json_body()
    user = current_service().update_profile(auth.user_id, username=body.get("username"), email=body.get("email"),
                                            password=body.get("password"), avatar=body.get("avatar"))
    return jsonify({"message": "Profile updated successfully", "user": user.public()})


@users_bp.route("/watched")
@auth_required
def watched(auth: AuthContext):
    return jsonify({"animes": current_service().watched_animes(auth.user_id)})


@users_bp.route("/favorites")
@auth_required
def favorites(auth: AuthContext):
    return jsonify({"animes": current_service().favorite_animes(auth.user_id)})


# -----------------------
# Admin: catalog management
# -----------------------
@admin_bp.route("/anime", methods=["POST"])
@admin_required
def admin_create_anime(auth: AuthContext):
    body = _json_body()
    anime = current_service().create_anime(
        title=body.get("title"), slug=body.get("slug"),
        status=body.get("status", "announced"), type=body.get("type", "tv"),
        original_title=body.get("original_title"), description=body.get("description"),
        release_year=body.get("release_year"), poster=body.get("poster"))
    return jsonify({"message": "Anime created successfully", "anime": anime}), 201


@admin_bp.route("/anime/<int:anime_id>", methods=["PUT"])
@admin_required
def admin_update_anime(anime_id: int, auth: AuthContext):
    body = _json_body()
    if "slug" in body:
        raise ValidationError("slug cannot be changed")
    anime = current_service().update_anime(anime_id, _update_from(body, AnimeUpdate))
    return jsonify({"message": "Anime updated successfully", "anime": anime})


@admin_bp.route("/anime/<int:anime_id>", methods=["DELETE"])
@admin_required
def admin_delete_anime(anime_id: int, auth: AuthContext):
    current_service().delete_anime(anime_id)
    return jsonify({"message": "Anime deleted successfully"})


@admin_bp.route("/anime/<int:anime_id>/genres", methods=["PUT"])
@admin_required
def admin_set_genres(anime_id: int, auth: AuthContext):
    ids = _json_body().get("genre_ids") or []
    if not isinstance(ids, list):
        raise ValidationError("genre_ids must be a list")
    return jsonify({"genres": current_service().set_anime_genres(anime_id, ids)})


@admin_bp.route("/anime/<int:anime_id>/studios", methods=["PUT"])
@admin_required
def admin_set_studios(anime_id: int, auth: AuthContext):
    ids = _json_body().get("studio_ids") or []
    if not isinstance(ids, list):
        raise ValidationError("studio_ids must be a list")
    return jsonify({"studios": current_service().set_anime_studios(anime_id, ids)})


@admin_bp.route("/genres", methods=["POST"])
@admin_required
def admin_create_genre(auth: AuthContext):
    body = _json_body()
    genre = current_service().create_genre(body.get("name"), body.get("description"))
    return jsonify({"genre": genre}), 201


@admin_bp.route("/studios", methods=["POST"])
@admin_required
def admin_create_studio(auth: AuthContext):
    body = _json_body()
    studio = current_service().create_studio(body.get("name"), body.get("description"))
    return jsonify({"studio": studio}), 201


@admin_bp.route("/episodes", methods=["POST"])
@admin_required
def admin_create_episode(auth: AuthContext):
    body = _json_body()
    episode = current_service().create_episode(
        body.get("anime_id"), body.get("number"), title=body.get("title"),
        description=body.get("description"), duration=body.get("duration"),
        thumbnail=body.get("thumbnail"), release_date=body.get("release_date"))
    return jsonify({"message": "Episode created successfully", "episode": episode}), 201


@admin_bp.route("/episodes/<int:episode_id>", methods=["PUT"])
@admin_required
def admin_update_episode(episode_id: int, auth: AuthContext):
    episode = current_service().update_episode(episode_id, _update_from(_json_body(), EpisodeUpdate))
    return jsonify({"message": "Episode updated successfully", "episode": episode})


@admin_bp.route("/episodes/<int:episode_id>", methods=["DELETE"])
@admin_required
def admin_delete_episode(episode_id: int, auth: AuthContext):
    current_service().delete_episode(episode_id)
    return jsonify({"message": "Episode deleted successfully"})


@admin_bp.route("/episodes/<int:episode_id>/sources", methods=["POST"])
@admin_required
def admin_add_source(episode_id: int, auth: AuthContext):
    body = _json_body()
    src = current_service().add_video_source(
        episode_id, body.get("quality"), body.get("type"), body.get("language"),
        body.get("source_url"), body.get("source_type", "video"))
    return jsonify({"video_source": src}), 201


@admin_bp.route("/sources/<int:source_id>", methods=["DELETE"])
@admin_required
def admin_delete_source(source_id: int, auth: AuthContext):
    current_service().delete_video_source(source_id)
    return jsonify({"message": "Video source deleted successfully"})
