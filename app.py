import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from flask import Flask, jsonify

from extensions import db
from guide import guide_bp
from journey import journey_bp

# ====== Feature toggles ======
def _env_flag(name: str, default: bool) -> bool:
    """Parse truthy feature-toggle values from the environment."""
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


USE_SUPABASE = _env_flag("USE_SUPABASE", True)  # ✅ Supabase for trips/discoveries/stats
USE_JOURNEY = _env_flag("USE_JOURNEY", True)  # 🧭 Toggle journey endpoints

# Try to import Supabase client
try:
    from supabase import create_client, Client  # type: ignore
except Exception:
    create_client, Client = None, None


def _init_supabase(app: Flask):
    if not app.config.get("USE_SUPABASE"):
        return None
    url = app.config.get("SUPABASE_URL")
    key = app.config.get("SUPABASE_KEY")
    if not (create_client and url and key):
        app.logger.warning("⚠️ Supabase enabled but not configured; falling back to the local database")
        return None
    try:
        return create_client(url, key)
    except Exception as exc:
        app.logger.warning("⚠️ Could not init Supabase client: %s", exc)
        return None


def create_app(config: Optional[dict[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    app.secret_key = os.environ.get("SECRET_KEY") or os.urandom(24)
    app.permanent_session_lifetime = timedelta(days=365)

    data_dir = Path(app.root_path) / "data"
    app.config.setdefault("USE_SUPABASE", USE_SUPABASE)
    app.config.setdefault("USE_JOURNEY", USE_JOURNEY)
    app.config.setdefault("SUPABASE_URL", os.environ.get("SUPABASE_URL"))
    app.config.setdefault("SUPABASE_KEY", os.environ.get("SUPABASE_KEY"))
    app.config.setdefault("GEMINI_API_KEY", os.environ.get("GEMINI_API_KEY"))
    app.config.setdefault("GEMINI_MODEL", os.environ.get("GEMINI_MODEL", "gemini-2.0-flash"))
    app.config.setdefault("JOURNEY_SECRETS_PATH", os.environ.get("JOURNEY_SECRETS_PATH"))
    app.config.setdefault(
        "SQLALCHEMY_DATABASE_URI",
        os.environ.get("DATABASE_URL") or f"sqlite:///{data_dir / 'journey.db'}",
    )
    app.config.setdefault("SQLALCHEMY_TRACK_MODIFICATIONS", False)
    if config:
        app.config.update(config)

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
        data_dir.mkdir(parents=True, exist_ok=True)

    if "SUPABASE_CLIENT" not in app.config:
        app.config["SUPABASE_CLIENT"] = _init_supabase(app)

    db.init_app(app)
    app.register_blueprint(journey_bp)
    app.register_blueprint(guide_bp)

    @app.errorhandler(404)
    def not_found(err):
        return jsonify({"error": "not_found"}), 404

    @app.errorhandler(500)
    def server_error(err):
        return jsonify({"error": "server_error"}), 500

    @app.get("/health")
    def health():
        return jsonify({"status": "ok"})

    with app.app_context():
        # models must be imported before create_all sees their tables
        import models  # noqa: F401

        db.create_all()

    return app


if __name__ == "__main__":
    create_app().run(debug=_env_flag("FLASK_DEBUG", False))
