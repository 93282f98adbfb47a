"""Shared Flask extensions for the journey and guide blueprints."""

from flask_sqlalchemy import SQLAlchemy

# Bound to the app in create_app() so services and models can import `db`.
db = SQLAlchemy()
