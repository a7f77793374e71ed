from __future__ import annotations

import logging

import click
from flask import Flask, jsonify

from tagihan.core.auth import auth_bp
from tagihan.core.config import Config
from tagihan.core.context import load_auth_context
from tagihan.core.errors import WorkflowError
from tagihan.core.extensions import db, login_manager, migrate
from tagihan.core.i18n import get_locale, translate
from tagihan.core.models import User, seed_demo_data
from tagihan.workflow import workflow_bp
from tagihan.workflow.collaborators import init_collaborators


def create_app(config_object: type[Config] | None = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_object or Config)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    init_collaborators(app)

    app.before_request(load_auth_context)

    app.register_blueprint(auth_bp)
    app.register_blueprint(workflow_bp)

    register_cli(app)
    register_error_handlers(app)
    return app


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(WorkflowError)
    def workflow_error(error: WorkflowError):
        body = error.to_dict()
        body["message"] = translate(error.message_key)
        body["lang"] = get_locale()
        return jsonify(body), error.http_status

    @app.errorhandler(401)
    def unauthorized(_error):
        return jsonify({"error": "Unauthorized", "message": translate("error.unauthorized")}), 401

    @app.errorhandler(403)
    def forbidden(_error):
        return jsonify({"error": "Forbidden", "message": translate("error.permission_denied")}), 403

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"error": "NotFound", "message": translate("error.not_found")}), 404


def register_cli(app: Flask) -> None:
    @app.cli.command("seed-demo")
    @click.option("--reset", is_flag=True, help="Delete existing data before seed.")
    def seed_demo(reset: bool) -> None:
        """Seed reference data and one demo user per role."""
        if reset:
            db.drop_all()
            db.create_all()
        if not User.query.first():
            seed_demo_data(db.session)
            click.echo("Demo data seeded.")
        else:
            click.echo("Seed skipped: existing users found.")


@login_manager.user_loader
def load_user(user_id: str) -> User | None:
    return db.session.get(User, int(user_id))


@login_manager.unauthorized_handler
def unauthorized_json():
    return jsonify({"error": "Unauthorized", "message": translate("error.unauthorized")}), 401
