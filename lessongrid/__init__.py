import logging
from datetime import date
from typing import Optional

import click
from flask import Flask
from flask.cli import with_appcontext

from config import Config, _normalise_prefix

from .extensions import db, migrate


def create_app(config_class: type[Config] = Config) -> Flask:
    app = Flask(__name__, static_folder=None)
    app.config.from_object(config_class)

    url_prefix = _normalise_prefix(app.config.get("URL_PREFIX", ""))
    app.config["URL_PREFIX"] = url_prefix

    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    if isinstance(level, int):
        app.logger.setLevel(level)

    db.init_app(app)
    migrate.init_app(app, db)

    from . import models  # noqa: F401  # Ensure models registered for migrations

    with app.app_context():
        db.create_all()

    from .api import init_api

    init_api(app)

    @app.cli.command("seed")
    @with_appcontext
    def seed() -> None:
        """Seed initial data for development."""
        from .seed import seed_data

        seed_data()
        click.echo("База заполнена тестовыми данными.")

    @app.cli.command("complete-elapsed")
    @click.option("--actor", default="system", show_default=True)
    @with_appcontext
    def complete_elapsed(actor: str) -> None:
        """Mark every scheduled session that has already ended as completed."""
        from .engine import get_engine

        completed = get_engine().manager.complete_elapsed(actor=actor)
        click.echo(f"Проведено занятий: {completed}.")

    @app.cli.command("materialize")
    @click.option("--from", "date_from", type=click.DateTime(formats=["%Y-%m-%d"]), required=True)
    @click.option("--to", "date_to", type=click.DateTime(formats=["%Y-%m-%d"]), required=True)
    @click.option("--template", "template_id", type=int, default=None)
    @with_appcontext
    def materialize(date_from, date_to, template_id: Optional[int]) -> None:
        """Store the template occurrences of a window as lesson sessions."""
        from .engine import get_engine
        from .errors import DomainError

        engine = get_engine()
        start: date = date_from.date()
        end: date = date_to.date()
        if template_id is not None:
            templates = [engine.expander.get_template(template_id)]
        else:
            from .store import SessionFilter

            templates = engine.expander.templates_for(
                SessionFilter(date_from=start, date_to=end)
            )
        created = 0
        for occurrence in engine.expander.occurrences_for(templates, start, end):
            if not occurrence.is_virtual:
                continue
            try:
                engine.manager.materialize(
                    occurrence.template_id, occurrence.lesson_date, actor="cli"
                )
            except DomainError as exc:
                app.logger.warning(
                    "Skipped %s: %s", occurrence.key, exc.message
                )
                continue
            created += 1
        click.echo(f"Создано занятий: {created}.")

    return app


__all__ = ["create_app", "db"]
