import os

from flask import Flask

from .config import Settings


def create_app():
    app = Flask(__name__)

    db_url = os.environ.get("DATABASE_URL")
    if not db_url:
        raise RuntimeError("DATABASE_URL is required; configure a PostgreSQL connection string.")

    settings = Settings.from_env()
    app.config["SERIES_SETTINGS"] = settings

    # Pool failures are not fatal; the datastore falls back to direct connects
    try:
        from . import datastore_pg as _pg
        from .config import env_int
        _pg.init_pool(minconn=env_int("DB_POOL_MIN", 1), maxconn=env_int("DB_POOL_MAX", 10))
    except Exception:  # pylint: disable=broad-except
        app.logger.exception("PostgreSQL pool initialization failed; continuing without pool")

    from . import routes
    app.register_blueprint(routes.bp)

    app.logger.info(
        "Race series service ready (ingest_concurrency=%s, standings_concurrency=%s, scoring_club=%s)",
        settings.ingest_concurrency,
        settings.standings_concurrency,
        settings.scoring_club or "all finishers",
    )
    return app


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    create_app().run(host='0.0.0.0', port=port)
