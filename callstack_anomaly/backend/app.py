"""Flask application factory for the call-stack anomaly backend."""

from __future__ import annotations

from flask import Flask, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from callstack_anomaly.backend.routes.api import api_bp
from callstack_anomaly.common.logging_setup import configure_logging


def create_app() -> Flask:
    configure_logging()

    app = Flask(__name__)
    app.register_blueprint(api_bp, url_prefix="/api")

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)

    return app


if __name__ == "__main__":  # pragma: no cover
    app = create_app()
    app.run(host="0.0.0.0", port=8000, debug=True)
