"""
Main Sanic application server for salesguard.

Security middleware for the sales-assistant API: request signing, rate
limiting, egress control for third-party calls, response validation, and
security event monitoring.
"""

import logging
from sanic import Sanic, Request, HTTPResponse
from sanic.response import json as sanic_json
from salesguard.config import settings
from salesguard.routes.research import research_bp
from salesguard.routes.security import security_bp
from salesguard.middleware.monitoring import setup_monitoring_middleware
from salesguard.middleware.security import security_middleware


def create_app(name: str = "salesguard") -> Sanic:
    """Create and configure the Sanic application."""

    app = Sanic(name)

    # OpenAPI/Swagger metadata
    app.ext.openapi.title = "Salesguard API"
    app.ext.openapi.version = "v1"
    app.ext.openapi.description = (
        "Security layer for the sales-assistant API: signed requests, "
        "per-identity rate limits, allowlisted egress, validated AI responses "
        "and security event monitoring."
    )

    # CORS headers are stamped by the security middleware
    app.config.CORS = False
    app.config.REQUEST_TIMEOUT = settings.request_timeouts
    app.config.RESPONSE_TIMEOUT = settings.request_timeouts

    logging.basicConfig(level=getattr(logging, settings.log_level.upper()))

    app.blueprint(research_bp)
    app.blueprint(security_bp)

    # Monitoring first so preflights answered by the security middleware are tracked too
    setup_monitoring_middleware(app)
    security_middleware(app)

    @app.before_server_start
    async def setup_services(app_instance):
        """Initialize database and services on server start"""
        from salesguard.db.sqlite import initialize_database
        from salesguard.services.request_signer import get_request_signer
        from salesguard.services.rate_limiter import initialize_rate_limiter
        from salesguard.services.egress_guard import initialize_egress_guard
        from salesguard.services.security_monitor import initialize_security_monitor
        from salesguard.services.background_tasks import initialize_background_tasks

        await initialize_database()
        get_request_signer()
        await initialize_rate_limiter()
        await initialize_egress_guard()
        await initialize_security_monitor()
        await initialize_background_tasks()

    @app.before_server_stop
    async def cleanup_services(app_instance):
        """Clean up services on server shutdown"""
        from salesguard.db.sqlite import shutdown_database
        from salesguard.services.request_signer import reset_request_signer
        from salesguard.services.rate_limiter import shutdown_rate_limiter
        from salesguard.services.egress_guard import shutdown_egress_guard
        from salesguard.services.security_monitor import shutdown_security_monitor
        from salesguard.services.background_tasks import shutdown_background_tasks

        await shutdown_background_tasks()
        await shutdown_security_monitor()
        await shutdown_egress_guard()
        await shutdown_rate_limiter()
        reset_request_signer()
        await shutdown_database()

    @app.get("/health")
    async def health(request: Request) -> HTTPResponse:
        """
        Health check.

        Public endpoint used by load balancers and uptime monitors.

        Responses:
        - 200: JSON with `status`, `service`, `version`, `timestamp`.
        """
        from datetime import datetime, timezone
        return sanic_json({
            "status": "OK",
            "service": "salesguard",
            "version": "0.1.0",
            "timestamp": datetime.now(timezone.utc).isoformat()
        })

    # Error handlers are registered by the monitoring middleware

    return app


# Create app instance at module level for Sanic app loader
app = create_app()


def main():
    """Entry point for running the server."""
    bind_parts = settings.server_bind.split(":")
    host = bind_parts[0]
    port = int(bind_parts[1]) if len(bind_parts) > 1 else 8088

    is_debug = (settings.log_level.upper() == "DEBUG")
    app.run(
        host=host,
        port=port,
        debug=is_debug,
        auto_reload=False,
        single_process=True
    )


if __name__ == "__main__":
    main()
