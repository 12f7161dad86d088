#!/usr/bin/env python3
"""
Run script for the salesguard server.
"""

from salesguard.server import app
from salesguard.config import settings

if __name__ == "__main__":
    # Parse bind address
    bind_parts = settings.server_bind.split(":")
    host = bind_parts[0]
    port = int(bind_parts[1]) if len(bind_parts) > 1 else 8088

    is_debug = (settings.log_level.upper() == "DEBUG")
    workers = max(1, settings.server_workers)
    if is_debug:
        workers = 1

    # Rate limit counters live in process memory; each worker keeps its own
    app.run(
        host=host,
        port=port,
        debug=is_debug,
        workers=workers,
        auto_reload=settings.auto_reload,
        access_log=is_debug,
    )
