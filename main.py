import json
import logging
import sys

logging.getLogger().handlers.clear()
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
)

if __name__ == "__main__":
    # Run one heartbeat cycle, for cron-style triggers without the HTTP server
    import dataflows  # noqa: F401
    from dataflows.exceptions import ClaimError
    from heartbeat_server.conf import load_settings
    from heartbeat_server.db.engine import configure_engine
    from heartbeat_server.services.dispatcher import run_cycle

    settings = load_settings()
    configure_engine(settings.database_url)
    try:
        report = run_cycle(max_workers=settings.max_workers, claim_ttl_seconds=settings.claim_ttl_seconds)
    except ClaimError as e:
        logging.error("Heartbeat cycle failed: %s", e)
        print(json.dumps({"error": e.message}))
        sys.exit(1)
    print(json.dumps(report.to_dict()))
