"""
Startup diagnostics. Runs once when the Flask app starts.

Checks the database and the stage catalog and logs a summary banner.
"""

import logging
import sys

from flask import Flask

from coffee_processing.models import db

logger = logging.getLogger(__name__)


def run_startup_diagnostics(app: Flask):
    """Run diagnostic checks during app startup (inside app context)."""
    if app.config.get("TESTING"):
        return  # skip during tests for speed

    issues: list[str] = []

    with app.app_context():
        # ── Python version ───────────────────────────────────────────
        py = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"

        # ── Database connectivity ────────────────────────────────────
        db_status = "ok"
        db_uri = str(app.config.get("SQLALCHEMY_DATABASE_URI", ""))
        db_type = "PostgreSQL" if "postgresql" in db_uri else "SQLite" if "sqlite" in db_uri else "unknown"
        try:
            db.session.execute(db.text("SELECT 1"))
        except Exception as exc:
            db_status = "FAILED"
            issues.append(f"Database unreachable: {exc}")

        # ── Stage catalog ────────────────────────────────────────────
        method_count = "?"
        if db_status == "ok":
            try:
                method_count = db.session.execute(
                    db.text("SELECT COUNT(*) FROM processing_methods")
                ).scalar()
                if not method_count:
                    issues.append("No processing methods defined; batches cannot be created yet")
            except Exception as exc:
                issues.append(f"Stage catalog not readable: {exc}")
            finally:
                db.session.rollback()

        cache = "enabled" if app.config.get("RECONCILE_CACHE_ENABLED", True) else "disabled"

        # ── Banner ───────────────────────────────────────────────────
        banner = f"""
╔══════════════════════════════════════════════════════════════╗
║  Coffee Processing Core - Startup Diagnostics               ║
╠══════════════════════════════════════════════════════════════╣
║  Python      : {py:<46s}║
║  Debug       : {str(app.debug):<46s}║
║  Database    : {f'{db_type} ({db_status})':<46s}║
║  Methods     : {str(method_count):<46s}║
║  Retry memo  : {cache:<46s}║
╚══════════════════════════════════════════════════════════════╝"""
        logger.info(banner)

        if issues:
            logger.warning("Startup issues detected:")
            for issue in issues:
                logger.warning("  ⚠ %s", issue)
        else:
            logger.info("✅ All startup checks passed")
