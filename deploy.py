import os
import psycopg2
from app import create_app
from flask_migrate import upgrade
from services.store import CLAIM_LISTING_FUNCTION_SQL

app = create_app()

INDEXES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_food_listings_status_locked ON food_listings (status, is_locked);",
    "CREATE INDEX IF NOT EXISTS idx_ngo_claims_listing_status ON ngo_claims (listing_id, status);",
]


def install_claim_procedure(db_url):
    """Create or replace the atomic claim_listing function and its indexes."""
    if db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql://", 1)

    conn = psycopg2.connect(db_url)
    conn.autocommit = True
    try:
        with conn.cursor() as cur:
            cur.execute(CLAIM_LISTING_FUNCTION_SQL)
            for statement in INDEXES_SQL:
                cur.execute(statement)
    finally:
        conn.close()


def deploy():
    """
    PRODUCTION DEPLOY SCRIPT
    1. Upgrades DB Schema (Safe migration)
    2. Installs the claim_listing procedure (PostgreSQL only)
    """
    with app.app_context():
        app.logger.info("1. Applying database migrations...")
        # This is the Python equivalent of running 'flask db upgrade'
        upgrade()
        app.logger.info("Database schema is up to date.")

    db_url = os.getenv('DATABASE_URL')
    if not db_url or not db_url.startswith(("postgres://", "postgresql://")):
        app.logger.warning("2. DATABASE_URL is not PostgreSQL; claims will use the in-transaction path.")
        return

    app.logger.info("2. Installing claim_listing procedure...")
    try:
        install_claim_procedure(db_url)
    except psycopg2.Error as e:
        # Claims keep working through the fallback, without concurrency safety
        app.logger.error("Could not install claim_listing: %s", e)
        return
    app.logger.info("claim_listing procedure installed.")


if __name__ == "__main__":
    deploy()
