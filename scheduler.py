from flask import current_app
from extensions import scheduler
from services.maintenance import audit_stuck_listings, expire_stale_listings


# ==========================================
#  TASK 1: AUTO-EXPIRE LISTINGS
# ==========================================
# Runs every hour (at minute 0)
@scheduler.task('cron', id='expire_listings', minute=0)
def expire_listings_job():
    """
    Listings past their expiry_time stop being claimable and drop out of
    every NGO's feed.
    """
    # We must use scheduler.app.app_context() because this runs in the background
    with scheduler.app.app_context():
        expire_stale_listings(current_app.extensions['food_store'])


# ==========================================
#  TASK 2: STUCK LOCK AUDIT
# ==========================================
# Runs every 15 minutes
@scheduler.task('interval', id='audit_stuck_listings', minutes=15)
def audit_stuck_listings_job():
    with scheduler.app.app_context():
        audit_stuck_listings(current_app.extensions['food_store'])
