from flask import Flask, jsonify
from flask_cors import CORS
import os
import logging
from dotenv import load_dotenv
import re
from datetime import timedelta

# 1. IMPORT EXTENSIONS (From extensions.py)
from extensions import db, migrate, jwt, mail, socketio, scheduler, dispatcher
from errors import ServiceError, Unavailable
from services.claims import ClaimArbitrator
from services.deliveries import DeliveryService
from services.listings import ListingService
from services.store import SQLAlchemyStore
import routes.sockets  # noqa: F401  connect handler must exist before socketio.init_app

load_dotenv()


def _env_flag(name, default):
    return os.getenv(name, str(default)).lower() in ('1', 'true', 'yes')


def create_app(test_config=None):
    """
    The Application Factory.
    Creates and configures the app, but does not run it.
    `test_config` overrides the environment before any extension starts.
    """
    app = Flask(__name__)

    # --- CONFIGURATION ---
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'default_secret_key')
    # Fix Postgres URL for SQLAlchemy
    database_url = os.getenv('DATABASE_URL', 'sqlite:///food_rescue.db')
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    app.config['SQLALCHEMY_DATABASE_URI'] = database_url

    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['JWT_SECRET_KEY'] = os.getenv('JWT_SECRET_KEY', 'fallback-secret-key')
    app.config['JWT_ACCESS_TOKEN_EXPIRES'] = timedelta(minutes=25)

    # --- EMAIL CONFIGURATION ---
    app.config['MAIL_SERVER'] = os.getenv('MAIL_SERVER', 'smtp.gmail.com')
    app.config['MAIL_PORT'] = int(os.getenv('MAIL_PORT', 587))
    app.config['MAIL_USE_TLS'] = True
    app.config['MAIL_USERNAME'] = os.getenv('MAIL_USERNAME')
    app.config['MAIL_PASSWORD'] = os.getenv('MAIL_PASSWORD')
    app.config['MAIL_DEFAULT_SENDER'] = os.getenv('MAIL_USERNAME')

    # --- CLAIMS, NOTIFICATIONS & STORE ---
    app.config['CLAIM_PROCEDURE_ENABLED'] = _env_flag('CLAIM_PROCEDURE_ENABLED', True)
    app.config['NOTIFICATIONS_ASYNC'] = _env_flag('NOTIFICATIONS_ASYNC', True)
    app.config['NOTIFICATION_QUEUE_SIZE'] = int(os.getenv('NOTIFICATION_QUEUE_SIZE', 1000))
    app.config['STORE_TIMEOUT_SECONDS'] = int(os.getenv('STORE_TIMEOUT_SECONDS', 10))
    app.config['CO2_PER_KG'] = os.getenv('CO2_PER_KG', '2.5')

    if test_config:
        app.config.update(test_config)

    # PostgreSQL store calls are bounded; a timeout surfaces as Unavailable
    timeout = app.config['STORE_TIMEOUT_SECONDS']
    if app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgresql'):
        app.config.setdefault('SQLALCHEMY_ENGINE_OPTIONS', {
            'pool_timeout': timeout,
            'connect_args': {'options': f'-c statement_timeout={timeout * 1000}'},
        })

    logging.basicConfig(level=logging.INFO, format='[%(asctime)s] %(levelname)s %(name)s: %(message)s')

    # --- INITIALIZE EXTENSIONS ---
    # We attach the tools to this specific app instance
    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    mail.init_app(app)
    socketio.init_app(app)
    dispatcher.init_app(app)
    # Note: We init scheduler here, but start it in __main__
    scheduler.init_app(app)
    import scheduler as scheduled_jobs  # noqa: F401  registers the cron tasks

    # --- SERVICES (the store is injected, never imported as a global) ---
    store = SQLAlchemyStore(db)
    app.extensions['food_store'] = store
    app.extensions['claim_arbitrator'] = ClaimArbitrator(
        store, dispatcher, use_procedure=app.config['CLAIM_PROCEDURE_ENABLED'])
    app.extensions['listing_service'] = ListingService(store, dispatcher)
    app.extensions['delivery_service'] = DeliveryService(
        store, dispatcher, co2_per_kg=app.config['CO2_PER_KG'])

    if app.config['NOTIFICATIONS_ASYNC'] and not app.config.get('TESTING'):
        dispatcher.start()

    # --- CORS CONFIGURATION ---
    CORS(app, resources={
        r"/*": {
            "origins": [
                "http://localhost:3000",
                "http://localhost:5173",
                re.compile(r"^https://.*\.vercel\.app$")
            ],
            "methods": ["GET", "POST", "PATCH", "PUT", "DELETE", "OPTIONS"],
            "allow_headers": ["Content-Type", "Authorization", "X-Requested-With"],
            "supports_credentials": True
        }
    })

    # --- ERRORS ---
    @app.errorhandler(ServiceError)
    def handle_service_error(error):
        if isinstance(error, Unavailable):
            app.logger.error("Store failure: %s", error.message)
        return jsonify(error.to_dict()), error.status_code

    # --- HEALTH ---
    @app.route('/health', methods=['GET'])
    def health():
        try:
            stuck = len(store.find_stuck_listings())
        except Unavailable:
            return jsonify({'status': 'degraded', 'store': 'unavailable'}), 503
        return jsonify({
            'status': 'healthy',
            'stuck_locked_listings': stuck,
            'notifications_pending': dispatcher.pending(),
        }), 200

    # --- REGISTER BLUEPRINTS ---
    # Import inside the function to avoid circular imports
    from routes.listings import listings_bp
    from routes.claims import claims_bp
    from routes.deliveries import deliveries_bp

    app.register_blueprint(listings_bp)
    app.register_blueprint(claims_bp)
    app.register_blueprint(deliveries_bp)

    return app


# --- ENTRY POINT ---
# This only runs if you type 'python app.py'
if __name__ == "__main__":
    app = create_app()

    # Start the Scheduler only when running the server (not during tests)
    scheduler.start()
    app.logger.info("Scheduler started")

    socketio.run(app, debug=True)
