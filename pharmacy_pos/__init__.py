"""Flask application factory."""
from flask import Flask, jsonify, request


def init_pos_services(app, http_session=None, redis_client=None):
    """
    Build the shared POS services and store them in app.extensions['pos'].

    Args:
        app: Flask app with the POS config loaded
        http_session: requests.Session for the inventory backend (tests inject a fake)
        redis_client: ready Redis client; skips the REDIS_URL connection when given
    """
    from pharmacy_pos.services.cart_storage import FallbackCartStorage, RedisCartStorage
    from pharmacy_pos.services.checkout_service import CheckoutService
    from pharmacy_pos.services.inventory_client import InventoryClient
    from pharmacy_pos.services.pos_session import PosServices
    from pharmacy_pos.services.prescription_resolver import PrescriptionResolver
    from pharmacy_pos.services.reservation_client import ReservationClient

    config = app.config
    inventory = InventoryClient(
        config['INVENTORY_API_URL'],
        token=config.get('INVENTORY_API_TOKEN'),
        timeout=config.get('INVENTORY_TIMEOUT', 8),
        session=http_session,
    )
    reservations = ReservationClient(
        inventory,
        retries=config.get('RESERVATION_RETRIES', 2),
        backoff_base=config.get('RESERVATION_BACKOFF_BASE_MS', 150) / 1000.0,
        jitter=config.get('RESERVATION_JITTER_MS', 60) / 1000.0,
        timeout=config.get('INVENTORY_TIMEOUT', 8),
        release_timeout=config.get('RELEASE_TIMEOUT', 3),
    )

    if redis_client is not None:
        redis_storage = RedisCartStorage(
            client=redis_client,
            prefix=config.get('CART_KEY_PREFIX', 'pos_cart_v2'),
            ttl=config.get('CART_TTL', 43200),
        )
    else:
        redis_storage = RedisCartStorage(app=app)

    services = PosServices(
        inventory=inventory,
        reservations=reservations,
        resolver=PrescriptionResolver(inventory),
        checkout=CheckoutService(
            inventory,
            reservations=reservations,
            default_payment_method=config.get('DEFAULT_PAYMENT_METHOD', 'cash'),
        ),
        storage=FallbackCartStorage(redis_storage),
        search_debounce=config.get('SEARCH_DEBOUNCE_MS', 220) / 1000.0,
    )
    app.extensions['pos'] = services
    app.logger.info(f"[INVENTORY] POS services ready for {inventory.base_url}")
    return services


def create_app(config_object='config.Config', http_session=None, redis_client=None):
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    init_pos_services(app, http_session=http_session, redis_client=redis_client)

    # Setup Prometheus metrics instrumentation
    from pharmacy_pos.blueprints.metrics import setup_metrics_instrumentation
    setup_metrics_instrumentation(app)

    # Production: Enable ProxyFix for HTTPS behind Nginx reverse proxy
    if app.config.get('ENV') == 'production':
        from werkzeug.middleware.proxy_fix import ProxyFix
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

    from pharmacy_pos.middleware import load_pos_context

    @app.before_request
    def before_request_handler():
        """Load the POS session id and context for each request."""
        load_pos_context()

    # Error Handlers
    from pharmacy_pos.exceptions import PosError

    @app.errorhandler(PosError)
    def handle_pos_error(error):
        """Handle custom application exceptions."""
        if error.status_code >= 500:
            app.logger.error(f"PosError [{error.status_code}]: {error.message}")
        else:
            app.logger.warning(f"PosError [{error.status_code}]: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({'status': 'error', 'message': 'Not Found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'status': 'error', 'message': 'Method Not Allowed'}), 405

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.error(f"Unhandled Exception on {request.path}: {error}")
        return jsonify({'status': 'error', 'message': 'Internal Server Error'}), 500

    @app.route('/health')
    def health():
        storage = app.extensions['pos'].storage
        redis_up = storage.primary.is_available() if storage is not None else False
        return jsonify({'status': 'ok', 'redis': redis_up})

    # Register blueprints
    from pharmacy_pos.blueprints.pos import pos_bp
    from pharmacy_pos.blueprints.metrics import metrics_bp

    app.register_blueprint(pos_bp)
    app.register_blueprint(metrics_bp)

    # Register CLI commands
    from pharmacy_pos.cli_commands import init_cli_commands
    init_cli_commands(app)

    return app
