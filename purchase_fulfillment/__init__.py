import os

from flask import Flask, jsonify
from dotenv import load_dotenv

from .config import load_config
from .extensions import get_runtime, init_extensions
from .logging_config import configure_logging


def create_app(config=None, **overrides):
    """App factory entrypoint.

    ``overrides`` are passed to init_extensions (``db``, ``firestore_module``,
    ``auth_module``, ``provider``) so tests can run without Firebase or Stripe.
    """
    if config is None:
        load_dotenv()
        config = load_config()
    configure_logging(config.log_level)

    app = Flask(__name__)
    app.secret_key = config.flask_secret_key or os.urandom(32).hex()
    init_extensions(app, config, **overrides)

    from .blueprints import admin_bp, entitlements_bp, payments_bp

    app.register_blueprint(payments_bp)
    app.register_blueprint(entitlements_bp)
    app.register_blueprint(admin_bp)

    @app.route('/healthz', methods=['GET'])
    def healthz():
        runtime = get_runtime(app)
        if runtime.db is None:
            body = {'ok': False, 'error': 'Database not initialized'}
            if runtime.firebase_init_error:
                body['firebase_init_error'] = runtime.firebase_init_error
            return jsonify(body), 503
        return jsonify({'ok': True})

    return app
