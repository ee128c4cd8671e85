import logging
import os
from decimal import Decimal

from flask import Flask, jsonify, session
from flask_bcrypt import Bcrypt
from flask_mail import Mail
from werkzeug.exceptions import HTTPException

from gymledger.errors import GymLedgerError
from gymledger.models.database import init_db
from gymledger.routes.admin import admin_bp
from gymledger.routes.auth import auth_bp
from gymledger.routes.member_routes import member_routes_bp
from gymledger.routes.time_tracking import time_tracking_bp


def create_app(config=None):
    app = Flask(__name__)

    # Configuration
    app.config['SECRET_KEY'] = os.environ.get(
        'SECRET_KEY',
        'change-me-in-production'
    )
    app.config['DATABASE_PATH'] = os.environ.get(
        'DATABASE_PATH',
        'gymledger.db'
    )
    app.config['DATABASE_TIMEOUT'] = float(os.environ.get('DATABASE_TIMEOUT', '5.0'))

    # Billing
    app.config['DAILY_HOURLY_RATE'] = Decimal(os.environ.get('DAILY_HOURLY_RATE', '10.00'))
    app.config['INITIAL_SUBSCRIPTION_FEE'] = Decimal(os.environ.get('INITIAL_SUBSCRIPTION_FEE', '400.00'))
    app.config['EXPIRING_WINDOW_DAYS'] = 7
    app.config['OUTSTANDING_PAGE_SIZE'] = 50
    app.config['CONFLICT_RETRIES'] = int(os.environ.get('CONFLICT_RETRIES', '3'))

    # Accounts
    app.config['DEFAULT_MEMBER_PASSWORD'] = os.environ.get('DEFAULT_MEMBER_PASSWORD', 'password')
    app.config['ADMIN_EMAIL'] = os.environ.get('ADMIN_EMAIL', 'admin@gym.local')
    app.config['ADMIN_PASSWORD'] = os.environ.get('ADMIN_PASSWORD', 'admin123')

    # Mail configuration
    app.config['MAIL_SERVER'] = os.environ.get('MAIL_SERVER', 'localhost')
    app.config['MAIL_PORT'] = int(os.environ.get('MAIL_PORT', '587'))
    app.config['MAIL_USE_TLS'] = os.environ.get('MAIL_USE_TLS', '1') == '1'
    app.config['MAIL_USERNAME'] = os.environ.get('MAIL_USERNAME')
    app.config['MAIL_PASSWORD'] = os.environ.get('MAIL_PASSWORD')
    app.config['MAIL_DEFAULT_SENDER'] = os.environ.get(
        'MAIL_DEFAULT_SENDER',
        'Gym <noreply@gym.local>'
    )

    app.config['CLOCK'] = None
    app.config['LOG_LEVEL'] = os.environ.get('LOG_LEVEL', 'INFO')

    if config:
        app.config.update(config)

    app.logger.setLevel(getattr(logging, str(app.config['LOG_LEVEL']).upper(), logging.INFO))

    app.bcrypt = Bcrypt(app)
    app.mail = Mail(app)

    # Initialize database
    with app.app_context():
        init_db(app.config['DATABASE_PATH'])

    app.register_blueprint(auth_bp, url_prefix='/auth')
    app.register_blueprint(admin_bp, url_prefix='/admin')
    app.register_blueprint(member_routes_bp, url_prefix='/member')
    app.register_blueprint(time_tracking_bp)

    @app.route('/')
    def index():
        return jsonify({
            'service': 'gymledger',
            'loggedIn': 'user_id' in session,
            'role': session.get('role'),
        })

    # Error handlers
    @app.errorhandler(GymLedgerError)
    def handle_domain_error(error):
        app.logger.warning("%s: %s", type(error).__name__, error)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({'error': error.name, 'message': error.description}), error.code

    @app.errorhandler(Exception)
    def internal_server_error(error):
        app.logger.exception("Unhandled error: %s", error)
        return jsonify({'error': 'Internal Server Error',
                        'message': 'Internal server error'}), 500

    return app


if __name__ == '__main__':
    app = create_app()
    app.run(debug=os.environ.get('FLASK_DEBUG') == '1')
