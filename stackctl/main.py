"""
Flask application serving the controller's JSON API.
"""
from flask import Flask, jsonify

from stackctl import __version__
from stackctl.health import HealthAggregator
from stackctl.routes import api
from stackctl.scheduler import get_next_run_time
from stackctl.utils import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)


def create_app(inventory_path=None, aggregator_factory=None, backup_factory=None):
    """Build the API app; the factories are injectable for tests."""
    app = Flask(__name__)
    app.config['STACKCTL_INVENTORY'] = inventory_path
    app.config['STACKCTL_AGGREGATOR_FACTORY'] = aggregator_factory or HealthAggregator
    app.config['STACKCTL_BACKUP_FACTORY'] = backup_factory or api.default_backup_factory

    @app.after_request
    def set_security_headers(response):
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['Cache-Control'] = 'no-store'
        return response

    @app.route('/health')
    def health():
        """Liveness of the controller itself."""
        return jsonify({'status': 'ok', 'version': __version__, 'next_backup': get_next_run_time()})

    app.register_blueprint(api.bp)
    return app
