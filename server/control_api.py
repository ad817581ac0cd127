"""
TimeBar local control API.
Lets local tools read the timer cache and start/stop/delete timers.
Bound to 127.0.0.1 only and unauthenticated; only local processes can reach it.
"""

from flask import Flask, jsonify, request
from flask_cors import CORS
from PyQt6.QtCore import QThread, pyqtSignal
from waitress import create_server

from shared.logging_config import get_api_logger
from shared.models import SearchResult

logger = get_api_logger()

# Server configuration constants
DEFAULT_API_HOST: str = '127.0.0.1'
DEFAULT_API_PORT: int = 19847
WAITRESS_THREADS: int = 4
WAITRESS_CHANNEL_TIMEOUT: int = 60
WAITRESS_CLEANUP_INTERVAL: int = 30
STOP_WAIT_MS: int = 3000


def create_app(coordinator) -> Flask:
    """Build the Flask app serving one coordinator's cache"""
    app = Flask(__name__)
    CORS(app)  # Enable CORS for all routes

    def timer_not_found():
        return jsonify({"error": "Timer not found"}), 404

    def timer_action(composite_id: str, action):
        record = coordinator.find_timer(composite_id)
        if record is None:
            logger.debug(f"Unknown timer id '{composite_id}'")
            return timer_not_found()
        if not action(record.account_id, record.id):
            return timer_not_found()
        return jsonify({"ok": True})

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({"error": "Bad request"}), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_error(error):
        logger.error(f"Internal server error: {error}")
        return jsonify({"error": "Internal server error"}), 500

    @app.route('/health', methods=['GET'])
    def health_check():
        return jsonify({"status": "ok"})

    @app.route('/api/timers', methods=['GET'])
    def list_timers():
        return jsonify([record.to_api_dict() for record in coordinator.all_timers()])

    @app.route('/api/accounts', methods=['GET'])
    def list_accounts():
        return jsonify([{"id": account.id, "label": account.label, "url": account.url}
                        for account in coordinator.accounts()])

    @app.route('/api/timers/<timer_id>/start', methods=['POST'])
    def start_timer(timer_id):
        return timer_action(timer_id, coordinator.start_timer)

    @app.route('/api/timers/<timer_id>/stop', methods=['POST'])
    def stop_timer(timer_id):
        return timer_action(timer_id, coordinator.stop_timer)

    @app.route('/api/timers/<timer_id>/toggle', methods=['POST'])
    def toggle_timer(timer_id):
        return timer_action(timer_id, coordinator.toggle_timer)

    @app.route('/api/timers/<timer_id>/delete', methods=['POST'])
    def delete_timer(timer_id):
        return timer_action(timer_id, coordinator.delete_timer)

    @app.route('/api/refresh', methods=['POST'])
    def refresh():
        coordinator.poll_all()
        return jsonify({"ok": True})

    @app.route('/api/search', methods=['GET'])
    def search():
        query = request.args.get('q', '').strip()
        results = coordinator.search(query)
        return jsonify({account_id: [hit.to_dict() for hit in hits]
                        for account_id, hits in results.items()})

    @app.route('/api/search/start', methods=['POST'])
    def start_from_search():
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not data.get('accountId'):
            return jsonify({"error": "accountId, kind and name are required"}), 400

        try:
            result = SearchResult.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            return jsonify({"error": f"Invalid search result: {e}"}), 400

        try:
            started = coordinator.start_from_search_result(str(data['accountId']), result)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        if not started:
            return jsonify({"error": "Account not found"}), 404
        return jsonify({"ok": True})

    return app


class ControlAPIServer(QThread):
    """Runs the control API with Waitress inside a QThread."""

    server_started = pyqtSignal()
    server_stopped = pyqtSignal()
    server_error = pyqtSignal(str)

    def __init__(self, coordinator, port: int = DEFAULT_API_PORT, host: str = DEFAULT_API_HOST):
        super().__init__()
        self.app = create_app(coordinator)
        self._host = host
        self._port = port
        self._server = None
        self.server_running = False

    @property
    def address(self) -> str:
        return f"http://{self._host}:{self._port}"

    def start_server(self):
        """Start the server thread. The actual server runs inside `run()`."""
        if self.server_running:
            return
        self.server_running = True
        self.start()

    def stop_server(self):
        """Close the listening socket and open channels, then wait for the thread to exit."""
        server = self._server
        if server is None:
            return

        for channel in list(getattr(server, '_map', {}).values()):
            if channel is server:
                continue
            try:
                channel.close()
            except OSError as e:
                logger.debug(f"Error closing channel: {e}")
        try:
            server.close()
        except OSError as e:
            logger.debug(f"Error closing server socket: {e}")

        if not self.wait(STOP_WAIT_MS):
            logger.warning("Control API thread did not exit in time")

    def run(self):
        """Thread entry point: run Waitress (blocking)."""
        try:
            self._server = create_server(
                self.app,
                host=self._host,
                port=self._port,
                threads=WAITRESS_THREADS,
                channel_timeout=WAITRESS_CHANNEL_TIMEOUT,
                cleanup_interval=WAITRESS_CLEANUP_INTERVAL,
            )
            logger.info(f"Control API listening on {self.address}")
            self.server_started.emit()

            # Blocks until the server is closed
            self._server.run()
        except Exception as e:
            logger.error(f"Control API error: {e}")
            self.server_error.emit(str(e))
        finally:
            self._server = None
            self.server_running = False
            self.server_stopped.emit()
            logger.info("Control API stopped")
