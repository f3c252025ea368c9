"""
Status API for the tunnel server.
Exposes read-only server and session information over HTTP.
"""
import logging
import threading

from flask import Flask, jsonify

logger = logging.getLogger("web")


def create_app(tunnel_server) -> Flask:
    """
    Build the status application for a running server

    Args:
        tunnel_server: TunnelServer instance to report on
    """
    app = Flask(__name__)

    @app.route('/api/server/status')
    def server_status():
        """API endpoint to get server status"""
        return jsonify(tunnel_server.get_status())

    @app.route('/api/sessions')
    def sessions():
        """API endpoint to list active sessions"""
        return jsonify({'sessions': tunnel_server.get_sessions()})

    return app


def start_status_server(tunnel_server, host: str = '127.0.0.1', port: int = 5000) -> threading.Thread:
    """
    Serve the status API from a daemon thread

    Args:
        tunnel_server: TunnelServer instance to report on
        host: Host to bind to
        port: Port to bind to
    """
    app = create_app(tunnel_server)

    thread = threading.Thread(
        target=app.run,
        kwargs={'host': host, 'port': port, 'debug': False, 'use_reloader': False},
        name="status-api",
        daemon=True
    )
    thread.start()
    logger.info(f"Status API listening on http://{host}:{port}")
    return thread
