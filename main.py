#!/usr/bin/env python3
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from flask import Flask, jsonify, Response

from pgcdc.config.config_loader import ConfigLoader
from pgcdc.handlers.connector_task import ConnectorTask

HEALTH_STATUS_CODES = {'healthy': 200, 'degraded': 206}

logger = logging.getLogger('main')

def configure_logging(config: dict):
    log_config = config.get('logging', {})
    handlers = [logging.StreamHandler(sys.stdout)]

    log_file = log_config.get('file')
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, log_config.get('level', 'INFO').upper()),
        format=log_config.get('format', '%(asctime)s - %(name)s - %(levelname)s - %(message)s'),
        handlers=handlers
    )
    # kafka-python is chatty at INFO
    logging.getLogger('kafka').setLevel(logging.WARNING)

def build_health_app(task: ConnectorTask, metrics_path: str = '/metrics') -> Flask:
    app = Flask(__name__)
    app.logger.disabled = True
    logging.getLogger('werkzeug').disabled = True

    @app.route('/health')
    def health():
        status = task.get_status()
        report = status['health']
        code = HEALTH_STATUS_CODES.get(report['status'], 503) if status['running'] else 503
        return jsonify(report), code

    @app.route(metrics_path)
    def metrics():
        return Response(task.metrics.export_prometheus(), mimetype='text/plain')

    @app.route('/status')
    def status():
        return jsonify(task.get_status())

    return app

def start_metrics_server(task: ConnectorTask, metrics_config: dict):
    port = metrics_config.get('port', 8080)
    app = build_health_app(task, metrics_config.get('path', '/metrics'))
    threading.Thread(
        target=lambda: app.run(host='0.0.0.0', port=port, debug=False),
        name='metrics-server',
        daemon=True
    ).start()
    logger.info(f"Metrics server started on port {port}")

def run(config_path: Optional[str] = None) -> int:
    config_loader = ConfigLoader(config_path)
    config = config_loader.load()
    configure_logging(config)

    logger.info("Starting PostgreSQL CDC connector")
    logger.info(f"Configuration loaded from: {config_loader.config_path}")

    task = ConnectorTask(config)

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        task.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    metrics_config = config.get('metrics', {})
    if metrics_config.get('enabled', True):
        start_metrics_server(task, metrics_config)

    try:
        task.start()
        while not task.wait(timeout=1.0):
            pass
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        task.stop()

    if task.failure is not None:
        logger.error(f"Connector stopped after a fatal error: {task.failure!r}")
        return 1
    return 0

def main():
    sys.exit(run(sys.argv[1] if len(sys.argv) > 1 else None))

if __name__ == "__main__":
    main()
