"""
Flask REST API Server for the BarBot control system.

Provides endpoints for:
- Robot status and health check
- Cocktail menu, predefined and custom orders
- Address reset and initial state detection
- Server-sent robot events
- Modbus configuration and connection test
- Voice order recognition (with an injected intent parser)
- Structured log access
"""

import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from flask import Flask, Response, jsonify, request
from flask_cors import CORS

from ..core.connection import ConnectionManager
from ..core.errors import (
    BarBotError, ProtocolError, RobotBusyError, RobotConnectionError, ValidationError
)
from ..core.events import EVENT_INTERVAL_S, EventBroadcaster
from ..core.register_map import (
    COCKTAILS, CUSTOM_ID, TRIGGER_BLOCK, ControlAddress,
    list_cocktails, resolve_active_cocktail, resolve_ingredients, selectable_ingredients,
)
from ..core.reset import ResetSequencer
from ..core.sequencer import WRITE_DELAY_S, CommandSequencer
from ..core.settings import ModbusSettingsStore, validate_updates
from ..core.state_reader import StateReader
from ..logger import (
    get_logger, LogCategory, LogLevel, log_exception,
    get_log_categories, get_log_levels
)


# (audio bytes, mimetype) -> {"type": "predefined"|"custom"|"none", "transcript": ..., ...}
IntentParser = Callable[[bytes, str], Dict[str, Any]]


def create_app(
    connection: Optional[ConnectionManager] = None,
    settings: Optional[ModbusSettingsStore] = None,
    config: Optional[Dict[str, Any]] = None,
    intent_parser: Optional[IntentParser] = None,
    sleep: Callable[[float], None] = time.sleep
) -> Flask:
    """
    Create and configure Flask application.

    Args:
        connection: Shared connection manager (built from ``settings`` if omitted)
        settings: Modbus settings store
        config: Application configuration (``sequencer`` and ``events`` sections)
        intent_parser: Voice intent parser; voice orders answer 501 without one
        sleep: Pacing function used between Modbus writes

    Returns:
        Configured Flask application.
    """
    app = Flask(__name__)
    CORS(app)

    config = config or {}
    settings = settings or ModbusSettingsStore()
    connection = connection or ConnectionManager(settings)

    write_delay = config.get('sequencer', {}).get('write_delay_ms', WRITE_DELAY_S * 1000) / 1000.0
    event_interval = config.get('events', {}).get('interval_s', EVENT_INTERVAL_S)

    # Store instances in app context
    app.config_data = config
    app.settings = settings
    app.connection = connection
    app.reader = StateReader(connection)
    app.sequencer = CommandSequencer(connection, write_delay, sleep)
    app.resetter = ResetSequencer(connection, write_delay, sleep)
    app.broadcaster = EventBroadcaster(connection, app.reader, event_interval)
    app.intent_parser = intent_parser

    # Orders and resets must not interleave their write sequences
    app.write_lock = threading.Lock()

    syslog = get_logger()
    syslog.system("Server starting...", source="server")

    # === Error handlers ===

    def _error(message: str, status: int):
        return jsonify({'error': True, 'success': False, 'message': message}), status

    @app.errorhandler(ValidationError)
    def handle_validation(e: ValidationError):
        return _error(e.message, e.status)

    @app.errorhandler(RobotBusyError)
    def handle_busy(e: RobotBusyError):
        syslog.order(e.message, level=LogLevel.WARNING, source="api")
        return _error(e.message, 503)

    @app.errorhandler(RobotConnectionError)
    def handle_connection(e: RobotConnectionError):
        syslog.api(f"Connection error: {e.message}", level=LogLevel.ERROR, source="api")
        return _error(e.message, 503)

    @app.errorhandler(ProtocolError)
    def handle_protocol(e: ProtocolError):
        syslog.api(f"Modbus exception {e.code}: {e.message}", level=LogLevel.ERROR, source="api")
        return _error(e.message, 500)

    # === Logging API ===

    @app.route('/api/logs', methods=['GET'])
    def api_get_logs():
        """Get logs with optional filters. Supports multiple categories via comma-separated list."""
        level = request.args.get('level')
        category = request.args.get('category')
        categories = request.args.get('categories')  # comma-separated list
        since_id = request.args.get('since_id', type=int)
        limit = min(request.args.get('limit', 500, type=int), 1000)

        try:
            if categories:
                all_logs = []
                for cat in (c.strip() for c in categories.split(',')):
                    all_logs.extend(syslog.get_logs(level, cat, since_id, limit))
                all_logs.sort(key=lambda x: x.get('timestamp', ''), reverse=True)
                return jsonify({'logs': all_logs[:limit]})
            return jsonify({'logs': syslog.get_logs(level, category, since_id, limit)})
        except ValueError as e:
            raise ValidationError(f"Invalid log filter: {e}")

    @app.route('/api/logs/categories', methods=['GET'])
    def api_get_log_categories():
        """Get available log categories."""
        return jsonify({'categories': get_log_categories()})

    @app.route('/api/logs/levels', methods=['GET'])
    def api_get_log_levels():
        """Get available log levels."""
        return jsonify({'levels': get_log_levels()})

    # === Health and Status ===

    @app.route('/api/health', methods=['GET'])
    def health():
        """Health check; always 200. Clears the retry cap while disconnected."""
        connected = app.connection.is_connected
        status = app.connection.status()
        if not connected:
            app.connection.reset_failures()

        return jsonify({
            'status': 'healthy',
            'app': 'running',
            'modbus': {
                'connected': connected,
                'message': 'Connected' if connected else 'Disconnected (app still operational)',
                'state': status['state'],
                'failures': status['failures'],
            },
            'timestamp': datetime.now().isoformat()
        })

    @app.route('/api/status', methods=['GET'])
    def status():
        """Robot state snapshot; degraded but still 200 when offline."""
        return jsonify(app.reader.poll().to_dict())

    # === Menu ===

    @app.route('/api/cocktails', methods=['GET'])
    def cocktails():
        category = request.args.get('category')
        return jsonify({'cocktails': [c.to_dict() for c in list_cocktails(category)]})

    @app.route('/api/ingredients', methods=['GET'])
    def ingredients():
        return jsonify({'ingredients': [
            {
                'id': i.id,
                'label': i.label,
                'stateKey': i.state_key,
                'address': i.write_address,
                'description': i.description,
            }
            for i in selectable_ingredients()
        ]})

    # === Orders ===

    @app.route('/api/cocktails/custom', methods=['POST'])
    def order_custom():
        data = request.get_json(silent=True) or {}
        ingredients = data.get('ingredients')
        syslog.order(f"Custom order requested: {ingredients}", source="api")
        with app.write_lock:
            result = app.sequencer.order(CUSTOM_ID, ingredients)
        return jsonify(result.to_dict())

    @app.route('/api/cocktails/<cocktail_id>', methods=['POST'])
    def order_cocktail(cocktail_id: str):
        syslog.order(f"Order requested: {cocktail_id}", source="api")
        with app.write_lock:
            result = app.sequencer.order(cocktail_id)
        return jsonify(result.to_dict())

    @app.route('/api/reset-addresses', methods=['POST'])
    def reset_addresses():
        """Clear every command coil; per-address failures do not fail the request."""
        try:
            with app.write_lock:
                report = app.resetter.reset()
        except BarBotError as e:
            log_exception(LogCategory.RESET, "Reset failed", e, source="api")
            return jsonify({'success': False, 'error': e.message}), 500
        return jsonify(report.to_dict())

    @app.route('/api/initial-state', methods=['GET'])
    def initial_state():
        """
        Detect robot state when a client starts up.

        Ready robot: clear a leftover start signal. Busy robot: report
        which cocktail is in flight from the trigger block.
        """
        try:
            link = app.connection.acquire()
            waiting = link.read_coils(ControlAddress.WAITING_RECIPE, 1)[0]
            syslog.api(f"Initial state - address {ControlAddress.WAITING_RECIPE} (waitingRecipe) = {int(waiting)}")

            if waiting:
                sleep(write_delay)
                with app.write_lock:
                    link.write_coil(ControlAddress.START, False)
                syslog.api(f"Robot ready - start signal reset ({ControlAddress.START} = 0)")
                return jsonify({
                    'robotReady': True,
                    'activeCocktailId': None,
                    'message': 'Robot ready to receive orders'
                })

            address, count = TRIGGER_BLOCK
            cocktail_id = resolve_active_cocktail(link.read_coils(address, count))
        except BarBotError as e:
            syslog.api(f"Initial state check failed: {e.message}", level=LogLevel.ERROR)
            app.connection.reset_failures()
            return jsonify({
                'robotReady': False,
                'activeCocktailId': None,
                'error': e.message,
                'message': 'Connection error'
            }), 500

        if cocktail_id:
            syslog.api(f"Active cocktail detected: {cocktail_id}")
            return jsonify({
                'robotReady': False,
                'activeCocktailId': cocktail_id,
                'message': f'Robot is preparing {cocktail_id}'
            })

        syslog.api("Robot busy but no active cocktail detected", level=LogLevel.WARNING)
        return jsonify({
            'robotReady': False,
            'activeCocktailId': None,
            'message': 'Robot in transitional state'
        })

    # === Events ===

    @app.route('/api/events')
    def events():
        """Server-sent event stream of robot state changes."""
        session = app.broadcaster.subscribe()
        return Response(
            session.stream(),
            mimetype='text/event-stream',
            headers={
                'Cache-Control': 'no-cache',
                'X-Accel-Buffering': 'no',
                'Connection': 'keep-alive'
            }
        )

    # === Modbus configuration ===

    @app.route('/api/modbus/config', methods=['GET'])
    def get_modbus_config():
        return jsonify({'success': True, 'config': app.settings.get().to_dict()})

    @app.route('/api/modbus/config', methods=['POST'])
    def update_modbus_config():
        data = request.get_json(silent=True)
        new_config = app.settings.update(data)
        app.connection.force_reconnect()
        return jsonify({
            'success': True,
            'message': 'Configuration updated successfully. Next connection will use new settings.',
            'config': new_config.to_dict()
        })

    @app.route('/api/modbus/test', methods=['POST'])
    def test_modbus():
        """Try a candidate endpoint with a throw-away client."""
        data = request.get_json(silent=True)
        candidate = replace(app.settings.get(), **validate_updates(data))
        syslog.modbus(f"Testing connection to {candidate.host}:{candidate.port} (unit {candidate.unit_id})",
                      level=LogLevel.INFO, source="api")

        try:
            read_ok = app.connection.probe(candidate)
        except RobotConnectionError as e:
            return jsonify({'success': False, 'message': e.message}), 503

        return jsonify({
            'success': True,
            'message': 'Connection successful - Robot is reachable',
            'readOk': read_ok,
            'config': candidate.to_dict()
        })

    # === Voice orders ===

    @app.route('/api/voice-recognition', methods=['POST'])
    def voice_recognition():
        """Turn a recorded order into a predefined or custom intent."""
        audio = request.files.get('audio')
        if audio is None:
            raise ValidationError('No audio file provided')
        if app.intent_parser is None:
            return _error('Voice recognition is not configured', 501)

        try:
            intent = app.intent_parser(audio.read(), audio.mimetype or 'audio/webm') or {}
        except Exception as e:
            log_exception(LogCategory.API, "Voice recognition error", e, source="voice")
            return _error('Error processing voice command', 500)

        transcript = intent.get('transcript', '')
        kind = intent.get('type')

        if kind == 'predefined':
            cocktail = COCKTAILS.get(intent.get('cocktailId'))
            if cocktail is None:
                return jsonify({'success': False, 'type': 'none', 'transcript': transcript,
                                'message': 'Cocktail not found in menu'})
            return jsonify({'success': True, 'type': 'predefined', 'transcript': transcript,
                            'cocktail': {'id': cocktail.id, 'name': cocktail.name}})

        if kind == 'custom':
            found = resolve_ingredients(intent.get('ingredients') or (), selectable_only=True)
            if not found:
                return jsonify({'success': False, 'type': 'none', 'transcript': transcript,
                                'message': 'No valid ingredients detected. Please try again.'})
            return jsonify({'success': True, 'type': 'custom', 'transcript': transcript,
                            'ingredients': [i.id for i in found]})

        return jsonify({
            'success': False,
            'type': 'none',
            'transcript': transcript,
            'message': 'Could not understand your request. Please try again.',
            'availableCocktails': [c.name for c in list_cocktails()]
        })

    syslog.system("Server ready", source="server")
    return app


class APIServer:
    """
    Wrapper for running Flask API server.

    Runs the app in the calling thread; stop() releases robot resources.
    """

    def __init__(self, app: Flask, host: str = '0.0.0.0', port: int = 5000):
        """
        Initialize API server.

        Args:
            app: Flask application instance
            host: Host address to bind
            port: Port number
        """
        self._app = app
        self._host = host
        self._port = port

    def start(self) -> None:
        """Start the API server and block until it exits."""
        self._run()

    def _run(self) -> None:
        """Run the Flask application."""
        self._app.run(
            host=self._host,
            port=self._port,
            debug=False,
            use_reloader=False,
            threaded=True
        )

    def stop(self) -> None:
        """Close event sessions and the robot connection."""
        self._app.broadcaster.close_all()
        self._app.connection.close()
