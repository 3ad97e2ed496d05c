#!/usr/bin/env python3
"""
Main entry point for the BarBot control system.

Usage:
    barbot                              # Start API server
    barbot --simulator                  # Start development robot simulator
    barbot --order mojito               # Order through a running API and follow progress
    barbot --order custom --ingredients mint,ice
    barbot --follow                     # Follow a drink already in preparation
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

import requests
import yaml

from .api import create_app, APIServer
from .core.connection import ConnectionManager
from .core.settings import ModbusSettingsStore
from .logger import get_logger
from .ui import ApiClient, OrderMonitor


# Global instances for cleanup
api_server: Optional[APIServer] = None
simulator = None


def setup_logging(config: dict) -> None:
    """Configure logging."""
    log_config = config.get('logging', {})
    level = getattr(logging, log_config.get('level', 'INFO').upper())

    # Create log directory if needed
    log_file = log_config.get('file')
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file) if log_file else logging.NullHandler()
        ]
    )


def load_config() -> dict:
    """Load configuration from YAML files."""
    config = {}

    # Config paths to search
    config_paths = [
        Path(__file__).parent / 'config' / 'settings.yaml',
        Path('/etc/barbot/settings.yaml'),
        Path('settings.yaml')
    ]

    for path in config_paths:
        if path.exists():
            try:
                with open(path, 'r') as f:
                    config = yaml.safe_load(f) or {}
                print(f"Loaded config from {path}")
                break
            except (OSError, yaml.YAMLError) as e:
                print(f"WARNING: Failed to load config from {path}: {e}")

    return config


def signal_handler(signum, frame):
    """Handle shutdown signals."""
    print("\nShutdown requested...")
    cleanup()
    sys.exit(0)


def cleanup():
    """Clean up resources."""
    print("Cleaning up...")
    if api_server:
        api_server.stop()
    if simulator:
        simulator.stop()
    print("Cleanup complete.")


def run_api_server(config: dict):
    """Run the API server."""
    global api_server

    api_config = config.get('api', {})
    host = api_config.get('host', '0.0.0.0')
    port = api_config.get('port', 5000)

    modbus_config = config.get('modbus', {})
    settings = ModbusSettingsStore(modbus_config.get('config_file'))
    connection = ConnectionManager(settings, max_attempts=modbus_config.get('max_attempts', 3))

    get_logger().system(f"Starting API server on {host}:{port}...")
    app = create_app(connection, settings, config)
    api_server = APIServer(app, host, port)
    api_server.start()


def run_simulator(config: dict):
    """Run the development robot simulator."""
    global simulator
    from .sim import RobotSimulator

    sim_config = config.get('simulator', {})
    simulator = RobotSimulator(
        host=sim_config.get('host', '0.0.0.0'),
        port=sim_config.get('port', 5502),
        step_interval=sim_config.get('step_interval_s', 2.0)
    )
    print(f"Robot simulator on {simulator.host}:{simulator.port}")
    print(f"Set MODBUS_HOST=localhost MODBUS_PORT={simulator.port} for the API server")
    simulator.serve_forever()


def _api_client(config: dict) -> ApiClient:
    api_config = config.get('api', {})
    return ApiClient(api_config.get('base_url', 'http://127.0.0.1:5000/api'))


def _progress_monitor(client: ApiClient):
    """OrderMonitor that prints progress, plus an Event set once the order is done."""
    done = threading.Event()

    def on_update(status: dict):
        print(f"  {status['phase']:<15} {status['progress']:3d}%"
              + (f"  ({status['error']})" if status.get('error') else ""))
        if status['phase'] == 'idle':
            done.set()

    return OrderMonitor(client, on_update=on_update), done


def _wait_done(monitor: OrderMonitor, done: threading.Event) -> None:
    try:
        done.wait()
    except KeyboardInterrupt:
        pass
    finally:
        monitor.stop()
    print("Robot ready for the next order.")


def run_follow(config: dict) -> int:
    """Follow a preparation that is already running on the robot."""
    client = _api_client(config)
    monitor, done = _progress_monitor(client)

    try:
        cocktail_id = monitor.follow_active()
    except requests.RequestException as e:
        print(f"API unreachable: {e}")
        return 1

    if cocktail_id is None:
        print("No drink in preparation, robot ready to receive orders.")
        return 0

    print(f"Following {cocktail_id} already in preparation")
    _wait_done(monitor, done)
    return 0


def run_order(config: dict, cocktail_id: str, ingredients: Optional[list]) -> int:
    """Place an order through the API and print progress until the robot is ready again."""
    client = _api_client(config)
    monitor, done = _progress_monitor(client)

    try:
        if cocktail_id == 'custom':
            result = client.order_custom(ingredients or [])
        else:
            result = client.order(cocktail_id)
    except requests.HTTPError as e:
        try:
            message = e.response.json().get('message', str(e))
        except ValueError:
            message = str(e)
        print(f"Order failed: {message}")
        return 1
    except requests.RequestException as e:
        print(f"API unreachable: {e}")
        return 1

    print(result.get('message', 'Order placed'))
    monitor.start(cocktail_id, ingredients)
    _wait_done(monitor, done)
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='BarBot Control System')
    parser.add_argument('--simulator', action='store_true',
                        help='Start the development robot simulator')
    parser.add_argument('--order', metavar='COCKTAIL',
                        help='Place an order through a running API server')
    parser.add_argument('--follow', action='store_true',
                        help='Follow a drink already in preparation')
    parser.add_argument('--ingredients', default='',
                        help='Comma-separated ingredients for --order custom')
    parser.add_argument('--host', default=None,
                        help='API server host')
    parser.add_argument('--port', type=int, default=None,
                        help='API server port')
    parser.add_argument('--sim-port', type=int, default=None,
                        help='Simulator Modbus port')

    args = parser.parse_args()

    # Setup signal handlers
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    # Load configuration
    config = load_config()
    setup_logging(config)

    if args.host:
        config.setdefault('api', {})['host'] = args.host
    if args.port:
        config.setdefault('api', {})['port'] = args.port
    if args.sim_port:
        config.setdefault('simulator', {})['port'] = args.sim_port

    try:
        if args.simulator:
            run_simulator(config)
        elif args.follow:
            sys.exit(run_follow(config))
        elif args.order:
            ingredients = [i.strip() for i in args.ingredients.split(',') if i.strip()]
            sys.exit(run_order(config, args.order, ingredients))
        else:
            run_api_server(config)
    finally:
        cleanup()


if __name__ == '__main__':
    main()
