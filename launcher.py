#!/usr/bin/env python3
"""
TimeBar Application Launcher
Provides simple entry points for setup and the headless sync service.
"""

import signal
import sys
from pathlib import Path

# Add the project root to Python path for clean imports
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))


def print_usage():
    print("TimeBar Application Launcher")
    print()
    print("Usage:")
    print("  python launcher.py init                      # Write a sample accounts.json")
    print("  python launcher.py set-key <account> <key>   # Store an API key for an account")
    print("  python launcher.py remove-key <account>      # Remove a stored API key")
    print("  python launcher.py accounts                  # List configured accounts")
    print("  python launcher.py run [--debug]             # Run the sync service and control API")


def init_config():
    from shared.config import ConfigLoader

    loader = ConfigLoader()
    if loader.write_sample():
        print(f"Sample configuration written to {loader.config_file}")
        print("Edit it, then store each account's API key with 'launcher.py set-key'")
    else:
        print(f"Configuration already exists at {loader.config_file}")


def set_key(args):
    from shared.config import CredentialStore

    if len(args) != 2:
        print("Usage: python launcher.py set-key <account> <key>")
        sys.exit(1)
    account_id, api_key = args
    CredentialStore().set_api_key(account_id, api_key)
    print(f"API key stored for '{account_id}'")


def remove_key(args):
    from shared.config import CredentialStore

    if len(args) != 1:
        print("Usage: python launcher.py remove-key <account>")
        sys.exit(1)
    if CredentialStore().delete_api_key(args[0]):
        print(f"API key removed for '{args[0]}'")
    else:
        print(f"No stored API key for '{args[0]}'")


def list_accounts():
    from shared.config import ConfigLoader, CredentialStore
    from shared.exceptions import ConfigError

    try:
        config = ConfigLoader().load()
    except ConfigError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)

    credentials = CredentialStore()
    if not config.accounts:
        print("No accounts configured. Run 'python launcher.py init' to get started.")
        return
    for account in config.accounts:
        key_state = "key stored" if credentials.get_api_key(account.id) else "no key"
        print(f"  {account.id:<16} {account.label:<24} {account.url}  [{account.dialect.value}, {key_state}]")


def run_service(args):
    """Run the coordinator and the control API on a Qt core event loop"""
    from PyQt6.QtCore import QCoreApplication, QTimer

    from client.coordinator import AccountCoordinator
    from server.control_api import ControlAPIServer
    from shared.config import ConfigLoader, CredentialStore
    from shared.exceptions import ConfigError
    from shared.logging_config import configure_logging, get_client_logger

    configure_logging("DEBUG" if '--debug' in args else "INFO", log_to_file=True)
    logger = get_client_logger()

    try:
        config = ConfigLoader().load()
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    if not config.accounts:
        logger.warning("No accounts configured. Run 'python launcher.py init' to get started.")

    app = QCoreApplication(sys.argv)
    coordinator = AccountCoordinator(config, CredentialStore())

    def on_status(account_id, status):
        error = coordinator.account_error(account_id)
        logger.info(f"[{account_id}] {status}: {error}" if error else f"[{account_id}] {status}")

    coordinator.account_status_changed.connect(on_status)

    api_server = ControlAPIServer(coordinator, port=config.api_port)
    api_server.server_error.connect(lambda error: logger.error(f"Control API failed: {error}"))

    def shutdown(*_):
        logger.info("Shutting down")
        coordinator.stop_polling()
        api_server.stop_server()
        app.quit()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    # Let the Python interpreter run periodically so signal handlers fire
    heartbeat = QTimer()
    heartbeat.timeout.connect(lambda: None)
    heartbeat.start(500)

    api_server.start_server()
    coordinator.start_polling()
    sys.exit(app.exec())


def main():
    """Main launcher with command-line arguments"""

    if len(sys.argv) < 2:
        print_usage()
        sys.exit(1)

    command = sys.argv[1].lower()
    args = sys.argv[2:]

    if command == 'init':
        init_config()

    elif command == 'set-key':
        set_key(args)

    elif command == 'remove-key':
        remove_key(args)

    elif command == 'accounts':
        list_accounts()

    elif command == 'run':
        run_service(args)

    else:
        print(f"Unknown command: {command}")
        print("Use 'init', 'set-key', 'remove-key', 'accounts', or 'run'")
        sys.exit(1)


if __name__ == '__main__':
    main()
