# main.py
# Version: 1.1.0
# Main entry point for Idle Auto-Save with command-line argument parsing, config
# discovery commands, per-project single-instance enforcement, and daemon lifecycle
# management (signal-driven graceful shutdown).

import sys
import os
import argparse
import signal
import threading
from pathlib import Path
from typing import Optional, Tuple
import logging

import psutil

from autosave_config import ConfigManager, AutoSaveConfig
from autosave_core import IdleIntervalScheduler
from autosave_host import SystemHostState, CommandSaveAction
from autosave_logging import LoggingManager
from autosave_types import ConfigurationError, TickOutcome
from autosave_utils import format_timespan

__version__ = "1.1.0"

logger = logging.getLogger(__name__)

# Global application state
config_manager: Optional[ConfigManager] = None
logging_manager: Optional[LoggingManager] = None
scheduler: Optional[IdleIntervalScheduler] = None
_shutdown_event = threading.Event()
_shutdown_in_progress = False
_force_exit_timer: Optional[threading.Timer] = None
_pid_file: Optional[Path] = None

FORCE_EXIT_TIMEOUT_SEC = 10.0
PID_FILENAME = "autosave.pid"

def setup_logging():
    """Set up basic logging before config is loaded."""
    # LoggingManager installs the real handlers once the log dir is known
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Idle Auto-Save - periodically save a project while you work",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  autosave                          # Run the daemon for the current directory
  autosave --project ~/game         # Run for another project directory
  autosave --find-config            # Show where the config file lives
  autosave --once                   # Run a single save check and exit
        """
    )

    parser.add_argument(
        '--project',
        type=Path,
        default=Path.cwd(),
        help='Project directory to search for autosave.json (default: current directory)'
    )

    parser.add_argument(
        '--config-info',
        action='store_true',
        help='Print configuration information and exit'
    )

    parser.add_argument(
        '--find-config',
        action='store_true',
        help='Print the path of every config file found and exit'
    )

    parser.add_argument(
        '--init-config',
        action='store_true',
        help='Create the default config file if none exists and exit'
    )

    parser.add_argument(
        '--once',
        action='store_true',
        help='Evaluate a single tick immediately and exit'
    )

    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug output on the console'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'Idle Auto-Save {__version__}'
    )

    return parser.parse_args(argv)

def handle_find_config(args) -> bool:
    """Handle the --find-config command."""
    manager = ConfigManager(args.project)
    paths = manager.find_config_paths()
    if not paths:
        print(f"No config found under {manager.project_dir} (run with --init-config to create one)")
        return False
    for path in paths:
        print(path)
    if len(paths) > 1:
        print(f"Multiple config files found; {paths[0]} is used. Delete the others.")
    return True

def handle_init_config(args) -> bool:
    """Handle the --init-config command."""
    try:
        manager = ConfigManager(args.project)
        print(f"Config file: {manager.config_path}")
        return True
    except ConfigurationError as e:
        print(f"Error creating config: {e}")
        return False

def handle_config_info(args) -> bool:
    """Handle the --config-info command."""
    try:
        manager = ConfigManager(args.project)
        config = manager.load_config()
    except ConfigurationError as e:
        print(f"Error getting config info: {e}")
        return False

    print("Idle Auto-Save Configuration Information")
    print("=" * 50)
    print(f"Project directory: {manager.project_dir}")
    print(f"Config path: {manager.config_path}")
    print(f"Log directory: {manager.log_dir}")
    print(f"Version: {config.version}")
    print(f"Enabled: {config.enabled}")
    print(f"Interval: {format_timespan(config.interval_sec)} ({config.interval_sec}s, min {config.interval_min_sec}s)")
    print(f"Log on save: {config.log_on_save}")
    print(f"Inactive policy: {config.inactive_policy}")
    print(f"Inactive after (sec): {config.inactive_after_sec or 'disabled'}")
    print(f"Protected markers: {', '.join(config.protected_markers) or 'none'}")
    print(f"Save command: {' '.join(config.save_command) or 'not set'}")
    print(f"Save timeout (sec): {config.save_timeout_sec}")
    print(f"Log max size (KB): {config.log_max_kb}")
    print(f"Log history count: {config.log_history_count}")
    print(f"NDJSON events: {config.log_ndjson}")
    return True

def _tracking_config_provider(manager: ConfigManager):
    """Wrap manager.current_config so reloads are recorded in the event stream."""
    last = {"config": None}

    def provider() -> Optional[AutoSaveConfig]:
        config = manager.current_config()
        previous = last["config"]
        if config is not None and previous is not None and config is not previous and logging_manager:
            logging_manager.log_config_change("reload", {
                "enabled": config.enabled,
                "interval_sec": config.interval_sec,
                "log_on_save": config.log_on_save,
            })
        if config is not None:
            last["config"] = config
        return config

    return provider

def check_single_instance(manager: ConfigManager) -> bool:
    """Check that no other daemon is saving the same project, then claim it."""
    global _pid_file

    pid_file = manager.state_dir / PID_FILENAME
    try:
        other_pid = int(pid_file.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        other_pid = None

    if other_pid and other_pid != os.getpid() and psutil.pid_exists(other_pid):
        logger.error(f"Another auto-save daemon (pid {other_pid}) is already running for {manager.project_dir}; "
                     f"delete {pid_file} if that is wrong")
        return False

    try:
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()), encoding="utf-8")
        _pid_file = pid_file
    except OSError as e:
        logger.error(f"Failed to write pid file {pid_file}: {e}")
        return True  # Continue anyway

    if other_pid and other_pid != os.getpid():
        logger.info(f"Replaced stale pid file left by pid {other_pid}")
    logger.info("Single instance check passed - no other daemon running for this project")
    return True

def release_single_instance():
    """Remove the pid file written by check_single_instance."""
    global _pid_file

    if _pid_file is None:
        return
    try:
        _pid_file.unlink()
        logger.debug("Single instance pid file released")
    except OSError as e:
        logger.debug(f"Failed to remove pid file: {e}")
    _pid_file = None

def initialize_application(args) -> Tuple[bool, Optional[AutoSaveConfig]]:
    """Initialize config, logging and the scheduler collaborators."""
    global config_manager, logging_manager, scheduler

    try:
        config_manager = ConfigManager(args.project)
        config = config_manager.load_config()

        logging_manager = LoggingManager(config_manager.get_log_dir(), config, debug=args.debug)
        scheduler = IdleIntervalScheduler()

        if not config.save_command:
            logger.warning(f"No save_command set in {config_manager.config_path}; every save will fail until one is configured")

        logging_manager.log_system_event("INIT", "Application initialized successfully",
                                         {"config": config_manager.config_path})
        return True, config

    except (ConfigurationError, OSError) as e:
        logger.error(f"Failed to initialize application: {e}")
        return False, None

def _collaborators():
    provider = _tracking_config_provider(config_manager)
    host_state = SystemHostState(provider, config_manager.project_dir)
    save_action = CommandSaveAction(provider, config_manager.project_dir)
    return provider, host_state, save_action

def run_once() -> bool:
    """Handle the --once command after initialization."""
    provider, host_state, save_action = _collaborators()
    outcome = scheduler.run_once(provider, host_state, save_action, log_fn=logger.info)
    logger.info(f"Single tick outcome: {outcome.value}")
    return outcome is not TickOutcome.FAILED

def run_daemon() -> bool:
    """Start the scheduler and block until SIGINT/SIGTERM."""
    provider, host_state, save_action = _collaborators()

    try:
        handle = scheduler.start(
            provider, host_state, save_action, log_fn=logger.info,
            recover_config=config_manager.resolve_config,
            on_tick=logging_manager.log_tick,
        )
    except ConfigurationError as e:
        logger.error(f"Cannot start auto-save: {e}")
        return False

    logging_manager.log_scheduler_event("started", {"run_id": handle.run_id})
    logger.info("Auto-save running, press Ctrl+C to stop")

    previous_handlers = {
        sig: signal.signal(sig, lambda signum, frame: _shutdown_event.set())
        for sig in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        # Short waits keep the main thread responsive to signals on Windows
        while not _shutdown_event.wait(0.5):
            pass
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)

    stats = handle.snapshot()
    logger.info(f"Stopping after {stats.tick_count} ticks ({stats.fire_count} saves, "
                f"{stats.skip_count} skipped, {stats.failure_count} failed)")
    return True

def force_exit():
    """Force exit the application if graceful shutdown hangs."""
    logger.warning("Force exiting application after timeout")
    os._exit(1)

def force_exit_timeout() -> float:
    """Seconds to wait for a graceful shutdown before forcing exit."""
    # stop() waits for a save in progress, which may run up to save_timeout_sec
    config = config_manager.current_config() if config_manager else None
    return (config or AutoSaveConfig()).save_timeout_sec + FORCE_EXIT_TIMEOUT_SEC

def shutdown_application():
    """Shutdown the application gracefully with force exit fallback."""
    global _shutdown_in_progress, _force_exit_timer

    if _shutdown_in_progress:
        return
    _shutdown_in_progress = True

    _force_exit_timer = threading.Timer(force_exit_timeout(), force_exit)
    _force_exit_timer.daemon = True
    _force_exit_timer.start()

    try:
        if scheduler:
            handle = scheduler.handle
            scheduler.stop()
            if handle and logging_manager:
                logging_manager.log_scheduler_event("stopped", {"run_id": handle.run_id})

        release_single_instance()

        if logging_manager:
            logging_manager.shutdown()
        else:
            logger.info("Application shutdown complete")
    finally:
        _force_exit_timer.cancel()
        _force_exit_timer = None

def main(argv=None):
    """Main application entry point."""
    setup_logging()
    args = parse_arguments(argv)

    if args.find_config:
        sys.exit(0 if handle_find_config(args) else 1)

    if args.init_config:
        sys.exit(0 if handle_init_config(args) else 1)

    if args.config_info:
        sys.exit(0 if handle_config_info(args) else 1)

    try:
        success, _ = initialize_application(args)
        if not success:
            sys.exit(1)

        if not args.once and not check_single_instance(config_manager):
            sys.exit(1)

        success = run_once() if args.once else run_daemon()
        sys.exit(0 if success else 1)

    except Exception:
        if logging_manager:
            logging_manager.log_system_event("ERROR", "Unexpected error in main")
        logger.exception("Unexpected error in main")
        sys.exit(1)

    finally:
        shutdown_application()

if __name__ == "__main__":
    main()
