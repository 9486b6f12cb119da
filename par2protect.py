#!/usr/bin/env python3
"""PAR2Protect - PAR2 integrity protection for files and directories.

Usage:
    python par2protect.py daemon                      # Run workers and scheduled verification
    python par2protect.py protect /mnt/user/photos    # Queue parity creation
    python par2protect.py verify all --wait           # Verify everything and wait for results
    python par2protect.py status                      # Dashboard snapshot as JSON
    python par2protect.py schedule status             # Scheduled verification settings and next run
    python par2protect.py --help                      # Show help
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path

# Ensure project root is in path
PROJECT_ROOT = Path(__file__).parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from core.config import ConfigManager, DEFAULT_SETTINGS_FILE
from core.logging_config import setup_logging_from_config
from core.system_utils import SingleInstanceLock
from services.protection_service import Engine, build_engine
from services.scheduler_service import SchedulerService


def _lock_file(config: ConfigManager) -> str:
    return os.path.join(config.protection.temp_dir, "par2protect.lock")


def _print(response: dict) -> int:
    print(json.dumps(response, indent=2, default=str))
    return 0 if response.get("success") else 1


def run_daemon(engine: Engine) -> int:
    """Run the worker pool and scheduler until SIGTERM/SIGINT."""
    lock = SingleInstanceLock(_lock_file(engine.config))
    if not lock.acquire():
        logging.critical("Another PAR2Protect daemon is already running. Exiting.")
        print("ERROR: Another PAR2Protect daemon is already running. Exiting.", file=sys.stderr)
        return 1

    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        logging.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    scheduler = engine.scheduler
    try:
        engine.orchestrator.start()
        scheduler.start()
        logging.info("PAR2Protect daemon running")
        while not stop_event.is_set():
            stop_event.wait(1.0)
    finally:
        scheduler.stop()
        engine.orchestrator.stop()
        lock.release()
    return 0


def run_schedule_command(engine: Engine, args) -> int:
    scheduler = engine.scheduler
    if args.schedule_command == 'validate':
        result = SchedulerService.validate_cron(args.expression)
        return _print({"success": result["valid"], **result})
    if args.schedule_command == 'run':
        def _run():
            response = scheduler.run_now()
            if response is None:
                return {"success": False, "error": "Scheduled verification failed", "kind": "execution"}
            task_ids = [task["id"] for task in response.get("tasks", [])]
            if args.wait and task_ids:
                engine.orchestrator.wait_for(task_ids)
                response["tasks"] = [engine.service.operation(task_id)["operation"] for task_id in task_ids]
            return response
        return _print(_with_local_workers(engine, args.wait, _run))
    return _print({"success": True, "schedule": scheduler.get_status()})


def _with_local_workers(engine: Engine, wait: bool, action):
    """Run action; when waiting and no daemon is running, process the queue in-process."""
    if not wait:
        return action()
    lock = SingleInstanceLock(_lock_file(engine.config))
    if not lock.acquire():
        # The daemon owns the workers; just wait on the shared queue
        return action()
    try:
        engine.orchestrator.start()
        return action()
    finally:
        engine.orchestrator.stop()
        lock.release()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description='PAR2Protect - PAR2 integrity protection',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python par2protect.py protect /mnt/user/docs -r 15     # 15% redundancy
    python par2protect.py verify /mnt/user/docs --force    # Ignore verification interval
    python par2protect.py remove /mnt/user/docs            # Delete parity and catalog entry
    python par2protect.py cancel op_3f2a...                # Kill a running operation
    python par2protect.py list --status damaged            # Items needing attention
        """
    )
    parser.add_argument('--config', default=DEFAULT_SETTINGS_FILE,
                        help=f'Settings file (default: {DEFAULT_SETTINGS_FILE})')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('daemon', help='Run workers and scheduled verification')

    protect = subparsers.add_parser('protect', help='Create parity for a path')
    protect.add_argument('path')
    protect.add_argument('-r', '--redundancy', type=int, default=None,
                         help='Redundancy percent 1-100 (default from settings)')
    protect.add_argument('--force', action='store_true', help='Re-protect even if unchanged')
    protect.add_argument('--file-types', nargs='+', default=None, metavar='EXT',
                         help='Only protect files with these extensions (directories only)')
    protect.add_argument('--wait', action='store_true', help='Wait for the operation to finish')
    protect.add_argument('--timeout', type=float, default=None, help='Seconds to wait')

    verify = subparsers.add_parser('verify', help='Verify paths against their parity ("all" for everything)')
    verify.add_argument('targets', nargs='+')
    verify.add_argument('--force', action='store_true', help='Verify even if recently verified')
    verify.add_argument('--wait', action='store_true', help='Wait for results')
    verify.add_argument('--timeout', type=float, default=None, help='Seconds to wait')

    remove = subparsers.add_parser('remove', help='Remove protection from paths')
    remove.add_argument('paths', nargs='+')

    subparsers.add_parser('status', help='Show stats, active operations and recent activity')

    cancel = subparsers.add_parser('cancel', help='Cancel an operation')
    cancel.add_argument('operation_id')

    list_parser = subparsers.add_parser('list', help='List protected items')
    list_parser.add_argument('--status', default=None,
                             help='Filter by status (protected, damaged, missing, error, unknown)')

    operation = subparsers.add_parser('operation', help='Show one operation')
    operation.add_argument('operation_id')

    schedule = subparsers.add_parser('schedule', help='Scheduled verification')
    schedule_commands = schedule.add_subparsers(dest='schedule_command', required=True)
    schedule_commands.add_parser('status', help='Show the schedule and its next run')
    schedule_run = schedule_commands.add_parser('run', help='Run the scheduled verification now')
    schedule_run.add_argument('--wait', action='store_true', help='Wait for results')
    schedule_validate = schedule_commands.add_parser('validate', help='Check a cron expression')
    schedule_validate.add_argument('expression')

    config_parser = subparsers.add_parser('config', help='Show the effective settings')
    config_parser.add_argument('--write', action='store_true',
                               help='Write the effective settings back to the settings file')

    args = parser.parse_args(argv)

    config = ConfigManager(args.config)
    try:
        config.load_config()
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    log_manager = setup_logging_from_config(config, console=args.command == 'daemon' or args.verbose,
                                            debug=args.verbose)

    engine = build_engine(config)
    try:
        service = engine.service
        if args.command == 'daemon':
            return run_daemon(engine)
        if args.command == 'protect':
            def _protect():
                response = service.protect(args.path, args.redundancy, args.force, file_types=args.file_types)
                if args.wait and response.get("success"):
                    engine.orchestrator.wait_for([response["operation_id"]], args.timeout)
                    return service.operation(response["operation_id"])
                return response
            return _print(_with_local_workers(engine, args.wait, _protect))
        if args.command == 'verify':
            target = 'all' if args.targets == ['all'] else args.targets
            return _print(_with_local_workers(
                engine, args.wait,
                lambda: service.verify(target, force=args.force, wait=args.wait, timeout=args.timeout),
            ))
        if args.command == 'remove':
            return _print(service.remove(args.paths))
        if args.command == 'status':
            return _print(service.status())
        if args.command == 'cancel':
            return _print(service.cancel(args.operation_id))
        if args.command == 'list':
            return _print(service.list(args.status))
        if args.command == 'operation':
            return _print(service.operation(args.operation_id))
        if args.command == 'schedule':
            return run_schedule_command(engine, args)
        if args.command == 'config':
            if args.write:
                config.save_config()
            return _print({"success": True, "config_file": str(config.config_file), "settings": config.to_dict()})
        parser.error(f"Unknown command: {args.command}")
    finally:
        engine.close()
        log_manager.shutdown()
    return 1


if __name__ == "__main__":
    sys.exit(main())
