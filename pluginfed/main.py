from __future__ import annotations

import argparse
import asyncio
import json
import sys
import traceback
from pathlib import Path
from typing import Any, Dict, List, Optional


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='pluginfed - federated plugin mirror')
    parser.add_argument('--config', type=str, help='Path to configuration file', default=None)
    parser.add_argument('--debug', action='store_true', help='Enable debug logging', default=False)

    subparsers = parser.add_subparsers(dest='command', help='Command to execute', required=True)

    add_parser = subparsers.add_parser('add-source', help='Register and verify a remote source')
    add_parser.add_argument('instance_url')
    add_parser.add_argument('username')
    key_group = add_parser.add_mutually_exclusive_group(required=True)
    key_group.add_argument('--public-key', type=str, help='PEM or base64 public key')
    key_group.add_argument('--public-key-file', type=str, help='File holding the public key')

    subparsers.add_parser('sources', help='List sources')

    status_parser = subparsers.add_parser('status', help='Show the status of a source')
    status_parser.add_argument('source_id')

    verify_parser = subparsers.add_parser('verify', help='Re-verify a source')
    verify_parser.add_argument('source_id')

    refresh_parser = subparsers.add_parser('refresh', help="Re-read a source's asset info")
    refresh_parser.add_argument('source_id')

    subscribe_parser = subparsers.add_parser('subscribe', help='Subscribe to a verified source')
    subscribe_parser.add_argument('source_id')
    subscribe_parser.add_argument('subscriber')
    subscribe_parser.add_argument('--tag', action='append', dest='tags', default=[], help='Only mirror plugins with this tag')

    subparsers.add_parser('sweep', help='Run one federation sweep')
    subparsers.add_parser('serve', help='Run the federation scheduler until interrupted')
    subparsers.add_parser('cleanup', help='Purge expired activity and abandoned retry tickets')

    activity_parser = subparsers.add_parser('activity', help='Show the activity feed')
    activity_parser.add_argument('--limit', type=int, default=20)
    activity_parser.add_argument('--offset', type=int, default=0)

    subparsers.add_parser('backfill-versions', help='Record first versions for plugins without version history')

    return parser.parse_args(argv)


async def dispatch(service: Any, args: argparse.Namespace) -> Dict[str, Any]:
    """Run one CLI command against the federation service."""
    command = args.command
    if command == 'add-source':
        public_key = args.public_key
        if args.public_key_file:
            public_key = Path(args.public_key_file).read_text(encoding='utf-8')
        return await service.add_source(args.instance_url, args.username, public_key)
    if command == 'sources':
        return await service.list_sources()
    if command == 'status':
        return await service.get_source_status(args.source_id)
    if command == 'verify':
        return await service.verify_source(args.source_id)
    if command == 'refresh':
        return await service.refresh_source(args.source_id)
    if command == 'subscribe':
        filters = {'tags': args.tags} if args.tags else {}
        return await service.subscribe(args.source_id, args.subscriber, filters)
    if command == 'sweep':
        return await service.run_sweep()
    if command == 'cleanup':
        return await service.run_cleanup()
    if command == 'activity':
        return await service.get_activity(limit=args.limit, offset=args.offset)
    if command == 'backfill-versions':
        return await service.backfill_versions()
    return {'success': False, 'error': f'Unknown command: {command}', 'error_type': 'UsageError'}


async def run_command(args: argparse.Namespace) -> int:
    from pluginfed.core.app import ApplicationCore

    app_core = ApplicationCore(config_path=args.config)
    try:
        await app_core.initialize()
    except Exception as e:
        print(json.dumps({'success': False, 'error': str(e), 'error_type': type(e).__name__}))
        return 1

    try:
        if args.debug:
            await app_core.set_config('logging.level', 'DEBUG')
        if args.command == 'serve':
            app_core.setup_signal_handlers()
            await app_core.scheduler.start()
            print('pluginfed scheduler running. Press Ctrl+C to exit.', file=sys.stderr)
            await app_core.wait_for_shutdown()
            return 0

        try:
            payload = await dispatch(app_core.service, args)
        except OSError as e:
            payload = {'success': False, 'error': str(e), 'error_type': type(e).__name__}
        print(json.dumps(payload, indent=2, default=str))
        return 0 if payload.get('success') else 1
    finally:
        await app_core.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_arguments(argv)
    try:
        return asyncio.run(run_command(args))
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        print(f'Error running pluginfed: {e}', file=sys.stderr)
        traceback.print_exc()
        return 1


if __name__ == '__main__':
    sys.exit(main())
