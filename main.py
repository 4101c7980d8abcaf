#!/usr/bin/env python3
"""
DbMessenger - durable database-backed message transport
"""
import argparse
import asyncio
import os
import sys

from bootstrap.app import Application

DEFAULT_HANDLER = "app.handlers.example_handler:handle"


def create_app(env_file=".env", worker_id=None, show_banner=True):
    """Create and return a new application instance."""
    return Application(env_file=env_file, worker_id=worker_id, show_banner=show_banner)


def create_env_file():
    """Create a default .env file if it doesn't exist."""
    if not os.path.exists(".env"):
        with open(".env", "w") as f:
            f.write("""# Database Configuration
ENABLE_DATABASE=true
DB_CONNECTION=sqlite
DB_DATABASE_PATH=messenger.db
DB_HOST=localhost
DB_PORT=3306
DB_NAME=messenger
DB_USER=root
DB_PASS=

# Redis Configuration
ENABLE_REDIS=false

# Messenger Configuration
MESSENGER_TRANSPORT=database
MESSENGER_DEFAULT_QUEUE=default
MESSENGER_LOCK_DURATION=300
MESSENGER_MAX_RETRIES=3
MESSENGER_DEDUPLICATION=database
MESSENGER_DEDUPLICATION_WINDOW=86400
MESSENGER_WORKER_ID=

# Logging Configuration
LOG_LEVEL=INFO
LOG_FORMAT=%(asctime)s - %(name)s - %(levelname)s - %(message)s
""")
        print("Created default .env file")


async def _with_app(callback, env_file=".env"):
    """Run ``callback(app)`` between connection setup and cleanup."""
    app = create_app(env_file=env_file, show_banner=False)
    await app.initialize()
    try:
        return await callback(app)
    finally:
        await app.cleanup()


def migrate():
    """Create the messenger tables."""
    async def noop(app):
        print("Messenger tables are ready")

    asyncio.run(_with_app(noop))


def unlock_expired(transport=None):
    """Run one stale-lock sweep."""
    async def sweep(app):
        count = await app.transports.get_transport(transport).unlock_expired_messages()
        print(f"Unlocked {count} expired message(s)")

    asyncio.run(_with_app(sweep))


def queue_depth(queue=None, transport=None):
    """Print the number of pending messages."""
    async def depth(app):
        count = await app.transports.get_transport(transport).get_queue_depth(queue)
        print(f"Pending messages{f' on {queue}' if queue else ''}: {count}")

    asyncio.run(_with_app(depth))


def list_failed(queue=None, limit=50, transport=None):
    """Print dead-letter rows, newest first."""
    async def failed(app):
        rows = await app.transports.get_transport(transport).get_failed_messages(queue, limit)
        if not rows:
            print("No failed messages")
        for row in rows:
            print(
                f"[{row.failed_at}] #{row.id} message={row.message_id} queue={row.queue_name} "
                f"retries={row.retry_count}/{row.max_retries} {row.error_class}: {row.error}"
            )

    asyncio.run(_with_app(failed))


def work(handler=DEFAULT_HANDLER, transport=None, worker_id=None, workers=1, **worker_options):
    """Start message worker(s) to process queued messages."""
    from core.worker_manager import WorkerManager, run_worker

    create_env_file()

    if workers > 1:
        manager = WorkerManager(handler, base_worker_id=worker_id, transport=transport)
        manager.start_workers(workers, **worker_options)
        print(f"Started {manager.get_worker_count()} workers. Press Ctrl+C to stop\n")
        try:
            manager.join()
        except KeyboardInterrupt:
            pass
        finally:
            manager.stop_workers()
        return

    Application.print_banner()
    print(f"Starting message worker with handler: {handler}")
    print(f"Transport: {transport or 'default'}")
    print(f"Press Ctrl+C to stop gracefully\n")

    asyncio.run(run_worker(handler, worker_id, ".env", transport, worker_options))


def main():
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(description="DbMessenger - durable database-backed message transport")
    parser.add_argument('--init', action='store_true', help="Write a default .env file")
    parser.add_argument('--migrate', action='store_true', help="Create the messenger tables")
    parser.add_argument('--work', action='store_true', help="Start worker(s) to process messages")
    parser.add_argument('--unlock-expired', action='store_true', help="Return messages with expired locks to pending")
    parser.add_argument('--queue-depth', action='store_true', help="Print the number of pending messages")
    parser.add_argument('--failed', action='store_true', help="List failed (dead-letter) messages")
    parser.add_argument('--transport', type=str, help="Transport name (default: MESSENGER_TRANSPORT)")
    parser.add_argument('--queue', type=str, help="Restrict --queue-depth / --failed to one queue")
    parser.add_argument('--limit', type=int, default=50, help="Rows shown by --failed (default: 50)")
    parser.add_argument('--handler', type=str, default=DEFAULT_HANDLER, help="Handler as module:callable")
    parser.add_argument('--worker-id', type=str, help="Worker identity (default: MESSENGER_WORKER_ID or generated)")
    parser.add_argument('--workers', type=int, default=1, help="Number of worker processes (default: 1)")
    parser.add_argument('--batch-size', type=int, default=10, help="Messages claimed per poll (default: 10)")
    parser.add_argument('--sleep', type=float, default=3, help="Seconds to sleep when no message is available (default: 3)")
    parser.add_argument('--max-messages', type=int, help="Maximum number of messages to process")
    parser.add_argument('--max-time', type=int, help="Maximum time in seconds to run")
    parser.add_argument('--timeout', type=float, default=60, help="Maximum seconds a handler can run (default: 60)")
    parser.add_argument('--retry-delay', type=int, default=0, help="Seconds before a failed message is retried (default: 0)")
    parser.add_argument('--unlock-interval', type=float, default=60, help="Seconds between stale-lock sweeps (default: 60)")

    args = parser.parse_args()

    if args.init:
        create_env_file()
        print("DbMessenger project initialized successfully!")
        return

    if args.migrate:
        migrate()
        return

    if args.unlock_expired:
        unlock_expired(args.transport)
        return

    if args.queue_depth:
        queue_depth(args.queue, args.transport)
        return

    if args.failed:
        list_failed(args.queue, args.limit, args.transport)
        return

    if args.work:
        work(
            handler=args.handler,
            transport=args.transport,
            worker_id=args.worker_id,
            workers=args.workers,
            batch_size=args.batch_size,
            sleep=args.sleep,
            max_messages=args.max_messages,
            max_time=args.max_time,
            timeout=args.timeout,
            retry_delay=args.retry_delay,
            unlock_interval=args.unlock_interval,
        )
        return

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
