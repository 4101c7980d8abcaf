import logging
import logging.handlers
import os
import platform
from pathlib import Path

import psutil
from dotenv import load_dotenv

from core.messenger.transport_manager import TransportManager
from core.model import Model
from core.redis_manager import redis_manager

VERSION = "0.1.0"

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _file_handler(log_file: str) -> logging.Handler:
    """Rotating file handler; LOG_ROTATION_TYPE picks size- or time-based rotation."""
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    backup_count = int(os.getenv("LOG_BACKUP_COUNT", "5"))

    if os.getenv("LOG_ROTATION_TYPE", "size").lower() == "time":
        handler = logging.handlers.TimedRotatingFileHandler(
            filename=log_file,
            when=os.getenv("LOG_ROTATION_WHEN", "midnight").lower(),
            interval=int(os.getenv("LOG_ROTATION_INTERVAL", "1")),
            backupCount=backup_count,
            encoding='utf-8'
        )
        handler.suffix = os.getenv("LOG_DATE_FORMAT", "%Y-%m-%d")
        return handler

    return logging.handlers.RotatingFileHandler(
        filename=log_file,
        maxBytes=int(os.getenv("LOG_MAX_BYTES", str(10 * 1024 * 1024))),
        backupCount=backup_count,
        encoding='utf-8'
    )


class Application:
    """Process bootstrap: environment, logging, database, Redis and transports."""

    @staticmethod
    def print_banner():
        memory_gb = round(psutil.virtual_memory().total / (1024**3), 1)
        print(
            f"\nDbMessenger {VERSION} - durable database-backed message transport\n"
            f"Host {platform.node()} ({platform.system()}) | "
            f"CPU: {psutil.cpu_count(logical=True)} cores | RAM: {memory_gb} GB\n"
        )

    def __init__(self, env_file=".env", worker_id=None, show_banner=True):
        """
        Load configuration and set up logging and the database engine.

        Args:
            env_file: The environment file to load configuration from
            worker_id: Explicit worker identity for transports created by this process
            show_banner: Print the startup banner
        """
        if show_banner:
            self.print_banner()

        load_dotenv(env_file)
        self._setup_logging()

        self.worker_id = worker_id
        self.database_enabled = _env_flag("ENABLE_DATABASE", "true")
        self.redis_enabled = _env_flag("ENABLE_REDIS", "false")

        if self.database_enabled:
            Model.configure(self.database_url(), pool_pre_ping=True)
        else:
            self.logger.warning("Database is disabled; no transport can be created")

        self.transports = TransportManager()

    def _setup_logging(self):
        """Console logging plus an optional rotating log file, configured from LOG_* variables."""
        log_format = os.getenv("LOG_FORMAT", DEFAULT_LOG_FORMAT)
        handlers = [logging.StreamHandler()]

        log_file = os.getenv("LOG_FILE", "logs/messenger.log") if _env_flag("LOG_TO_FILE", "true") else None
        if log_file:
            try:
                file_handler = _file_handler(log_file)
            except OSError as e:
                print(f"Warning: Could not setup file logging ({e}), logging to console only")
                log_file = None
            else:
                file_handler.setFormatter(logging.Formatter(log_format))
                handlers.append(file_handler)

        logging.basicConfig(
            level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper()),
            format=log_format,
            handlers=handlers,
            force=True
        )

        self.logger = logging.getLogger("DbMessenger.Application")
        self.logger.info(f"Logging to {log_file or 'console only'}")

    @staticmethod
    def database_url() -> str:
        """Build the SQLAlchemy URL from DB_* variables (DATABASE_URL wins when set)."""
        url = os.getenv("DATABASE_URL")
        if url:
            return url

        connection = os.getenv("DB_CONNECTION", "mysql").lower()
        if connection == "sqlite":
            return f"sqlite+aiosqlite:///{os.getenv('DB_DATABASE_PATH', 'messenger.db')}"
        if connection != "mysql":
            raise RuntimeError(f"Unknown database connection: {connection}")

        return "mysql+aiomysql://{user}:{password}@{host}:{port}/{name}".format(
            user=os.getenv("DB_USER", "root"),
            password=os.getenv("DB_PASS", ""),
            host=os.getenv("DB_HOST", "localhost"),
            port=os.getenv("DB_PORT", "3306"),
            name=os.getenv("DB_NAME", "messenger"),
        )

    async def initialize(self):
        """Create tables, connect Redis, then bind transports to this worker."""
        if self.database_enabled:
            await Model.create_tables()

        if self.redis_enabled and not await redis_manager.initialize():
            self.logger.warning("Redis unavailable; Redis deduplication will fall back to the database")

        # Transports pick their deduplicator from what is reachable now
        self.transports.configure(worker_id=self.worker_id)

    async def cleanup(self):
        """Close Redis and database connections."""
        if self.redis_enabled:
            await redis_manager.disconnect()
        if self.database_enabled:
            await Model.cleanup()
