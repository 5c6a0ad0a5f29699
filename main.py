import os
import signal
import sys
import threading
import traceback
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

# Load .env before reading settings
env_path = Path(__file__).resolve().parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

from duke.core.config import load_settings  # noqa: E402
from duke.utils.exceptions import ConfigError  # noqa: E402
from duke.utils.logger import get_logger, setup_logger  # noqa: E402

logger = get_logger(__name__)


def _unhandled_exception(exc_type, exc_value, exc_tb):
    """Log unhandled exceptions before the process exits."""
    if exc_type is KeyboardInterrupt:
        sys.__excepthook__(exc_type, exc_value, exc_tb)
        return
    msg = "".join(traceback.format_exception(exc_type, exc_value, exc_tb))
    print("Unhandled exception (process will exit):\n" + msg, file=sys.stderr, flush=True)
    sys.__excepthook__(exc_type, exc_value, exc_tb)


def handle_command(line: str) -> bool:
    """Handle one admin console line. Returns False when the process should stop."""
    command = line.strip()
    if command == "k":
        logger.info("Kill command received")
        return False
    if command:
        logger.warning("Unrecognised command", command=command)
    return True


def watch_stdin() -> None:
    """Read admin commands from stdin; "k" terminates the process."""
    for line in sys.stdin:
        if not handle_command(line):
            os.kill(os.getpid(), signal.SIGTERM)
            return


if __name__ == "__main__":
    """
    Entry point for the Senior Duke portal.
    Starts the API server, the notification loop and the stdin admin console.
    """
    sys.excepthook = _unhandled_exception

    try:
        settings = load_settings()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logger(
        log_level=settings.logging.level,
        log_format=settings.logging.format,
        file_path=settings.logging.file_path,
        max_bytes=settings.logging.max_bytes,
        backup_count=settings.logging.backup_count,
    )

    host, port = settings.server.bind_address()
    tls = {}
    if settings.server.tls_enabled:
        tls = {"ssl_keyfile": settings.server.tls_key, "ssl_certfile": settings.server.tls_cert}

    print(f"Starting Senior Duke on {'https' if tls else 'http'}://{host}:{port}")
    print("Type k and press enter to stop the server")

    threading.Thread(target=watch_stdin, daemon=True, name="stdin-watcher").start()

    try:
        uvicorn.run("web.main:app", host=host, port=port, log_level=settings.logging.level.lower(), **tls)
    except KeyboardInterrupt:
        print("\n\nShutdown complete.")
        sys.exit(0)
    except Exception as e:
        print(f"\nFatal error: {e}", file=sys.stderr)
        traceback.print_exc(file=sys.stderr)
        sys.exit(1)
