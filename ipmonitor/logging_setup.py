"""Logging configuration for the IP monitor.

Sets up a dual-handler logging pipeline:

1. **Console** -- :class:`SafeStreamHandler` that gracefully handles
   Unicode on Windows by falling back to ``cp1252`` replacement
   encoding.
2. **File** (optional) -- :class:`CompressedRotatingFileHandler` with
   automatic gzip rotation (5 MiB per file, 5 backups).

Usage::

    from ipmonitor.logging_setup import setup_logging
    setup_logging("DEBUG", log_file="logs/ip_monitor.log")
"""

import gzip
import logging
import os
import shutil
import sys
from logging.handlers import RotatingFileHandler
from typing import List, Optional

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s - %(message)s'


class CompressedRotatingFileHandler(RotatingFileHandler):
    """RotatingFileHandler that gzip-compresses rotated log files."""

    def rotation_filename(self, default_name: str) -> str:
        """Append ``.gz`` to the rotated file name."""
        return f"{default_name}.gz"

    def rotate(self, source: str, dest: str) -> None:
        """Compress *source* into *dest* using gzip and remove *source*."""
        with open(source, 'rb') as f_in:
            with gzip.open(dest, 'wb') as f_out:
                shutil.copyfileobj(f_in, f_out)
        os.remove(source)


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that never crashes on unencodable characters.

    Windows consoles default to a narrow code page; the handler retries
    with ``cp1252`` replacement so an emoji in a notification preview
    cannot take the monitor down.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            stream = self.stream
            try:
                stream.write(msg + self.terminator)
            except UnicodeEncodeError:
                safe_msg = msg.encode(
                    'cp1252', errors='replace',
                ).decode('cp1252')
                stream.write(safe_msg + self.terminator)
            self.flush()
        except Exception:
            self.handleError(record)


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure the root logger with console and optional file handlers.

    Args:
        log_level: Logging level name (e.g. ``"DEBUG"``, ``"INFO"``).
        log_file: Path of the rotating log file; ``None`` disables file
            logging.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handlers: List[logging.Handler] = [SafeStreamHandler(sys.stdout)]
    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handlers.append(CompressedRotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8',
        ))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # aiohttp access/client chatter is noise at INFO
    logging.getLogger("aiohttp").setLevel(max(level, logging.WARNING))
