# basis_hedge/logger.py
import asyncio
import aiofiles
from aiocsv import AsyncWriter
import logging
import sys
import os
from typing import Optional

from .models import TradeLogEntry


class TradeAuditLog:
    """
    Append-only CSV audit trail, one row per lifecycle event.
    Decouples disk I/O from the trading loop using an asyncio Queue.
    One file per UTC calendar day; the header row is written when a file is created.
    """
    def __init__(self, log_dir: str, prefix: str = "trades"):
        self.log_dir = log_dir
        self.prefix = prefix
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None

    def path_for(self, entry: TradeLogEntry) -> str:
        day = entry.timestamp.strftime("%Y-%m-%d")
        return os.path.join(self.log_dir, f"{self.prefix}-{day}.csv")

    async def start(self):
        """
        Creates the log directory and starts the background writer.
        """
        if self.log_dir and not os.path.exists(self.log_dir):
            os.makedirs(self.log_dir, exist_ok=True)
        self._worker_task = asyncio.create_task(self._writer_worker())

    async def log_trade(self, entry: TradeLogEntry):
        """
        Non-blocking call to add an audit record to the queue.
        """
        await self._queue.put(entry)

    async def flush(self):
        """Waits until every queued record has been written."""
        await self._queue.join()

    async def stop(self):
        await self.flush()
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

    async def _write(self, entry: TradeLogEntry):
        path = self.path_for(entry)
        new_file = not os.path.exists(path) or os.path.getsize(path) == 0
        # 'a' mode appends to the file; minimal quoting escapes delimiters, quotes and line breaks
        async with aiofiles.open(path, mode="a", newline="") as f:
            writer = AsyncWriter(f, lineterminator="\n")
            if new_file:
                await writer.writerow(TradeLogEntry.HEADERS)
            await writer.writerow(entry.to_row())

    async def _writer_worker(self):
        """
        Background consumer that writes to disk.
        """
        while True:
            entry = await self._queue.get()
            try:
                await self._write(entry)
            except Exception as e:
                # Fallback to stderr if disk I/O fails, don't crash the bot
                print(f"LOGGING FAILURE: {e} | {entry.to_row()}", file=sys.stderr)
            finally:
                self._queue.task_done()


def setup_console_logger(name: str, level: str, log_file: Optional[str] = None):
    """
    Sets up the standard Python logger for console output, plus an optional file.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(module)s | %(message)s')
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

        if log_file:
            directory = os.path.dirname(log_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger
