import logging
import sys
import os
from logging import Handler

# tqdm drives the polling progress bar, so console logging has to go through it.
from tqdm import tqdm

LOGGER_NAME = "translatr_sync"


class TqdmLoggingHandler(Handler):
    """
    Custom logging handler that uses tqdm.write to output log messages.
    This prevents log messages from tearing the job progress bar while a
    translation job is being polled.
    """
    def __init__(self, level=logging.NOTSET):
        super().__init__(level)

    def emit(self, record):
        try:
            msg = self.format(record)
            tqdm.write(msg, file=sys.stderr)  # Write to stderr to match tqdm's default
            self.flush()
        except (KeyboardInterrupt, SystemExit):
            raise
        except Exception:
            self.handleError(record)


def setup_logger(log_level_str: str, log_file_path: str, log_to_console: bool) -> logging.Logger:
    """
    Set up the logger shared by the synchronization engine and its entry point.

    Configures a logger with a file handler and a tqdm-aware stream handler.

    Args:
        log_level_str: The logging level as a string (e.g., 'INFO', 'DEBUG').
        log_file_path: The path to the log file. An empty value disables file logging.
        log_to_console: A boolean indicating whether to log to the console.

    Returns:
        The configured logger instance.
    """
    logger = logging.getLogger(LOGGER_NAME)

    log_level = getattr(logging, log_level_str.upper(), logging.INFO)
    logger.setLevel(log_level)

    # Clear any existing handlers to prevent duplicate logging
    if logger.hasHandlers():
        logger.handlers.clear()

    logger.propagate = False

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    # --- File Handler ---
    if log_file_path:
        log_dir = os.path.dirname(log_file_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file_path, encoding='utf-8')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    # --- End File Handler ---

    # --- Console Handler ---
    if log_to_console:
        tqdm_handler = TqdmLoggingHandler()
        # Console output stays terse; the file keeps timestamps.
        tqdm_handler.setFormatter(logging.Formatter('%(message)s'))
        logger.addHandler(tqdm_handler)
    # --- End Console Handler ---

    return logger
