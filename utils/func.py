import asyncio
import datetime
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import yaml
from colorama import Fore, init

log = logging.getLogger(__name__)

T = TypeVar('T')


class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds colors to log messages based on severity level."""

    def format(self, record):
        LOG_COLORS = {
            "DEBUG": Fore.CYAN,
            "INFO": Fore.GREEN,
            "WARNING": Fore.YELLOW,
            "ERROR": Fore.RED,
            "CRITICAL": Fore.RED + "\033[1m",
        }
        log_color = LOG_COLORS.get(record.levelname, Fore.WHITE)

        timestamp = datetime.datetime.fromtimestamp(
            record.created).strftime('%H:%M:%S')
        message = record.getMessage()

        # Display: [HH:MM:SS] LEVEL    [file:line] - message
        return f"{log_color}[{timestamp}] {record.levelname:<8} [{record.filename}:{record.lineno}] {Fore.RESET}- {message}"


def load_config(path: str = "config.yml") -> Dict[str, Any]:
    """
    Loads configuration from the YAML file without using logging.

    Args:
        path: Path of the YAML configuration file

    Returns:
        Dict[str, Any]: Configuration data, empty when the file is missing or invalid
    """
    try:
        with open(path, "r", encoding="utf-8") as file:
            data = yaml.safe_load(file)
    except Exception:
        data = {}
    return data or {}


def setup_logging(debug_mode: bool = False, log_file: Optional[str] = "app.log") -> logging.Logger:
    """
    Configures logging: sets up a file handler and a console handler with colors.

    Args:
        debug_mode (bool): Whether to enable debug logging to console
        log_file: File that receives the full DEBUG log, None disables it

    Returns:
        logging.Logger: Configured root logger
    """
    init(autoreset=True)

    # Remove any existing handlers to ensure basicConfig applies correctly
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    if log_file:
        logging.basicConfig(
            level=logging.DEBUG,
            filename=log_file,
            filemode="a",
            format="[%(filename)s] %(levelname)s : %(message)s",
            encoding="utf-8",
        )
    else:
        logging.root.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler()

    if debug_mode:
        console_handler.setLevel(logging.DEBUG)
    else:
        console_handler.setLevel(logging.INFO)

    console_handler.setFormatter(ColoredFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(console_handler)

    # Silence noisy third-party libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.client").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return root_logger


def preview(text: Optional[str], limit: int = 100) -> str:
    """Short single-line preview of a text for log lines."""
    if not text:
        return ""
    flat = " ".join(str(text).split())
    if len(flat) <= limit:
        return flat
    return flat[:limit] + "..."


async def retry_with_backoff(
    func_to_retry: Callable[[], Awaitable[T]],
    max_retries: int = 2,
    base_delay: float = 1,
    should_retry: Optional[Callable[[Exception], bool]] = None
) -> T:
    """
    Retry an async function with exponential backoff.

    The delay before attempt n+1 is base_delay * 2^(n-1).

    Args:
        func_to_retry: Async function to retry
        max_retries: Maximum number of attempts
        base_delay: Base delay in seconds (doubles each retry)
        should_retry: Predicate deciding whether an error is retried,
                      every error is retried when None

    Returns:
        Result of the function call

    Raises:
        The last exception if all attempts fail or the error is not retryable
    """
    attempts = max(1, max_retries)

    for attempt in range(attempts):
        try:
            return await func_to_retry()
        except Exception as e:
            if should_retry is not None and not should_retry(e):
                raise
            if attempt == attempts - 1:
                raise

            delay = base_delay * (2 ** attempt)
            log.warning(
                f"Attempt {attempt + 1}/{attempts} failed. Retrying in {delay}s. Error: {str(e)}"
            )
            await asyncio.sleep(delay)
