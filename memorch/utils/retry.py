"""
Retry helper shared by the Amazon Bedrock clients.
"""

import random
import time
from typing import Callable, Type, TypeVar

from botocore.exceptions import BotoCoreError, ClientError

from .logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


def call_with_backoff(operation: Callable[[], T], attempts: int, base_delay: float, error_cls: Type[Exception], service: str) -> T:
    """
    Run an AWS call, retrying client/transport errors with exponential backoff and jitter.

    Args:
        operation: Zero-argument callable performing one request
        attempts: Maximum number of attempts
        base_delay: Delay before the second attempt, doubled after each failure
        error_cls: Exception raised once attempts are exhausted or on unexpected errors
        service: Service label used in log and error messages

    Returns:
        Whatever `operation` returns

    Raises:
        error_cls: If every attempt fails
    """
    for attempt in range(attempts):
        try:
            logger.debug(f'{service} request attempt {attempt + 1}/{attempts}')
            return operation()

        except (ClientError, BotoCoreError) as e:
            logger.warning(f'{service} attempt {attempt + 1}/{attempts} failed: {e}')

            if attempt < attempts - 1:
                # Exponential backoff with jitter
                delay = base_delay * (2**attempt) + random.uniform(0, 1)
                time.sleep(delay)
            else:
                raise error_cls(f'{service} failed after {attempts} attempts: {e}')

        except error_cls:
            raise
        except Exception as e:
            logger.error(f'Unexpected error in {service}: {e}')
            raise error_cls(f'Unexpected {service} error: {e}')

    raise error_cls(f'{service} failed after {attempts} attempts')
