"""
Base classes and errors for broker clients
"""
import logging
import importlib
from abc import ABC
from typing import Callable
from ..interfaces import IBrokerClient

logger = logging.getLogger(__name__)


class BrokerError(Exception):
    """Error returned by the broker under test"""


class StreamNotFoundError(BrokerError):
    pass


class StreamAlreadyExistsError(BrokerError):
    pass


class SubscriptionNotFoundError(BrokerError):
    pass


class SubscriptionAlreadyExistsError(BrokerError):
    pass


class RecordTooLargeError(BrokerError):
    pass


class ProducerClosedError(BrokerError):
    pass


class ConsumerStateError(BrokerError):
    """Consumer-group membership used in a state that doesn't allow it"""


class BaseBrokerClient(IBrokerClient, ABC):
    """Base implementation for broker clients bound to one node address"""

    def __init__(self, address: str):
        self.address = address
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self) -> None:
        self.closed = True

    def _check_open(self) -> None:
        if self.closed:
            raise BrokerError(f"Client for {self.address} is closed")


def load_client_factory(path: str) -> Callable[[str], IBrokerClient]:
    """Resolve a "module:callable" client factory"""
    module_name, sep, attr = path.partition(':')
    if not sep or not module_name or not attr:
        raise ValueError(f"Client factory must look like 'module:callable', got {path!r}")

    module = importlib.import_module(module_name)
    try:
        factory = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"Module {module_name} has no attribute {attr}")

    if not callable(factory):
        raise ValueError(f"Client factory {path} is not callable")

    logger.debug(f"Resolved client factory {path}")
    return factory
