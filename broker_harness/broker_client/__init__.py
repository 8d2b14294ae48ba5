"""
Broker Client - contract-level access to the broker under test
"""
from .base import (
    BaseBrokerClient, BrokerError, StreamNotFoundError, StreamAlreadyExistsError,
    SubscriptionNotFoundError, SubscriptionAlreadyExistsError, RecordTooLargeError,
    ProducerClosedError, ConsumerStateError, load_client_factory
)
from .producer import Producer, BufferedProducer
from .consumer import Consumer, Responder
from .loopback import LoopbackBroker, LoopbackClient

__all__ = [
    'BaseBrokerClient',
    'BrokerError',
    'StreamNotFoundError',
    'StreamAlreadyExistsError',
    'SubscriptionNotFoundError',
    'SubscriptionAlreadyExistsError',
    'RecordTooLargeError',
    'ProducerClosedError',
    'ConsumerStateError',
    'load_client_factory',
    'Producer',
    'BufferedProducer',
    'Consumer',
    'Responder',
    'LoopbackBroker',
    'LoopbackClient',
]
