"""
Broker Harness - Correctness verification for a distributed append-only streaming broker
"""

__version__ = "0.1.0"
