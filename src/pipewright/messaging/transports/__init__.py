"""
Built-in transports. Importing this package registers their factories.
"""

from . import memory, redis_streams, sqs

__all__ = ["memory", "redis_streams", "sqs"]
