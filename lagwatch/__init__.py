"""Kafka consumer lag data collection: configuration, offsets-topic decoding, cluster and consumer modules."""

__version__ = "0.1.0"