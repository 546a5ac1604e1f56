"""
Telegram Kafka Bridge

Service for reading updates from a Telegram bot (Bot API long polling)
and publishing them, in order and at least once, to a Kafka topic.
"""

__version__ = "1.0.0"
__author__ = "YuDev"
__description__ = "At-least-once bridge from Telegram bot updates to Kafka"
