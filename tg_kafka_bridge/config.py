"""
Configuration management for tg-kafka-bridge.
Loads and validates configuration from YAML files using Pydantic.
"""

import os
import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, ConfigDict


logger = logging.getLogger(__name__)


class TelegramConfig(BaseModel):
    """Telegram Bot API configuration."""
    model_config = ConfigDict(extra='forbid')

    bot_token: Optional[str] = Field(
        default=None,
        description="Bot token from @BotFather; takes precedence over bot_token_file"
    )
    bot_token_file: str = Field(
        default="/run/secrets/telegram_bot_token",
        description="Path to a file holding the bot token"
    )
    api_url: str = Field(
        default="https://api.telegram.org",
        description="Bot API root URL"
    )
    source_id: str = Field(
        default="telegram-bot",
        min_length=1,
        description="Feed identifier used in envelopes and checkpoints"
    )
    poll_timeout_s: int = Field(
        default=30,
        ge=0,
        le=50,
        description="Long-poll timeout passed to getUpdates (seconds)"
    )
    limit: int = Field(
        default=100,
        ge=1,
        le=100,
        description="Maximum updates per getUpdates call"
    )
    allowed_updates: Optional[List[str]] = Field(
        default=None,
        description="Update types to receive, None for Telegram's default"
    )
    request_timeout_margin_s: float = Field(
        default=10.0,
        ge=1.0,
        le=60.0,
        description="HTTP read timeout on top of the long-poll timeout"
    )
    stale_poll_delay_s: float = Field(
        default=0.5,
        ge=0.0,
        le=30.0,
        description="Pause after a poll that only redelivered unconfirmed updates"
    )

    @field_validator('api_url')
    @classmethod
    def validate_api_url(cls, v):
        if not v.startswith(('http://', 'https://')):
            raise ValueError("api_url must start with http:// or https://")
        return v.rstrip('/')


class FiltersConfig(BaseModel):
    """Update filtering configuration."""
    model_config = ConfigDict(extra='forbid')

    allow_bots: bool = Field(
        default=False,
        description="Whether to forward messages sent by bots"
    )
    allow_private_chats: bool = Field(
        default=False,
        description="Whether to forward messages from private chats"
    )
    include_channel_posts: bool = Field(
        default=False,
        description="Whether channel posts count as messages"
    )
    max_text_length: int = Field(
        default=4096,
        ge=1,
        le=65536,
        description="Maximum allowed message text length"
    )
    chat_ids: List[int] = Field(
        default_factory=list,
        description="Optional allow-list of chat IDs, empty for all chats"
    )


class KafkaConfig(BaseModel):
    """Kafka producer configuration."""
    model_config = ConfigDict(extra='forbid')

    bootstrap_servers: str = Field(
        default="localhost:9092",
        description="Comma-separated host:port list"
    )
    client_id: str = Field(default="tg-kafka-bridge")
    acks: str = Field(
        default="all",
        description="Producer acks: all, 1 or 0"
    )
    enable_idempotence: bool = Field(default=True)
    security_protocol: str = Field(default="PLAINTEXT")
    sasl_mechanism: Optional[str] = Field(
        default=None,
        description="e.g. SCRAM-SHA-512, PLAIN"
    )
    sasl_username: Optional[str] = Field(default=None)
    sasl_password: Optional[str] = Field(default=None)
    request_timeout_ms: int = Field(default=30000, ge=1000, le=300000)
    linger_ms: int = Field(default=5, ge=0, le=10000)
    compression_type: Optional[str] = Field(default=None)

    @field_validator('acks', mode='before')
    @classmethod
    def validate_acks(cls, v):
        v = str(v).lower()
        if v not in ('all', '1', '0'):
            raise ValueError("acks must be one of: all, 1, 0")
        return v

    @field_validator('security_protocol')
    @classmethod
    def validate_security_protocol(cls, v):
        valid = ['PLAINTEXT', 'SSL', 'SASL_PLAINTEXT', 'SASL_SSL']
        if v.upper() not in valid:
            raise ValueError(f"Invalid security protocol. Must be one of: {valid}")
        return v.upper()

    @field_validator('compression_type')
    @classmethod
    def validate_compression_type(cls, v):
        if v is not None and v not in ('gzip', 'snappy', 'lz4', 'zstd'):
            raise ValueError("compression_type must be gzip, snappy, lz4 or zstd")
        return v


class RedisOutputConfig(BaseModel):
    """Redis Streams output configuration."""
    model_config = ConfigDict(extra='forbid')

    url: str = Field(default="redis://localhost:6379/0")
    maxlen_approx: int = Field(default=1_000_000, ge=1000)
    max_connections: int = Field(default=10, ge=1, le=100)
    socket_timeout: float = Field(default=5.0, gt=0)
    socket_connect_timeout: float = Field(default=5.0, gt=0)

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        if not v.startswith(('redis://', 'rediss://')):
            raise ValueError("Redis URL must start with redis:// or rediss://")
        return v


class OutputConfig(BaseModel):
    """Downstream log configuration."""
    model_config = ConfigDict(extra='forbid')

    type: str = Field(
        default="kafka",
        description="Transport type: kafka or redis"
    )
    topic: str = Field(
        default="telegram-updates",
        min_length=1,
        description="Kafka topic or Redis stream key"
    )
    kafka: KafkaConfig = Field(default_factory=KafkaConfig)
    redis: RedisOutputConfig = Field(default_factory=RedisOutputConfig)

    @field_validator('type')
    @classmethod
    def validate_type(cls, v):
        if v.lower() not in ('kafka', 'redis'):
            raise ValueError("Output type must be kafka or redis")
        return v.lower()


class BatchConfig(BaseModel):
    """Batching and in-flight budget configuration."""
    model_config = ConfigDict(extra='forbid')

    max_count: int = Field(default=100, ge=1, le=10000)
    max_bytes: int = Field(default=1_048_576, ge=1024)
    linger_ms: int = Field(
        default=50,
        ge=0,
        le=60000,
        description="Max time the first envelope of a batch waits for it to fill"
    )
    max_inflight_count: int = Field(default=1000, ge=1)
    max_inflight_bytes: int = Field(default=16_777_216, ge=1024)
    submit_timeout_s: float = Field(
        default=30.0,
        gt=0,
        description="How long submit waits for in-flight budget"
    )
    workers: int = Field(default=4, ge=1, le=64)


class RetryConfig(BaseModel):
    """Publish retry configuration."""
    model_config = ConfigDict(extra='forbid')

    base_ms: int = Field(default=100, ge=1, le=60000)
    multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    cap_ms: int = Field(default=5000, ge=1, le=300000)
    jitter_factor: float = Field(default=0.2, ge=0.0, le=1.0)
    max_attempts: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Attempts per batch, the first one included"
    )


class ReconnectConfig(BaseModel):
    """Reconnect backoff configuration."""
    model_config = ConfigDict(extra='forbid')

    base_ms: int = Field(default=100, ge=1, le=60000)
    multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    cap_ms: int = Field(default=30000, ge=1, le=600000)
    jitter_factor: float = Field(default=0.2, ge=0.0, le=1.0)
    max_attempts: int = Field(
        default=0,
        ge=0,
        description="Reconnect attempts before degrading, 0 for unlimited"
    )
    stability_s: float = Field(
        default=30.0,
        ge=0,
        description="How long a connection must last before the attempt counter resets"
    )


class DedupConfig(BaseModel):
    """Dedup window configuration."""
    model_config = ConfigDict(extra='forbid')

    max_entries: int = Field(default=100_000, ge=1)
    ttl_s: Optional[float] = Field(
        default=3600.0,
        gt=0,
        description="Maximum age of a remembered key, None for count-only"
    )


class CheckpointConfig(BaseModel):
    """Checkpoint persistence configuration."""
    model_config = ConfigDict(extra='forbid')

    backend: str = Field(
        default="file",
        description="Checkpoint backend: file or redis"
    )
    path: str = Field(
        default="/data/checkpoint.json",
        description="Checkpoint file path for the file backend"
    )
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL for the redis backend"
    )
    key_prefix: str = Field(default="tg-kafka-bridge:checkpoint")

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v):
        if v.lower() not in ('file', 'redis'):
            raise ValueError("Checkpoint backend must be file or redis")
        return v.lower()


class ShutdownConfig(BaseModel):
    """Shutdown configuration."""
    model_config = ConfigDict(extra='forbid')

    drain_timeout_s: float = Field(
        default=10.0,
        ge=0,
        le=300,
        description="How long shutdown waits for in-flight envelopes"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""
    model_config = ConfigDict(extra='forbid')

    level: str = Field(
        default="INFO",
        description="Logging level"
    )
    json_format: bool = Field(
        default=True,
        description="Enable JSON log formatting"
    )
    enable_correlation: bool = Field(
        default=True,
        description="Enable correlation IDs in logs"
    )

    @field_validator('level')
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()


class AppConfig(BaseModel):
    """Main application configuration."""
    model_config = ConfigDict(extra='forbid')

    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    filters: FiltersConfig = Field(default_factory=FiltersConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    shutdown: ShutdownConfig = Field(default_factory=ShutdownConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# Environment variable mappings
ENV_MAPPINGS = {
    'TELEGRAM_BOT_TOKEN': 'telegram.bot_token',
    'TELEGRAM_BOT_TOKEN_FILE': 'telegram.bot_token_file',
    'TELEGRAM_API_URL': 'telegram.api_url',
    'TELEGRAM_SOURCE_ID': 'telegram.source_id',
    'TELEGRAM_POLL_TIMEOUT': 'telegram.poll_timeout_s',
    'FILTERS_ALLOW_BOTS': 'filters.allow_bots',
    'FILTERS_ALLOW_PRIVATE_CHATS': 'filters.allow_private_chats',
    'FILTERS_CHAT_IDS': 'filters.chat_ids',
    'OUTPUT_TYPE': 'output.type',
    'KAFKA_TOPIC': 'output.topic',
    'KAFKA_BOOTSTRAP_SERVERS': 'output.kafka.bootstrap_servers',
    'KAFKA_SECURITY_PROTOCOL': 'output.kafka.security_protocol',
    'KAFKA_SASL_MECHANISM': 'output.kafka.sasl_mechanism',
    'KAFKA_SASL_USERNAME': 'output.kafka.sasl_username',
    'KAFKA_SASL_PASSWORD': 'output.kafka.sasl_password',
    'REDIS_URL': 'output.redis.url',
    'RETRY_MAX_ATTEMPTS': 'retry.max_attempts',
    'RECONNECT_MAX_ATTEMPTS': 'reconnect.max_attempts',
    'CHECKPOINT_BACKEND': 'checkpoint.backend',
    'CHECKPOINT_PATH': 'checkpoint.path',
    'CHECKPOINT_REDIS_URL': 'checkpoint.redis_url',
    'SHUTDOWN_DRAIN_TIMEOUT': 'shutdown.drain_timeout_s',
    'LOG_LEVEL': 'logging.level',
    'LOG_JSON': 'logging.json_format'
}

# Values that must stay strings even when they look numeric
RAW_STRING_PATHS = {
    'telegram.bot_token',
    'telegram.bot_token_file',
    'telegram.source_id',
    'output.topic',
    'output.kafka.bootstrap_servers',
    'output.kafka.sasl_username',
    'output.kafka.sasl_password',
    'checkpoint.path',
}

# Values that are always lists, even when a single item is given
LIST_PATHS = {
    'filters.chat_ids',
}

SECRET_MAPPINGS = {
    '/run/secrets/telegram_bot_token': 'telegram.bot_token',
    '/run/secrets/kafka_sasl_username': 'output.kafka.sasl_username',
    '/run/secrets/kafka_sasl_password': 'output.kafka.sasl_password',
}


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to config file, defaults to CONFIG_PATH env var or ./config.yml

    Returns:
        Loaded and validated configuration

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If config validation fails
    """
    # Determine config file path
    if config_path is None:
        config_path = os.getenv('CONFIG_PATH', './config.yml')

    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_file}")

    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            yaml_data = yaml.safe_load(f) or {}

        logger.info(f"Loaded config from: {config_file}")

        yaml_data = _apply_env_overrides(yaml_data)
        yaml_data = _load_secrets(yaml_data)

        config = AppConfig(**yaml_data)

        logger.info(
            "Configuration loaded successfully",
            extra={
                "component": "config",
                "config_file": str(config_file),
                "source_id": config.telegram.source_id,
                "output_type": config.output.type,
                "topic": config.output.topic,
                "checkpoint_backend": config.checkpoint.backend
            }
        )

        return config

    except yaml.YAMLError as e:
        logger.error(f"Failed to parse YAML config: {e}")
        raise ValueError(f"Invalid YAML config: {e}") from e

    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        raise


def _apply_env_overrides(config_data: dict) -> dict:
    """
    Apply environment variable overrides to config data.

    Supports dot notation for nested keys:
    - TELEGRAM_BOT_TOKEN -> telegram.bot_token
    - KAFKA_BOOTSTRAP_SERVERS -> output.kafka.bootstrap_servers
    - FILTERS_CHAT_IDS -> filters.chat_ids (comma-separated)

    Args:
        config_data: Base configuration data

    Returns:
        Configuration data with environment overrides applied
    """
    for env_var, config_path in ENV_MAPPINGS.items():
        env_value = os.getenv(env_var)
        if env_value is not None:
            _set_nested_value(config_data, config_path, env_value)
            logger.debug(f"Applied env override: {env_var} -> {config_path}")

    return config_data


def _load_secrets(config_data: dict, secret_mappings: Optional[dict] = None) -> dict:
    """
    Load secrets from Docker secrets files if available.
    A secret never overrides a value that is already set.

    Args:
        config_data: Configuration data
        secret_mappings: secret file -> config path, defaults to SECRET_MAPPINGS

    Returns:
        Configuration data with secrets loaded
    """
    for secret_file, config_path in (secret_mappings or SECRET_MAPPINGS).items():
        if _get_nested_value(config_data, config_path) is not None:
            continue
        try:
            secret_path = Path(secret_file)
            if secret_path.exists():
                with open(secret_path, 'r', encoding='utf-8') as f:
                    secret_value = f.read().strip()

                if secret_value:
                    _set_nested_value(config_data, config_path, secret_value)
                    logger.debug(f"Loaded secret from {secret_file}")

        except OSError as e:
            logger.warning(f"Failed to load secret from {secret_file}: {e}")

    return config_data


def _get_nested_value(data: dict, path: str):
    current = data
    for key in path.split('.'):
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    return current


def _set_nested_value(data: dict, path: str, value: str) -> None:
    """
    Set a nested dictionary value using dot notation.

    Args:
        data: Dictionary to modify
        path: Dot-separated path (e.g., 'output.kafka.bootstrap_servers')
        value: Value to set (string, converted unless the path is raw-string)
    """
    keys = path.split('.')
    current = data

    # Navigate to parent of target key
    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]

    final_key = keys[-1]
    if path in RAW_STRING_PATHS:
        current[final_key] = value
        return

    converted = _convert_env_value(value)
    if path in LIST_PATHS and not isinstance(converted, list):
        converted = [converted]
    current[final_key] = converted


def _convert_env_value(value: str):
    """
    Convert environment variable string to appropriate Python type.

    Args:
        value: String value from environment

    Returns:
        Converted value (bool, int, float, list, or str)
    """
    # Boolean conversion
    if value.lower() in ('true', 'yes', 'on'):
        return True
    elif value.lower() in ('false', 'no', 'off'):
        return False

    # List conversion (for chat IDs)
    if ',' in value:
        try:
            return [int(x.strip()) for x in value.split(',')]
        except ValueError:
            pass

    # Numeric conversion
    try:
        if '.' in value:
            return float(value)
        else:
            return int(value)
    except ValueError:
        pass

    return value


def load_token_from_file(file_path: str) -> str:
    """
    Load a token from a file.

    Args:
        file_path: Path to token file

    Returns:
        Token string

    Raises:
        FileNotFoundError: If token file not found
        ValueError: If token is empty
    """
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            token = f.read().strip()
    except FileNotFoundError:
        logger.error(f"Token file not found: {file_path}")
        raise

    if not token:
        raise ValueError(f"Token file is empty: {file_path}")

    logger.info(f"Loaded token from {file_path}")
    return token


def resolve_bot_token(config: AppConfig) -> str:
    """
    Return the bot token from config, falling back to the token file.

    Raises:
        FileNotFoundError: If no token is configured and the file is missing
        ValueError: If the token file is empty
    """
    if config.telegram.bot_token:
        return config.telegram.bot_token
    return load_token_from_file(config.telegram.bot_token_file)


def validate_secrets_exist(config: AppConfig) -> None:
    """
    Validate that required secrets are available.

    Args:
        config: Application configuration

    Raises:
        FileNotFoundError: If required secret files are missing
        ValueError: If SASL is configured without credentials
    """
    missing_secrets = []
    if not config.telegram.bot_token and not Path(config.telegram.bot_token_file).exists():
        missing_secrets.append(config.telegram.bot_token_file)

    if missing_secrets:
        raise FileNotFoundError(
            f"Required secret files not found: {', '.join(missing_secrets)}"
        )

    kafka = config.output.kafka
    if config.output.type == 'kafka' and kafka.sasl_mechanism:
        if not kafka.sasl_username or not kafka.sasl_password:
            raise ValueError("SASL mechanism configured without sasl_username/sasl_password")

    if config.checkpoint.backend == 'redis' and not config.checkpoint.redis_url:
        raise ValueError("checkpoint.redis_url is required for the redis checkpoint backend")

    logger.info("All required secrets found")
