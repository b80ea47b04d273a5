"""
Configuration management for the image crawler.
"""

import yaml
import logging
from pathlib import Path
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field, fields


DEFAULT_USER_AGENTS = [
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) '
    'Chrome/58.0.3029.110 Safari/537.3',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:55.0) Gecko/20100101 Firefox/55.0',
]


@dataclass
class CrawlerConfig:
    """Configuration for crawler behavior."""
    max_depth: int = 1
    concurrency: int = 5
    min_request_interval: float = 0.2
    max_concurrent_requests: int = 5
    request_timeout: float = 5.0
    retry_attempts: int = 3
    user_agents: List[str] = field(default_factory=lambda: list(DEFAULT_USER_AGENTS))
    render_fallback: bool = True
    render_timeout: float = 30.0
    render_wait_after_load: float = 0.0
    max_content_size: int = 10 * 1024 * 1024
    stats_interval: float = 30.0


@dataclass
class StorageConfig:
    """Configuration for the image index and asset store."""
    output_dir: str = 'images'
    index_file: str = 'index.json'
    images_dir: str = 'images'
    download_images: bool = True
    skip_existing_assets: bool = True

    @property
    def index_path(self) -> Path:
        return Path(self.output_dir) / self.index_file

    @property
    def assets_path(self) -> Path:
        return Path(self.output_dir) / self.images_dir


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = 'INFO'
    file: str = 'logs/crawler.log'
    format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int = 8000
    metrics_enabled: bool = False


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Config':
        """Build a configuration from a (possibly partial) mapping."""
        data = data or {}
        if not isinstance(data, dict):
            raise ValueError("Configuration must be a mapping of sections")
        unknown = set(data) - {f.name for f in fields(cls)}
        if unknown:
            raise ValueError(f"Unknown configuration sections: {sorted(unknown)}")

        return cls(
            crawler=_build_section(CrawlerConfig, data.get('crawler')),
            storage=_build_section(StorageConfig, data.get('storage')),
            logging=_build_section(LoggingConfig, data.get('logging')),
            monitoring=_build_section(MonitoringConfig, data.get('monitoring')),
        )

    def validate(self):
        """Validate configuration values."""
        crawler = self.crawler

        if crawler.max_depth < 1:
            raise ValueError("max_depth must be at least 1")

        if crawler.concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        if crawler.min_request_interval < 0:
            raise ValueError("min_request_interval must be non-negative")

        if crawler.max_concurrent_requests < 1:
            raise ValueError("max_concurrent_requests must be at least 1")

        if crawler.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")

        if crawler.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")

        if not crawler.user_agents:
            raise ValueError("At least one user agent must be provided")

        if not self.storage.output_dir:
            raise ValueError("storage.output_dir must not be empty")

        if not isinstance(logging.getLevelName(self.logging.level.upper()), int):
            raise ValueError(f"Unknown log level: {self.logging.level}")


def _build_section(section_cls, values: Optional[Dict[str, Any]]):
    if values is None:
        return section_cls()
    if not isinstance(values, dict):
        raise ValueError(f"Configuration section for {section_cls.__name__} must be a mapping")
    return section_cls(**values)


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r', encoding='utf-8') as file:
            config_data = yaml.safe_load(file)

        try:
            self._config = Config.from_dict(config_data)
        except TypeError as e:
            # Unknown key inside a section
            raise ValueError(f"Invalid configuration in {self.config_path}: {e}") from e

        self._config.validate()
        logging.getLogger(__name__).debug("Configuration validation passed")
        return self._config

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ValueError("Configuration not loaded. Call load_config() first.")
        return self._config


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from file, or return validated defaults."""
    if config_path is None:
        config = Config()
        config.validate()
        return config
    return ConfigManager(config_path).load_config()
