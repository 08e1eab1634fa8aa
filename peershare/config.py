"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass
from typing import Optional
import json

from dotenv import load_dotenv

from .transfer.chunker import CHUNK_SIZE, NOMINAL_CHUNK_SIZE


@dataclass
class Config:
    """
    PeerShare Configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (PEERSHARE_*, plus PORT for the listening port)
    2. Config file (config.json)
    3. Default values
    """
    # Coordination service
    host: str = '0.0.0.0'
    port: int = 5000
    static_dir: Optional[Path] = None

    # Sessions (seconds, 0 disables expiry)
    session_ttl: float = 0.0
    expiry_interval: float = 30.0

    # Transfer
    chunk_size: int = CHUNK_SIZE
    nominal_chunk_size: int = NOMINAL_CHUNK_SIZE
    strict_reassembly: bool = True

    # Participants
    channel_host: str = '127.0.0.1'
    server_url: str = 'http://localhost:5000'
    connect_timeout: float = 10.0

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Coordination service
        config.host = os.getenv('PEERSHARE_HOST', config.host)
        port = os.getenv('PEERSHARE_PORT') or os.getenv('PORT')
        if port:
            config.port = int(port)

        static_dir = os.getenv('PEERSHARE_STATIC_DIR')
        if static_dir:
            config.static_dir = Path(static_dir)

        # Sessions
        config.session_ttl = float(os.getenv('PEERSHARE_SESSION_TTL', config.session_ttl))
        config.expiry_interval = float(
            os.getenv('PEERSHARE_EXPIRY_INTERVAL', config.expiry_interval)
        )

        # Transfer
        config.chunk_size = int(os.getenv('PEERSHARE_CHUNK_SIZE', config.chunk_size))
        config.nominal_chunk_size = int(
            os.getenv('PEERSHARE_NOMINAL_CHUNK_SIZE', config.nominal_chunk_size)
        )
        config.strict_reassembly = os.getenv('PEERSHARE_STRICT', 'true').lower() == 'true'

        # Participants
        config.channel_host = os.getenv('PEERSHARE_CHANNEL_HOST', config.channel_host)
        config.server_url = os.getenv('PEERSHARE_SERVER_URL', config.server_url)
        config.connect_timeout = float(
            os.getenv('PEERSHARE_CONNECT_TIMEOUT', config.connect_timeout)
        )

        # Logging
        config.log_level = os.getenv('PEERSHARE_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        config.host = data.get('host', config.host)
        config.port = data.get('port', config.port)
        if data.get('static_dir'):
            config.static_dir = Path(data['static_dir'])

        config.session_ttl = data.get('session_ttl', config.session_ttl)
        config.expiry_interval = data.get('expiry_interval', config.expiry_interval)

        config.chunk_size = data.get('chunk_size', config.chunk_size)
        config.nominal_chunk_size = data.get('nominal_chunk_size', config.nominal_chunk_size)
        config.strict_reassembly = data.get('strict_reassembly', config.strict_reassembly)

        config.channel_host = data.get('channel_host', config.channel_host)
        config.server_url = data.get('server_url', config.server_url)
        config.connect_timeout = data.get('connect_timeout', config.connect_timeout)

        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'port': self.port,
            'static_dir': str(self.static_dir) if self.static_dir else None,
            'session_ttl': self.session_ttl,
            'expiry_interval': self.expiry_interval,
            'chunk_size': self.chunk_size,
            'nominal_chunk_size': self.nominal_chunk_size,
            'strict_reassembly': self.strict_reassembly,
            'channel_host': self.channel_host,
            'server_url': self.server_url,
            'connect_timeout': self.connect_timeout,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    config = Config()

    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for key in defaults.to_dict():
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "host": "0.0.0.0",
  "port": 5000,
  "static_dir": "./public",
  "session_ttl": 3600,
  "expiry_interval": 30,
  "chunk_size": 262144,
  "nominal_chunk_size": 65536,
  "strict_reassembly": true,
  "channel_host": "127.0.0.1",
  "server_url": "http://localhost:5000",
  "log_level": "INFO"
}
"""
