"""Configuration management for ComfyChat.

This module provides process-level configuration using Pydantic Settings.
All values are loaded from environment variables with the COMFYCHAT_
prefix, allowing deployment tweaks without code changes.

Process configuration is distinct from the user-editable *Settings* row
kept in the local store (backend address, token, workflow, seed mode).
The values here control where that store lives, network timeouts, and how
the bundled API server binds.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (COMFYCHAT_* prefix)
2. .env file in the project root
3. Default values defined in ComfyChatConfig

Example .env file:
    COMFYCHAT_DATA_DIR=data
    COMFYCHAT_SECURE_ORIGIN=true
    COMFYCHAT_HEALTH_TIMEOUT=10
    COMFYCHAT_SERVER_PORT=7870

Usage Example
-------------
    from comfychat.core.config import config

    print(config.database_path)
    print(config.request_timeout)
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ComfyChatConfig(BaseSettings):
    """Main configuration for ComfyChat.

    Attributes
    ----------
    Storage:
        data_dir : Path
            Directory holding the SQLite database
        database_name : str
            File name of the SQLite database inside ``data_dir``

    Backend Protocol:
        secure_origin : bool
            Whether the hosting origin is secure.  Drives scheme inference
            for backend addresses entered without ``http://``/``https://``.
        request_timeout : float
            Timeout in seconds for job submission
        retrieval_timeout : float
            Timeout in seconds for artifact downloads
        health_timeout : float
            Timeout in seconds for the ``/system_stats`` health check
        ws_heartbeat : float
            Heartbeat interval in seconds for the push channel

    API Server:
        server_host : str
            Bind address for the bundled API server
        server_port : int
            Port for the bundled API server (1024-65535)
        log_level : Literal["DEBUG", "INFO", "WARNING", "ERROR"]
            Root log level configured by the CLI entry point

    Notes
    -----
    - ``data_dir`` is created automatically if it doesn't exist
    - Configuration is immutable after initialization
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="COMFYCHAT_",
        case_sensitive=False,
    )

    # Storage
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory holding the local SQLite database",
    )
    database_name: str = Field(
        default="comfychat.db",
        description="SQLite database file name",
    )

    # Backend protocol
    secure_origin: bool = Field(
        default=False,
        description="Infer https for scheme-less backend addresses",
    )
    request_timeout: float = Field(
        default=30.0,
        description="Job submission timeout in seconds",
        gt=0,
    )
    retrieval_timeout: float = Field(
        default=60.0,
        description="Artifact download timeout in seconds",
        gt=0,
    )
    health_timeout: float = Field(
        default=10.0,
        description="Health check timeout in seconds",
        gt=0,
    )
    ws_heartbeat: float = Field(
        default=30.0,
        description="Push channel heartbeat interval in seconds",
        gt=0,
    )

    # API server
    server_host: str = Field(
        default="127.0.0.1",
        description="API server bind address",
    )
    server_port: int = Field(
        default=7870,
        description="API server port",
        ge=1024,
        le=65535,
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Root log level for the CLI",
    )

    def __init__(self, **kwargs):
        """Initialize configuration and create the data directory.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        """Full path of the SQLite database file."""
        return self.data_dir / self.database_name


# Global configuration instance, loaded from COMFYCHAT_* variables and .env.
config = ComfyChatConfig()
