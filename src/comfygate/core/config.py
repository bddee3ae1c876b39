"""Configuration management for Comfygate.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the COMFYGATE_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (COMFYGATE_* prefix)
2. .env file in the project root
3. Default values defined in ComfygateConfig

Example .env file:
    COMFYGATE_COMFY_BASE_URL=http://127.0.0.1:8188
    COMFYGATE_COMFY_OUTPUT_DIR=/opt/ComfyUI/output
    COMFYGATE_EXECUTION_TIMEOUT=300
    COMFYGATE_SERVER_PORT=7860

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
Request handlers read it when they build a per-request engine client; the
binder and gateway themselves never touch it and receive their collaborators
explicitly.

Usage Example
-------------
    from comfygate.core.config import config

    print(config.comfy_base_url)
    print(config.view_comfy_file)

Engine Directories
------------------
Unlike application-owned directories, ``comfy_output_dir`` belongs to the
ComfyUI installation.  It is only read from (for outputs the engine reports
as materialized locally) and is never created here.

See Also
--------
- ComfygateConfig: Full configuration class documentation
- comfygate.core.comfy_client: the consumer of the engine settings
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ComfygateConfig(BaseSettings):
    """Main configuration for Comfygate.

    Values are loaded from environment variables with the COMFYGATE_ prefix,
    with fallback to defaults defined here.

    Attributes
    ----------
    Engine Settings:
        comfy_base_url : str
            Base URL of the ComfyUI HTTP API
        comfy_output_dir : Path
            ComfyUI output directory, used for outputs reported as local files
        poll_interval : float
            Seconds between ``/history`` polls while a prompt executes
        execution_timeout : float
            Upper bound in seconds for waiting on one prompt's outputs
        request_timeout : float
            Timeout in seconds for individual HTTP calls to the engine

    Workflow Settings:
        view_comfy_file : Path
            ``view_comfy.json`` holding the default workflow template

    Server Settings:
        server_host : str
            Server bind address (0.0.0.0 for local network)
        server_port : int
            Server port (1024-65535)
        log_level : Literal["DEBUG", "INFO", "WARNING", "ERROR"]
            Root log level applied by the CLI entry point

    Examples
    --------
    Create a custom configuration:

        >>> custom_config = ComfygateConfig(
        ...     comfy_base_url="http://gpu-box:8188",
        ...     execution_timeout=600,
        ... )
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="COMFYGATE_",
        case_sensitive=False,
    )

    # Engine settings
    comfy_base_url: str = Field(
        default="http://127.0.0.1:8188",
        description="Base URL of the ComfyUI HTTP API",
    )
    comfy_output_dir: Path = Field(
        default=Path("comfy") / "output",
        description="ComfyUI output directory (read-only, for locally materialized outputs)",
    )
    poll_interval: float = Field(
        default=0.5,
        description="Seconds between history polls while a prompt is executing",
        gt=0.0,
        le=10.0,
    )
    execution_timeout: float = Field(
        default=180.0,
        description="Maximum seconds to wait for a prompt to finish",
        gt=0.0,
    )
    request_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for a single HTTP call to ComfyUI",
        gt=0.0,
    )

    # Workflow settings
    view_comfy_file: Path = Field(
        default=Path("view_comfy.json"),
        description="view_comfy.json containing the default workflowApiJSON",
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address (0.0.0.0 for local network)",
    )
    server_port: int = Field(
        default=7860,
        description="Server port",
        ge=1024,
        le=65535,
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level applied by the CLI entry point",
    )


# Global configuration instance
# Loaded once from environment variables (COMFYGATE_* prefix) and .env file.
config = ComfygateConfig()
