"""Configuration loading and API key lookup for the RemoCloud client."""

from __future__ import annotations

import json
import os
from pathlib import Path

import keyring

from remocloud.models import ClientConfig

SERVICE_NAME = "remocloud"
KEY_NAME = "api_key"
ENV_VAR = "REMOCLOUD_API_KEY"
DEFAULT_CONFIG_PATH = Path("config/remocloud.json")


def get_api_key() -> str:
    """Get the RemoCloud API key: system keyring first, then REMOCLOUD_API_KEY.

    Returns:
        API key string.

    Raises:
        RuntimeError: If no key found anywhere, with actionable instructions.
    """
    api_key = keyring.get_password(SERVICE_NAME, KEY_NAME)
    if api_key:
        return api_key

    api_key = os.environ.get(ENV_VAR)
    if api_key:
        return api_key

    raise RuntimeError(
        "RemoCloud API key not found.\n"
        "Set it with: remocloud config set-api-key YOUR_KEY\n"
        f"Or: export {ENV_VAR}=your-key"
    )


def load_config(config_path: Path | None = None) -> ClientConfig:
    """Load client configuration from JSON, falling back to defaults.

    Reads from ``config/remocloud.json`` when *config_path* is ``None``.
    A missing file yields a default :class:`ClientConfig`.  Unknown keys
    are ignored.  When the file sets no ``api_key``, the keyring (service
    ``remocloud``, key ``api_key``) and then ``REMOCLOUD_API_KEY`` are
    consulted; the key stays ``None`` if neither is set.

    Args:
        config_path: Optional explicit path to the JSON file.

    Returns:
        ClientConfig populated from file + keyring/env overrides.

    Raises:
        ValueError: If the file is not a JSON object or holds invalid values.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    data: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{config_path} must contain a JSON object")

    field_names = {f.name for f in ClientConfig.__dataclass_fields__.values()}
    kwargs = {k: v for k, v in data.items() if k in field_names}

    config = ClientConfig(**kwargs)

    if config.api_key is None:
        config.api_key = keyring.get_password(SERVICE_NAME, KEY_NAME) or os.environ.get(
            ENV_VAR
        )

    return config
