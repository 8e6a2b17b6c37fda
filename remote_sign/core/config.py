"""
Remote signing configuration

Settings come from a JSON document (the file named by REMOTE_SIGN_CONFIG,
sign-settings.json by default) with a few environment overrides. The document
may hold the settings at its root or under a "remoteSign" key, and accepts
both camelCase and snake_case keys:

    {
      "remoteSign": {
        "defaultProvider": "ARUBA",
        "sessionTimeoutMinutes": 45,
        "aruba": {"baseUrl": "https://arss.example.it", "maxSignatures": 500},
        "openapi": {"enabled": false}
      }
    }

The loaded configuration is immutable.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


DEFAULT_CONFIG_FILE = "sign-settings.json"

PROVIDER_SECTIONS = ("aruba", "infocert", "namirial", "laziocrea", "openapi")

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")


def to_snake_case(key: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"\1_\2", key).lower()


def _snake_keys(data: Any) -> Any:
    if isinstance(data, Mapping):
        return {to_snake_case(str(key)): value for key, value in data.items()}
    return data


class ProviderSection(BaseModel):
    """
    Settings of one provider.

    Only the keys shared by every provider are declared; adapter-specific
    keys are kept as extras and picked up by the adapter's own config.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    enabled: bool = True
    base_url: Optional[str] = None
    timeout: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        return _snake_keys(data)

    @field_validator("timeout")
    @classmethod
    def _timeout_seconds(cls, value: Optional[float]) -> Optional[float]:
        # Values this large were written in milliseconds
        if value is not None and value > 1000:
            return value / 1000
        return value

    def settings(self, default_timeout: Optional[float] = None) -> Dict[str, Any]:
        """Flat snake_case settings for the adapter config, None values dropped."""
        values = {key: value for key, value in self.model_dump().items() if value is not None}
        if "timeout" not in values and default_timeout is not None:
            values["timeout"] = default_timeout
        return values


class RemoteSignConfig(BaseModel):
    """Remote signing settings"""

    model_config = ConfigDict(extra="ignore", frozen=True)

    default_provider: Optional[str] = None
    session_timeout_minutes: int = Field(default=45, gt=0)
    cleanup_interval_seconds: float = Field(default=60, gt=0)
    request_timeout_seconds: float = Field(default=30, gt=0)

    aruba: Optional[ProviderSection] = None
    infocert: Optional[ProviderSection] = None
    namirial: Optional[ProviderSection] = None
    laziocrea: Optional[ProviderSection] = None
    openapi: Optional[ProviderSection] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        return _snake_keys(data)

    def provider_sections(self) -> Dict[str, ProviderSection]:
        """Configured provider sections keyed by section name."""
        sections = {}
        for name in PROVIDER_SECTIONS:
            section = getattr(self, name)
            if section is not None:
                sections[name] = section
        return sections

    def section_for(self, provider_id: str) -> Optional[ProviderSection]:
        name = provider_id.lower()
        return getattr(self, name) if name in PROVIDER_SECTIONS else None


def load_config(path: Optional[Union[str, Path]] = None,
                environ: Optional[Mapping[str, str]] = None) -> RemoteSignConfig:
    """
    Load the remote signing configuration.

    Args:
        path: Settings file; defaults to $REMOTE_SIGN_CONFIG or sign-settings.json
        environ: Environment mapping, os.environ by default

    Returns:
        The validated configuration. A missing file yields the defaults.

    Raises:
        ValueError: If the file is not valid JSON or fails validation
    """
    environ = os.environ if environ is None else environ
    config_path = Path(path or environ.get("REMOTE_SIGN_CONFIG", DEFAULT_CONFIG_FILE))

    document: Dict[str, Any] = {}
    if config_path.is_file():
        with open(config_path, encoding="utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise ValueError(f"Remote signing settings in {config_path} must be a JSON object")
        section = raw.get("remoteSign", raw.get("remote_sign", raw))
        document = dict(section) if isinstance(section, dict) else {}
        logger.info("Loaded remote signing settings from %s", config_path)
    else:
        logger.warning("Remote signing settings file %s not found, using defaults", config_path)

    document = _snake_keys(document)
    if environ.get("REMOTE_SIGN_DEFAULT_PROVIDER"):
        document["default_provider"] = environ["REMOTE_SIGN_DEFAULT_PROVIDER"]
    if environ.get("REMOTE_SIGN_SESSION_TIMEOUT"):
        document["session_timeout_minutes"] = int(environ["REMOTE_SIGN_SESSION_TIMEOUT"])

    return RemoteSignConfig.model_validate(document)
