# Config Module
# AUTO-DOC-INDEX
#
# ES: Índice rápido
#   1) Propósito del módulo
#   2) Componentes principales
#   3) Puntos de extensión
#
# EN: Quick index
#   1) Module purpose
#   2) Main components
#   3) Extension points
#
# Secciones / Sections:
#   - Configuración / Configuration
#   - Carga / Loading

"""Configuración validada del núcleo de escrutinio.

Validated tally core configuration. Precedence: explicit overrides,
environment (``ESCRUTINIO_*``, ``.env``, ``.env.local``), YAML file, defaults.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import AnyHttpUrl, Field, SecretStr, TypeAdapter, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "ESCRUTINIO_"
DEFAULT_PARTIES = ["PDC", "LIBRE", "PINU-SD", "PLH", "PNH"]
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

_ENV_PATH = Path(".env")
_ENV_LOCAL_PATH = Path(".env.local")
# Seguridad: variables sensibles desde .env y .env.local. / Security: sensitive vars from .env/.env.local.
load_dotenv(_ENV_PATH, override=False)
load_dotenv(_ENV_LOCAL_PATH, override=False)


class TallySettings(BaseSettings):
    """Variables de entorno para el núcleo de escrutinio.

    English: Environment-driven settings for the tally core.
    """

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    api_base_url: str = "http://localhost:3000"
    api_token: Optional[SecretStr] = None
    storage_path: Path = Path("data")
    log_level: str = "INFO"

    sync_interval_seconds: float = Field(default=3.0, gt=0)
    sync_debounce_seconds: float = Field(default=0.5, ge=0)
    sync_max_retries: int = Field(default=3, ge=1)
    sync_retry_delay_seconds: float = Field(default=1.0, ge=0)
    sync_max_backoff_seconds: float = Field(default=30.0, ge=0)
    drain_delay_seconds: float = Field(default=0.5, ge=0)

    geolocation_timeout_seconds: float = Field(default=10.0, gt=0)
    geolocation_high_accuracy: bool = True
    http_timeout_seconds: float = Field(default=15.0, gt=0)

    parties: List[str] = Field(default_factory=lambda: list(DEFAULT_PARTIES))

    evidence_bucket: Optional[str] = None
    evidence_prefix: str = "escrutinio/evidence"
    s3_endpoint_url: Optional[str] = None
    aws_region: Optional[str] = None

    @field_validator("api_base_url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        """Validate URLs without changing the stored type."""
        TypeAdapter(AnyHttpUrl).validate_python(value)
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}")
        return level

    @field_validator("parties")
    @classmethod
    def _validate_parties(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("parties must not be empty")
        if len(set(value)) != len(value):
            raise ValueError("parties must be unique")
        return value


def _load_yaml_mapping(path: Path) -> Dict[str, Any]:
    """Carga un mapa YAML o lanza un error orientado al usuario.

    Load a YAML mapping or raise a user-facing error.
    """
    if not path.exists():
        raise ValueError(f"Invalid configuration: missing {path.as_posix()}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid configuration: {path.name} has YAML syntax errors") from exc
    if not isinstance(raw, dict):
        raise ValueError(f"Invalid configuration: {path.name} must be a YAML mapping")
    return raw


def load_config(path: Optional[Path] = None, **overrides: Any) -> TallySettings:
    """/** Carga y valida configuración, fallando con detalle. / Load and validate configuration, failing with details. **/"""
    values: Dict[str, Any] = {}
    if path is not None:
        for key, value in _load_yaml_mapping(Path(path)).items():
            name = str(key).lower()
            if f"{ENV_PREFIX}{name.upper()}" in os.environ:
                continue
            values[name] = value
    values.update(overrides)
    try:
        return TallySettings(**values)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc
