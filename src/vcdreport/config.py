"""Configuration models for vcdreport using Pydantic v2."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator


class VMwareConfig(BaseModel):
    """VMware vCenter connection configuration."""

    vcenter: str = Field(..., min_length=1, description="vCenter hostname or IP")
    username: str = Field(..., min_length=1, description="vCenter username")
    password: Optional[SecretStr] = Field(None, description="vCenter password (prefer password_env)")
    password_env: Optional[str] = Field(None, description="Environment variable containing the password")
    insecure: bool = Field(False, description="Skip SSL certificate verification")
    port: int = Field(443, ge=1, le=65535, description="vCenter port")
    tagging: bool = Field(True, description="Query tag assignments through the vSphere Automation API")

    @model_validator(mode="after")
    def resolve_password(self) -> "VMwareConfig":
        if self.password is None and self.password_env:
            env_val = os.environ.get(self.password_env)
            if env_val:
                self.password = SecretStr(env_val)
        if self.password is None:
            raise ValueError("Either 'password' or 'password_env' (with matching env var) must be provided")
        return self


class ReportSettings(BaseModel):
    """Report output and query behavior."""

    format: str = Field("table", pattern="^(table|json|csv)$", description="Output format")
    output: Optional[Path] = Field(None, description="Write the report to this file instead of stdout")
    request_timeout: float = Field(30.0, gt=0, description="Timeout in seconds for each REST call")
    log_level: str = Field("INFO", description="DEBUG, INFO, WARNING or ERROR")

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise ValueError(f"Unknown log level '{v}'")
        return level


class AppConfig(BaseModel):
    """Root application configuration."""

    vmware: VMwareConfig
    report: ReportSettings = ReportSettings()

    @classmethod
    def from_yaml(cls, path: str | Path) -> "AppConfig":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    @classmethod
    def from_env_and_args(cls, **overrides) -> "AppConfig":
        """Build config from environment variables with CLI overrides.

        Overrides whose value is None are ignored so unset CLI options
        never mask the environment.
        """
        base = {
            "vmware": {
                "vcenter": os.environ.get("VCENTER_HOST", ""),
                "username": os.environ.get("VCENTER_USERNAME", ""),
                "password_env": "VCENTER_PASSWORD",
                "insecure": os.environ.get("VCENTER_INSECURE", "false").lower() == "true",
                "port": int(os.environ.get("VCENTER_PORT", "443")),
            },
            "report": {},
        }
        for key, value in overrides.items():
            if isinstance(value, dict) and key in base:
                base[key].update({k: v for k, v in value.items() if v is not None})
            elif value is not None:
                base[key] = value
        return cls(**base)
