"""
kubepool/models/ssh.py

SSH connection parameters for reaching a scale set instance through the load
balancer's NAT front end.
"""

from __future__ import annotations

from typing import List, Optional
from pydantic import BaseModel, Field, field_validator


class SSHConfig(BaseModel):
    """
    SSH configuration for one instance.

    `hostname` is the load balancer's public address and `port` the NAT port
    mapped to the instance. If host_keys is empty, the host key is not verified
    (scale set instances are recreated with fresh keys).
    """

    user: str
    hostname: str
    port: int = Field(default=22, ge=1, le=65535)
    private_key: str
    host_keys: Optional[List[str]] = None
    connect_timeout: float = 30.0

    @field_validator("private_key")
    @classmethod
    def validate_private_key(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("private_key must be a non-empty string")
        return val

    @property
    def target(self) -> str:
        return f"{self.user}@{self.hostname}:{self.port}"
