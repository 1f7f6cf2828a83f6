"""
kubepool/models/vault.py

Settings for the Vault client backing the coordination store. The address,
role and token also honour Vault's own environment variables (VAULT_ADDR,
VAULT_ROLE_NAME, VAULT_TOKEN); the remaining fields read `VAULT_`-prefixed
variables (VAULT_TOKEN_PATH, VAULT_KV_MOUNT, ...).
"""

from __future__ import annotations

from typing import Optional
from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class VaultSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="VAULT_")

    vault_addr: str = Field(
        default="http://127.0.0.1:8200",
        validation_alias=AliasChoices("vault_addr", "VAULT_ADDR"),
    )
    vault_role_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("vault_role_name", "VAULT_ROLE_NAME"),
    )
    direct_vault_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("direct_vault_token", "VAULT_TOKEN"),
    )
    token_path: str = "/var/run/secrets/kubernetes.io/serviceaccount/token"
    verify_ssl: bool = True
    renew_threshold_seconds: float = 60.0
    check_interval_seconds: float = 30.0
    kv_mount: str = "secret"

    @model_validator(mode="after")
    def check_exclusivity(self) -> VaultSettings:
        """vault_role_name and direct_vault_token select different auth modes."""
        if self.vault_role_name and self.direct_vault_token:
            raise ValueError(
                "vault_role_name and direct_vault_token are mutually exclusive."
            )
        return self
