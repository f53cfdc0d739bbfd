"""BYOK credential sets and auth-type classification."""
from enum import Enum
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, SecretStr

from .config import MCPServerConfig
from .errors import RejectedEmptyError


class AuthType(str, Enum):
    """Label describing which credential material drives a connection."""
    API_KEY = "api_key"
    API_TOKEN = "api_token"
    ENV = "env"


class CredentialSet(BaseModel):
    """Authentication material supplied for one connection attempt.

    Values are held as ``SecretStr`` so they never show up in reprs or logs.
    Build instances with :func:`classify`, which rejects empty input.
    """
    api_key: Optional[SecretStr] = None
    api_token: Optional[SecretStr] = None
    custom_env: Optional[Dict[str, SecretStr]] = None

    model_config = ConfigDict(frozen=True)

    @property
    def auth_type(self) -> AuthType:
        if _present(self.api_key):
            return AuthType.API_KEY
        if _present(self.api_token):
            return AuthType.API_TOKEN
        return AuthType.ENV

    def env_names(self) -> list[str]:
        """Names of the custom environment variables, safe to log."""
        return sorted(self.custom_env or {})

    def to_env(self, config: MCPServerConfig) -> Dict[str, str]:
        """Render all credential material as environment variables for a stdio server."""
        env: Dict[str, str] = {}
        for name, value in (self.custom_env or {}).items():
            env[name] = value.get_secret_value()
        if _present(self.api_token) and config.api_token_env:
            env[config.api_token_env] = self.api_token.get_secret_value()
        if _present(self.api_key) and config.api_key_env:
            env[config.api_key_env] = self.api_key.get_secret_value()
        return env

    def to_headers(self, config: MCPServerConfig) -> Dict[str, str]:
        """Render key and token as HTTP headers for a network server."""
        headers: Dict[str, str] = {}
        if _present(self.api_token):
            headers[config.api_token_header] = self.api_token.get_secret_value()
        if _present(self.api_key):
            headers[config.api_key_header] = f"{config.api_key_prefix}{self.api_key.get_secret_value()}"
        return headers

    def reveal(self) -> Dict[str, object]:
        """Plaintext dump for storage backends that encrypt it themselves."""
        return {
            "api_key": self.api_key.get_secret_value() if self.api_key else None,
            "api_token": self.api_token.get_secret_value() if self.api_token else None,
            "custom_env": (
                {k: v.get_secret_value() for k, v in self.custom_env.items()}
                if self.custom_env is not None else None
            ),
        }


def _present(value: Optional[SecretStr]) -> bool:
    return value is not None and value.get_secret_value() != ""


def classify(
    api_key: Optional[str] = None,
    api_token: Optional[str] = None,
    custom_env: Optional[Mapping[str, str]] = None,
) -> CredentialSet:
    """Build a CredentialSet, rejecting attempts without any credential material.

    An environment mapping counts as present even when empty; key and token
    count only when non-empty.

    :raises RejectedEmptyError: if nothing was supplied
    """
    if not api_key and not api_token and custom_env is None:
        raise RejectedEmptyError()
    return CredentialSet(
        api_key=api_key or None,
        api_token=api_token or None,
        custom_env=dict(custom_env) if custom_env is not None else None,
    )
