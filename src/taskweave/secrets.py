"""Secret references and secrets providers for taskweave.

Variables may hold references to secrets instead of secret values. In YAML
they are written with the ``!secret`` tag::

    vars:
      db_password: !secret myapp#db_password

References load as ``SecretRef`` objects and are resolved by the run's
``SecretsProvider`` only when a variable is resolved. taskweave never
implements an encryption scheme; providers delegate to the environment or
to HashiCorp Vault.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import yaml

from .exceptions import SecretResolutionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SecretRef:
    """Reference to a secret value held by a secrets provider."""

    ref: str

    def __repr__(self) -> str:
        return f"SecretRef({self.ref!r})"

    def __str__(self) -> str:
        return f"<secret {self.ref}>"


class SecretsProvider(ABC):
    """Resolves secret references to values."""

    @abstractmethod
    def resolve(self, ref: str) -> Any:
        """Return the secret value for a reference.

        Raises:
            SecretResolutionError: If the reference cannot be resolved
        """


class NullSecretsProvider(SecretsProvider):
    """Provider used when no secrets backend is configured."""

    def resolve(self, ref: str) -> Any:
        raise SecretResolutionError(
            f"No secrets provider configured to resolve '{ref}'", ref=ref
        )


class StaticSecretsProvider(SecretsProvider):
    """Secrets from an in-memory mapping."""

    def __init__(self, secrets: dict[str, Any]) -> None:
        self._secrets = dict(secrets)

    def resolve(self, ref: str) -> Any:
        if ref not in self._secrets:
            raise SecretResolutionError(f"Unknown secret '{ref}'", ref=ref)
        return self._secrets[ref]


class EnvSecretsProvider(SecretsProvider):
    """Secrets from environment variables; the reference is the variable name."""

    def __init__(self, environ: dict[str, str] | None = None) -> None:
        self._environ = os.environ if environ is None else environ

    def resolve(self, ref: str) -> Any:
        if ref not in self._environ:
            raise SecretResolutionError(
                f"Environment variable '{ref}' is not set", ref=ref
            )
        return self._environ[ref]


class VaultSecretsProvider(SecretsProvider):
    """Secrets from HashiCorp Vault's KV v2 engine.

    References use the ``path#field`` form. Reads are cached per path so a
    path is fetched once per run. Uses VAULT_ADDR and VAULT_TOKEN.

    Requires the `hvac` package: pip install taskweave[vault]
    """

    def __init__(self, client: Any = None) -> None:
        self._client = client
        self._cache: dict[str, dict[str, Any]] = {}

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            import hvac
        except ImportError:
            raise SecretResolutionError(
                "hvac package is required for Vault support. "
                "Install with: pip install taskweave[vault]"
            ) from None

        addr = os.environ.get("VAULT_ADDR")
        token = os.environ.get("VAULT_TOKEN")
        if not addr:
            raise SecretResolutionError("VAULT_ADDR environment variable is not set")
        if not token:
            raise SecretResolutionError("VAULT_TOKEN environment variable is not set")

        client = hvac.Client(url=addr, token=token)
        try:
            authenticated = client.is_authenticated()
        except Exception as e:
            raise SecretResolutionError(f"Cannot reach Vault at {addr}: {e}") from e
        if not authenticated:
            raise SecretResolutionError(f"Vault authentication failed for {addr}")
        self._client = client
        return client

    def resolve(self, ref: str) -> Any:
        if "#" not in ref:
            raise SecretResolutionError(
                f"Invalid vault ref '{ref}': expected 'path#field'", ref=ref
            )
        path, field = ref.rsplit("#", 1)

        if path not in self._cache:
            client = self._get_client()
            try:
                response = client.secrets.kv.v2.read_secret_version(
                    path=path, raise_on_deleted_version=True
                )
            except Exception as e:
                raise SecretResolutionError(
                    f"Failed to read Vault path '{path}': {e}", ref=ref
                ) from e
            self._cache[path] = response["data"]["data"]
            logger.debug(f"Read Vault path {path}")

        data = self._cache[path]
        if field not in data:
            available = ", ".join(sorted(data))
            raise SecretResolutionError(
                f"Field '{field}' not found at Vault path '{path}' (available: {available})",
                ref=ref,
            )
        return data[field]


def create_secrets_provider(name: str) -> SecretsProvider:
    """Create the secrets provider named in the run configuration."""
    if name == "env":
        return EnvSecretsProvider()
    if name == "vault":
        return VaultSecretsProvider()
    return NullSecretsProvider()


class SecretLoader(yaml.SafeLoader):
    """Safe YAML loader that understands the ``!secret`` tag."""


def _construct_secret(loader: yaml.SafeLoader, node: yaml.Node) -> SecretRef:
    return SecretRef(str(loader.construct_scalar(node)))


SecretLoader.add_constructor("!secret", _construct_secret)


def load_yaml(content: str) -> Any:
    """Parse YAML safely, loading ``!secret`` tags as SecretRef."""
    return yaml.load(content, Loader=SecretLoader)
