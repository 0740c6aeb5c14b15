# friction_pipeline/data_access/credentials.py
"""
CRM credential lookup.

Token values are stored through a TokenVault (the encryption-at-rest helper
lives outside this package); rows in ``oauth_tokens`` hold vault ids.
"""

from typing import Protocol
import logging

from friction_pipeline.data_access.postgres_client import PostgresClient
from friction_pipeline.errors import CredentialsError
from friction_pipeline.models.schemas import IntegrationCredentials

logger = logging.getLogger(__name__)


class TokenVault(Protocol):
    def store(self, token: str) -> str:
        ...

    def retrieve(self, token_id: str) -> str:
        ...


class PlainTokenVault:
    """Vault for stores that keep tokens unencrypted: the id is the token."""

    def store(self, token: str) -> str:
        return token

    def retrieve(self, token_id: str) -> str:
        return token_id


class CredentialProvider:
    """Resolve a user's Salesforce integration into usable tokens."""

    def __init__(self, store: PostgresClient, vault: TokenVault):
        self.store = store
        self.vault = vault

    def get_credentials(self, user_id: str) -> IntegrationCredentials:
        integration = self.store.get_integration(user_id, "salesforce")
        if not integration:
            raise CredentialsError(f"No Salesforce integration for user {user_id}")

        tokens = self.store.get_oauth_tokens(integration["id"])
        if not tokens:
            raise CredentialsError(f"No OAuth tokens for integration {integration['id']}")

        try:
            access_token = self.vault.retrieve(tokens["access_token"])
            refresh_token = (
                self.vault.retrieve(tokens["refresh_token"]) if tokens.get("refresh_token") else None
            )
        except Exception as e:
            raise CredentialsError(f"Could not read tokens for integration {integration['id']}: {e}") from e

        return IntegrationCredentials(
            integration_id=str(integration["id"]),
            token_id=str(tokens["id"]),
            instance_url=integration["instance_url"],
            access_token=access_token,
            refresh_token=refresh_token,
        )

    def save_access_token(self, credentials: IntegrationCredentials, access_token: str) -> IntegrationCredentials:
        """Persist a refreshed access token and return the updated credentials."""
        self.store.update_access_token(credentials.token_id, self.vault.store(access_token))
        return credentials.model_copy(update={"access_token": access_token})
