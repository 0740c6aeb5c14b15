# friction_pipeline/data_access/salesforce_client.py
"""
Salesforce REST client for support cases.
"""

from typing import List, Optional
import logging
import re

import httpx
from pydantic import ValidationError

from friction_pipeline.config.settings import Settings
from friction_pipeline.errors import CaseStoreError, TokenExpiredError, TokenRefreshError
from friction_pipeline.models.schemas import CaseRecord

logger = logging.getLogger(__name__)

# 15- or 18-character Salesforce record ids
SALESFORCE_ID = re.compile(r"^[a-zA-Z0-9]{15}(?:[a-zA-Z0-9]{3})?$")

CASE_FIELDS = "Id,CaseNumber,Subject,Description,Status,Priority,CreatedDate,Origin"


class SalesforceClient:
    """Case Store client: queries an account's recent cases."""

    def __init__(self, config: Settings, http_client: Optional[httpx.Client] = None):
        self.config = config
        self.api_version = config.salesforce_api_version
        self.http = http_client or httpx.Client(timeout=config.salesforce_timeout_seconds)

    def close(self) -> None:
        self.http.close()

    @staticmethod
    def build_case_query(account_external_id: str, days: int, limit: int) -> str:
        if not SALESFORCE_ID.match(account_external_id or ""):
            raise CaseStoreError(f"Invalid Salesforce account id: {account_external_id!r}")

        return (
            f"SELECT {CASE_FIELDS} FROM Case "
            f"WHERE AccountId='{account_external_id}' AND CreatedDate=LAST_N_DAYS:{int(days)} "
            f"ORDER BY CreatedDate DESC LIMIT {int(limit)}"
        )

    def get_recent_cases(
        self,
        instance_url: str,
        access_token: str,
        account_external_id: str,
        days: int = 90,
        limit: int = 2000,
    ) -> List[CaseRecord]:
        """
        Fetch an account's cases created in the last ``days`` days, newest first.

        Args:
            instance_url: Org base URL from the integration
            access_token: OAuth access token
            account_external_id: Salesforce Account Id
            days: Creation-date window
            limit: Maximum rows (the API defaults to far fewer without one)

        Returns:
            List of CaseRecord objects

        Raises:
            TokenExpiredError: the access token was rejected
            CaseStoreError: any other failure, including unparsable rows
        """
        query = self.build_case_query(account_external_id, days, limit)
        url = f"{instance_url.rstrip('/')}/services/data/{self.api_version}/query"

        try:
            response = self.http.get(
                url,
                params={"q": query},
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            raise CaseStoreError(f"Salesforce request failed: {e}") from e

        if response.status_code == 401:
            raise TokenExpiredError("Salesforce access token expired")
        if response.is_error:
            raise CaseStoreError(f"Salesforce fetch failed with status {response.status_code}")

        try:
            records = response.json().get("records") or []
            return [CaseRecord.model_validate(record) for record in records]
        except (ValueError, ValidationError) as e:
            raise CaseStoreError(f"Unexpected Salesforce response: {e}") from e

    def refresh_access_token(self, refresh_token: Optional[str]) -> str:
        """Exchange a refresh token for a new access token."""
        if not refresh_token:
            raise TokenRefreshError("No refresh token available")

        try:
            response = self.http.post(
                self.config.salesforce_token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.config.salesforce_client_id,
                    "client_secret": self.config.salesforce_client_secret,
                },
            )
        except httpx.HTTPError as e:
            raise TokenRefreshError(f"Token refresh request failed: {e}") from e

        if response.is_error:
            raise TokenRefreshError(f"Failed to refresh Salesforce token (status {response.status_code})")

        try:
            access_token = response.json()["access_token"]
        except (ValueError, KeyError) as e:
            raise TokenRefreshError("Token refresh response had no access token") from e

        logger.info("Refreshed Salesforce access token")
        return access_token
