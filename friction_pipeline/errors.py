"""Exceptions raised by the friction pipeline components."""


class FrictionPipelineError(Exception):
    """Base class for pipeline failures."""


class CredentialsError(FrictionPipelineError):
    """Integration or OAuth tokens for a user are missing or unreadable."""


class CaseStoreError(FrictionPipelineError):
    """The CRM case query failed."""


class TokenExpiredError(CaseStoreError):
    """The CRM rejected the access token (HTTP 401)."""


class TokenRefreshError(FrictionPipelineError):
    """Exchanging the refresh token for a new access token failed."""


class ClassificationError(FrictionPipelineError):
    """The text-analysis service could not be reached after all retries."""


class ClassificationParseError(FrictionPipelineError):
    """The text-analysis service answered with something that is not a usable judgment."""


class PersistenceError(FrictionPipelineError):
    """Writing to the friction store failed."""
