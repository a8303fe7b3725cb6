"""
CRM Client Factory.

Builds a remote CRM client for one account's credential. Clients are
never cached: every account brings its own token.
"""

import logging
from typing import Optional

from app.core.config import ConfigurationError, Settings, get_settings, validate_crm_settings
from app.integrations.pipedrive.client import PipedriveClient

logger = logging.getLogger(__name__)


class CRMClientError(Exception):
    """Raised when a CRM client cannot be created."""
    pass


def create_pipedrive_client(api_token: Optional[str], settings: Optional[Settings] = None) -> PipedriveClient:
    """
    Factory function for a Pipedrive client.

    Args:
        api_token: Decrypted Pipedrive API token of the account
        settings: Application settings (defaults to get_settings())

    Returns:
        PipedriveClient bound to the token

    Raises:
        CRMClientError: If the token is missing or the settings are invalid

    Example:
        >>> client = create_pipedrive_client(token)
        >>> async with client:
        ...     result = await client.test_connection()
    """
    settings = settings or get_settings()

    if not api_token or not api_token.strip():
        raise CRMClientError("Pipedrive API key is required")

    errors = validate_crm_settings(settings)
    if errors:
        logger.error(f"❌ Invalid Pipedrive configuration: {'; '.join(errors)}")
        raise CRMClientError(f"Invalid Pipedrive configuration: {'; '.join(errors)}")

    try:
        return PipedriveClient(api_token, settings=settings)
    except (ValueError, ConfigurationError) as e:
        raise CRMClientError(f"Failed to create Pipedrive client: {e}") from e
