"""
Abstract Remote CRM Client Interface.
Defines the contract the sync engine expects from a remote CRM integration,
together with the result and error types every integration returns.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorType(str, Enum):
    """Category of a sync failure."""

    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    NETWORK = "NETWORK"
    DATABASE = "DATABASE"
    VALIDATION = "VALIDATION"
    UNKNOWN = "UNKNOWN"


class CRMRequestError(Exception):
    """
    Raised when a remote CRM call cannot produce a result at all
    (host unreachable, deadline exhausted, failed listing).

    Carries the structured error tag from the HTTP layer, so callers
    do not have to parse the message.
    """

    def __init__(
        self,
        message: str,
        error_type: Optional[ErrorType] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.retry_after = retry_after


@dataclass
class CRMResult:
    """Outcome of a single remote CRM call. Ordinary API failures never raise."""
    success: bool
    remote_id: Optional[int] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    status_code: Optional[int] = None
    retry_after: Optional[float] = None


@dataclass
class CRMListResult:
    """Outcome of a (paginated) listing call."""
    success: bool
    items: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    status_code: Optional[int] = None
    retry_after: Optional[float] = None


class CRMClient(ABC):
    """
    Abstract base class for remote CRM integrations.

    The sync engine only talks to this interface, so a client instance
    (with its credential and configuration) is passed explicitly into
    every service that needs it instead of being shared globally.
    """

    @abstractmethod
    async def test_connection(self) -> CRMResult:
        """
        Verifies that the API is reachable and the credential is valid.

        Returns:
            CRMResult with success=True and the authenticated user in data

        Example:
            >>> result = await client.test_connection()
            >>> if not result.success:
            ...     print(result.error)
        """
        pass

    @abstractmethod
    async def list_persons(self, deadline=None) -> CRMListResult:
        """
        Fetches all persons visible to the credential, following pagination.

        Returns:
            CRMListResult whose items are raw person dicts, e.g.
            {"id": 17, "name": "Jane Doe", "email": [{"value": "jane@x.org", "primary": True}],
             "org_id": {"value": 4, "name": "Acme"}, "update_time": "2026-01-05 10:12:00"}
        """
        pass

    @abstractmethod
    async def list_organizations(self, deadline=None) -> CRMListResult:
        """Fetches all organizations visible to the credential."""
        pass

    @abstractmethod
    async def create_person(self, data: Dict[str, Any], deadline=None) -> CRMResult:
        pass

    @abstractmethod
    async def update_person(self, person_id: int, data: Dict[str, Any], deadline=None) -> CRMResult:
        pass

    @abstractmethod
    async def create_organization(self, data: Dict[str, Any], deadline=None) -> CRMResult:
        pass

    @abstractmethod
    async def update_organization(self, org_id: int, data: Dict[str, Any], deadline=None) -> CRMResult:
        pass

    @abstractmethod
    async def create_activity(self, data: Dict[str, Any], deadline=None) -> CRMResult:
        """
        Creates an activity.

        The client applies the campaign subject marker, so callers pass the
        plain subject plus an optional "campaign_shortcode" key.

        Example:
            >>> await client.create_activity({"subject": "Follow-up call", "campaign_shortcode": "ASC"})
            # sent as subject "[CMPGN-ASC] Follow-up call"
        """
        pass

    @abstractmethod
    async def update_activity(self, activity_id: int, data: Dict[str, Any], deadline=None) -> CRMResult:
        pass

    @abstractmethod
    async def create_deal(self, data: Dict[str, Any], deadline=None) -> CRMResult:
        pass

    @abstractmethod
    async def update_deal(self, deal_id: int, data: Dict[str, Any], deadline=None) -> CRMResult:
        pass

    @abstractmethod
    async def close(self) -> None:
        """Releases the underlying HTTP resources."""
        pass
