"""
Error types shared by the Shopify client, invoice engine and API routes.
"""

from typing import Any, Optional


class InvoiceAppError(Exception):
    """Base class for all application errors"""


class ConfigurationError(InvoiceAppError):
    """Settings are missing or contradict each other"""


class AuthenticationError(InvoiceAppError):
    """Client-credentials token exchange failed"""


class RemoteAPIError(InvoiceAppError):
    """
    Non-2xx response (or transport failure) from the Shopify Admin API.

    status_code is None when the request never got a response.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class NotFoundError(InvoiceAppError):
    """Requested quote or invoice does not exist"""


class RenderError(InvoiceAppError):
    """Invoice PDF could not be drawn or written to disk"""
