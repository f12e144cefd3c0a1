"""API clients for SFMC REST and SOAP APIs."""

from .auth import TokenManager
from .rest_client import RESTClient
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy
from .soap_client import SOAPClient
from .sources import MetadataSources

__all__ = [
    "TokenManager",
    "RESTClient",
    "SOAPClient",
    "RetryPolicy",
    "DEFAULT_RETRY_POLICY",
    "MetadataSources",
]
