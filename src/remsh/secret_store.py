"""
Fetching private keys from a remote secret store.

Provides:
- SecretFetcher: Interface returning a private key as a string
- SSMParameterFetcher: AWS SSM Parameter Store implementation (boto3)
- check_ssm_available: Whether the optional boto3 dependency is installed
- default_aws_region: Region from AWS_REGION / AWS_DEFAULT_REGION, else us-east-1

The fetched key is returned wrapped in a SecureString and is never
written to disk. boto3 is an optional dependency (the ``ssm`` extra);
it is imported only when a fetch is actually requested.
"""
from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod

from remsh.errors import ErrorContext, SecretFetchError
from remsh.secure_string import SecureString

logger = logging.getLogger(__name__)

DEFAULT_AWS_REGION = "us-east-1"


def default_aws_region() -> str:
    """AWS region from the environment, falling back to us-east-1."""
    return (
        os.environ.get("AWS_REGION")
        or os.environ.get("AWS_DEFAULT_REGION")
        or DEFAULT_AWS_REGION
    )


def check_ssm_available() -> bool:
    """
    Check if SSM Parameter Store support is available.

    Returns:
        True if boto3 is installed
    """
    try:
        import boto3  # noqa: F401
        return True
    except ImportError:
        return False


class SecretFetcher(ABC):
    """Fetches one secret by identifier."""

    @abstractmethod
    def fetch(self, secret_id: str) -> SecureString:
        """
        Fetch a secret.

        Raises:
            SecretFetchError: If the secret cannot be retrieved
        """


class SSMParameterFetcher(SecretFetcher):
    """
    Reads a (usually SecureString-typed) parameter from AWS SSM.

    Explicit credentials are used when both are given; otherwise boto3's
    default chain applies (environment, profile, instance role).

    Usage:
        fetcher = SSMParameterFetcher(region="eu-west-1")
        key_data = fetcher.fetch("/prod/ssh/deploy-key")
    """

    def __init__(
        self,
        region: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        self._region = region or default_aws_region()
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key

    @property
    def region(self) -> str:
        return self._region

    def _client(self):
        if not check_ssm_available():
            raise SecretFetchError(
                "SSM support requires boto3. Install with: pip install remsh[ssm]"
            )
        import boto3

        kwargs = {"region_name": self._region}
        if self._access_key_id and self._secret_access_key:
            kwargs["aws_access_key_id"] = self._access_key_id
            kwargs["aws_secret_access_key"] = self._secret_access_key
        return boto3.client("ssm", **kwargs)

    def fetch(self, secret_id: str) -> SecureString:
        """
        Fetch and decrypt an SSM parameter.

        Args:
            secret_id: Parameter name, e.g. /prod/ssh/deploy-key

        Returns:
            The parameter value

        Raises:
            SecretFetchError: If boto3 is missing or the call fails
        """
        logger.debug("Fetching SSH key from SSM: %s", secret_id)
        client = self._client()
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = client.get_parameter(Name=secret_id, WithDecryption=True)
        except (BotoCoreError, ClientError) as e:
            raise SecretFetchError(
                f"failed to fetch SSM parameter '{secret_id}': {e}",
                ErrorContext(original_error=str(e), extra={"region": self._region}),
            ) from e

        value = response.get("Parameter", {}).get("Value")
        if not value:
            raise SecretFetchError(f"SSM parameter '{secret_id}' is empty")

        logger.debug("SSM key fetched (never written to disk)")
        return SecureString(value)
