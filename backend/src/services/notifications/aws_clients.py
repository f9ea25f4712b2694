"""
AWS SES and SNS client wrappers with error handling.

SES delivers operator emails; SNS delivers mobile push messages to
platform endpoints registered for customers and couriers. Both clients are
synchronous boto3 wrappers with bounded retries; async callers run them in
a worker thread.
"""

import json
import time
from typing import Any, Callable, Optional

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    EndpointConnectionError,
)

from src.core.config import Settings, get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

SES_PERMANENT_ERRORS = frozenset(
    {"MessageRejected", "MailFromDomainNotVerified", "ConfigurationSetDoesNotExist"}
)
SNS_PERMANENT_ERRORS = frozenset(
    {"InvalidParameter", "InvalidParameterValue", "EndpointDisabled", "NotFound"}
)


class AWSClientError(Exception):
    """Base exception for AWS client errors."""

    def __init__(
        self, message: str, service: str, permanent: bool = False, **context: Any
    ) -> None:
        super().__init__(message)
        self.service = service
        self.permanent = permanent
        self.context = context


class SESClientError(AWSClientError):
    """Exception for SES-specific errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, service="SES", **context)


class SNSClientError(AWSClientError):
    """Exception for SNS-specific errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, service="SNS", **context)


def _boto_client(service: str, settings: Settings) -> Any:
    return boto3.client(
        service,
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
        region_name=settings.aws_region,
    )


def _call_with_retry(
    operation: Callable[[], dict[str, Any]],
    *,
    service: str,
    error_cls: type[AWSClientError],
    permanent_errors: frozenset[str],
    max_retries: int,
    retry_backoff: float,
    **log_context: Any,
) -> dict[str, Any]:
    """
    Invoke a boto3 operation, retrying throttling and connection failures.

    Permanent client errors fail immediately; everything else is retried
    with exponential backoff until ``max_retries`` attempts are used.

    Raises:
        AWSClientError: Subclass given by ``error_cls`` once retries are exhausted
    """
    last_exception: Optional[Exception] = None
    for attempt in range(max_retries):
        try:
            return operation()
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            error_message = e.response.get("Error", {}).get("Message", str(e))
            logger.warning(
                f"{service} client error",
                attempt=attempt + 1,
                error_code=error_code,
                error_message=error_message,
                **log_context,
            )
            last_exception = e
            if error_code in permanent_errors:
                raise error_cls(
                    f"{service} error: {error_message}",
                    error_code=error_code,
                    permanent=True,
                    **log_context,
                ) from e
        except (BotoConnectionError, EndpointConnectionError, BotoCoreError) as e:
            logger.warning(
                f"{service} connection error",
                attempt=attempt + 1,
                error=str(e),
                **log_context,
            )
            last_exception = e

        if attempt < max_retries - 1:
            backoff_time = retry_backoff * (2**attempt)
            logger.info(
                f"Retrying {service} call after backoff",
                backoff_seconds=backoff_time,
                attempt=attempt + 1,
            )
            time.sleep(backoff_time)

    raise error_cls(
        f"{service} call failed after {max_retries} attempts",
        last_error=str(last_exception),
        **log_context,
    ) from last_exception


class SESClient:
    """AWS SES client wrapper for operator emails."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        client: Any = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._client = client or _boto_client("ses", self.settings)

    def send_email(
        self,
        to_addresses: list[str],
        subject: str,
        body_text: str,
        body_html: Optional[str] = None,
        from_address: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Send an email via SES.

        Returns:
            Dictionary with 'message_id' and 'status'

        Raises:
            SESClientError: If no recipient is given or sending fails
        """
        if not to_addresses:
            raise SESClientError("At least one recipient email address is required")

        body: dict[str, Any] = {"Text": {"Data": body_text, "Charset": "UTF-8"}}
        if body_html:
            body["Html"] = {"Data": body_html, "Charset": "UTF-8"}

        params = {
            "Source": from_address or self.settings.ses_from_email,
            "Destination": {"ToAddresses": to_addresses},
            "Message": {
                "Subject": {"Data": subject, "Charset": "UTF-8"},
                "Body": body,
            },
        }

        response = _call_with_retry(
            lambda: self._client.send_email(**params),
            service="SES",
            error_cls=SESClientError,
            permanent_errors=SES_PERMANENT_ERRORS,
            max_retries=self.max_retries,
            retry_backoff=self.retry_backoff,
            to_addresses=to_addresses,
        )
        logger.info(
            "Email sent via SES",
            message_id=response["MessageId"],
            to_addresses=to_addresses,
        )
        return {"message_id": response["MessageId"], "status": "sent"}


class SNSClient:
    """AWS SNS client wrapper for mobile push."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        client: Any = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._client = client or _boto_client("sns", self.settings)

    def publish_push(
        self,
        endpoint_arn: str,
        title: str,
        body: str,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Publish a push notification to a platform endpoint.

        The message uses SNS's per-protocol JSON structure so the same
        payload reaches both FCM and APNs endpoints.

        Returns:
            Dictionary with 'message_id' and 'status'

        Raises:
            SNSClientError: If the endpoint is not an ARN or publishing fails
        """
        if not endpoint_arn.startswith("arn:"):
            raise SNSClientError(
                "Push endpoint must be an SNS endpoint ARN", endpoint_arn=endpoint_arn
            )

        gcm = {"notification": {"title": title, "body": body}, "data": data}
        apns = {"aps": {"alert": {"title": title, "body": body}, "sound": "default"}, **data}
        message = json.dumps(
            {
                "default": body,
                "GCM": json.dumps(gcm, default=str),
                "APNS": json.dumps(apns, default=str),
            }
        )

        response = _call_with_retry(
            lambda: self._client.publish(
                TargetArn=endpoint_arn, Message=message, MessageStructure="json"
            ),
            service="SNS",
            error_cls=SNSClientError,
            permanent_errors=SNS_PERMANENT_ERRORS,
            max_retries=self.max_retries,
            retry_backoff=self.retry_backoff,
            endpoint_arn=endpoint_arn,
        )
        logger.info(
            "Push notification sent via SNS",
            message_id=response["MessageId"],
            endpoint_arn=endpoint_arn,
        )
        return {"message_id": response["MessageId"], "status": "sent"}
