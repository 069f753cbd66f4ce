"""
Email gateway client for login code and token expiry emails via HTTP gateway.

Uses HMAC-SHA256 signature for request authentication.
"""

import hashlib
import hmac
import json
import logging
from datetime import datetime

import requests

logger = logging.getLogger(__name__)


class EmailGatewayError(Exception):
    """Raised when email gateway request fails."""


class EmailGatewayClient:
    """Send emails via HTTP gateway with HMAC signature verification."""

    def __init__(self, gateway_url: str, api_key: str, hmac_secret: str):
        """
        Initialize with gateway credentials.

        Raises:
            ValueError: If any credential is empty
        """
        if not gateway_url:
            raise ValueError("gateway_url is required")
        if not api_key:
            raise ValueError("api_key is required")
        if not hmac_secret:
            raise ValueError("hmac_secret is required")

        self.gateway_url = gateway_url
        self.api_key = api_key
        self.hmac_secret = hmac_secret

    def _sign_and_send(self, payload: dict) -> None:
        """
        Sign payload with HMAC and send to gateway.

        Raises:
            EmailGatewayError: On any failure
        """
        payload_json = json.dumps(payload, separators=(",", ":"))

        signature = hmac.new(
            self.hmac_secret.encode("utf-8"),
            payload_json.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        headers = {
            "Content-Type": "application/json",
            "X-API-Key": self.api_key,
            "X-Signature": signature,
        }

        try:
            response = requests.post(
                self.gateway_url,
                data=payload_json,
                headers=headers,
                timeout=10,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Email gateway connection failed: {e}")
            raise EmailGatewayError(f"Connection failed: {e}")

        try:
            response_data = response.json()
        except ValueError:
            logger.error(f"Email gateway returned invalid JSON (status {response.status_code})")
            raise EmailGatewayError("Invalid response from gateway")

        if response.status_code != 200 or not response_data.get("success"):
            error_msg = response_data.get("message", "Unknown error")
            logger.error(f"Email gateway error: {error_msg}")
            raise EmailGatewayError(f"Gateway error: {error_msg}")

    def send_login_code(self, email: str, code: str, expires_at: datetime, app_name: str) -> None:
        """
        Send a one-time login code.

        The code itself is never logged.

        Raises:
            EmailGatewayError: On any failure
        """
        payload = {
            "type": "login_code",
            "email": email,
            "code": code,
            "expires_at": expires_at.isoformat(),
            "app_name": app_name,
        }
        self._sign_and_send(payload)
        logger.info(f"Login code email sent to {email}")

    def send_token_expiration(
        self,
        email: str,
        token_name: str,
        expires_at: datetime,
        days_until_expiration: int,
        app_name: str,
        auth_realm: str,
    ) -> None:
        """
        Warn a token owner that an access token expires soon.

        Raises:
            EmailGatewayError: On any failure
        """
        payload = {
            "type": "access_token_expiration",
            "email": email,
            "subject": "Access Token Expiring Soon - Action Required",
            "token_name": token_name,
            "expires_at": expires_at.isoformat(),
            "days_until_expiration": days_until_expiration,
            "app_name": app_name,
            "auth_realm": auth_realm,
        }
        self._sign_and_send(payload)
        logger.info(f"Access token expiration email sent to {email}")
