"""
Tests for shared.billing_utils secret retrieval.
"""

import json
from unittest.mock import MagicMock, patch

import boto3
from botocore.exceptions import ClientError

from shared.billing_utils import get_session_secret, get_stripe_api_key, get_stripe_secrets


class TestGetStripeSecrets:
    def test_reads_json_secrets(self, stripe_secrets):
        """Should read the Stripe API key and webhook secret from JSON secrets."""
        api_key, webhook_secret = get_stripe_secrets()

        assert api_key == stripe_secrets["api_key"]
        assert webhook_secret == stripe_secrets["webhook_secret"]
        assert get_session_secret() == stripe_secrets["session_secret"]

    def test_plain_string_secret(self, mock_dynamodb, monkeypatch):
        """A secret stored as a bare string is used as-is."""
        client = boto3.client("secretsmanager", region_name="us-east-1")
        arn = client.create_secret(Name="billing/plain", SecretString="sk_test_plain")["ARN"]
        monkeypatch.setenv("STRIPE_SECRET_ARN", arn)

        assert get_stripe_api_key() == "sk_test_plain"

    def test_unset_arn(self, monkeypatch):
        """Should return None when the secret ARN is not configured."""
        monkeypatch.setenv("STRIPE_SECRET_ARN", "")
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET_ARN", "")

        assert get_stripe_secrets() == (None, None)

    def test_secrets_manager_error_returns_none(self, monkeypatch):
        """Should return None instead of raising when Secrets Manager fails."""
        monkeypatch.setenv("STRIPE_SECRET_ARN", "arn:aws:secretsmanager:us-east-1:123:secret:missing")
        client = MagicMock()
        client.get_secret_value.side_effect = ClientError(
            {"Error": {"Code": "ResourceNotFoundException"}}, "GetSecretValue"
        )
        with patch("shared.billing_utils.get_secretsmanager", return_value=client):
            assert get_stripe_api_key() is None

    def test_cached_within_ttl(self, monkeypatch):
        """Should serve repeated lookups from the cache."""
        monkeypatch.setenv("STRIPE_SECRET_ARN", "arn:aws:secretsmanager:us-east-1:123:secret:key")
        client = MagicMock()
        client.get_secret_value.return_value = {"SecretString": json.dumps({"key": "sk_test_cached"})}
        with patch("shared.billing_utils.get_secretsmanager", return_value=client):
            get_stripe_api_key()
            assert get_stripe_api_key() == "sk_test_cached"

        assert client.get_secret_value.call_count == 1
