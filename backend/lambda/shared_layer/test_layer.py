"""test_layer.py — Unit tests for upscrolled_shared layer modules.

Run from the repository root:
    python3 -m pytest backend/lambda/shared_layer/test_layer.py -v
"""

from __future__ import annotations

import base64
import datetime as dt
import json
import os
import sys
import time
import unittest
from decimal import Decimal
from unittest.mock import MagicMock, patch

import jwt
from botocore.exceptions import ClientError, EndpointConnectionError

# Ensure the layer's python/ directory is importable.
sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "python"))

import upscrolled_shared.auth as auth_mod
import upscrolled_shared.aws_clients as aws_clients
import upscrolled_shared.rate_limit as rate_limit
from upscrolled_shared.auth import _authenticate, _extract_bearer, _subject
from upscrolled_shared.errors import (
    AuthorizationError,
    RateLimitedError,
    UpstreamError,
    ValidationError,
)
from upscrolled_shared.http_utils import (
    _api_error_response,
    _client_ip,
    _error,
    _json_body,
    _path_method,
    _response,
)
from upscrolled_shared.rate_limit import RateLimitPolicy, check_rate_limit, enforce_rate_limit
from upscrolled_shared.serialization import _deserialize, _serialize, _serialize_item, iso_millis


def _authorizer_event(claims):
    return {"requestContext": {"authorizer": {"jwt": {"claims": claims}}}, "headers": {}}


class AuthTests(unittest.TestCase):
    def test_authorizer_claims_are_trusted(self):
        claims, err = _authenticate(_authorizer_event({"sub": "user-1", "email": "a@b.c"}))
        self.assertIsNone(err)
        self.assertEqual(_subject(claims), "user-1")

    def test_missing_credentials_returns_401(self):
        claims, err = _authenticate({"headers": {}})
        self.assertIsNone(claims)
        self.assertEqual(err["statusCode"], 401)
        self.assertIn("Authentication required", json.loads(err["body"])["error"])

    def test_claims_without_subject_rejected(self):
        claims, err = _authenticate(_authorizer_event({"email": "a@b.c"}))
        self.assertIsNone(claims)
        self.assertEqual(err["statusCode"], 401)

    def test_extract_bearer(self):
        self.assertEqual(_extract_bearer({"headers": {"Authorization": "Bearer abc.def"}}), "abc.def")
        self.assertIsNone(_extract_bearer({"headers": {"authorization": "Basic xyz"}}))
        self.assertIsNone(_extract_bearer({"headers": {}}))

    @patch.object(auth_mod, "_verify_token", return_value={"sub": "user-2"})
    def test_bearer_token_verified(self, mock_verify):
        claims, err = _authenticate({"headers": {"authorization": "Bearer tok"}})
        self.assertIsNone(err)
        self.assertEqual(claims["sub"], "user-2")
        mock_verify.assert_called_once_with("tok")

    @patch.object(auth_mod, "_verify_token", side_effect=ValueError("Token has expired. Please sign in again."))
    def test_bearer_token_rejected(self, _mock_verify):
        claims, err = _authenticate({"headers": {"authorization": "Bearer tok"}})
        self.assertIsNone(claims)
        self.assertEqual(err["statusCode"], 401)
        self.assertIn("expired", json.loads(err["body"])["error"])


class VerifyTokenTests(unittest.TestCase):
    POOL_ID = "us-east-1_TestPool1"
    CLIENT_ID = "test-client-id"

    @classmethod
    def setUpClass(cls):
        from cryptography.hazmat.primitives.asymmetric import rsa

        cls.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    def setUp(self):
        for patcher in (
            patch.object(auth_mod, "COGNITO_USER_POOL_ID", self.POOL_ID),
            patch.object(auth_mod, "COGNITO_CLIENT_ID", self.CLIENT_ID),
            patch.object(auth_mod, "_get_jwks", return_value={"kid-1": self.private_key.public_key()}),
        ):
            patcher.start()
            self.addCleanup(patcher.stop)

    def _token(self, kid="kid-1", **overrides):
        claims = {
            "sub": "user-9",
            "aud": self.CLIENT_ID,
            "iss": f"https://cognito-idp.us-east-1.amazonaws.com/{self.POOL_ID}",
            "token_use": "id",
            "exp": int(time.time()) + 300,
        }
        claims.update(overrides)
        return jwt.encode(claims, self.private_key, algorithm="RS256", headers={"kid": kid})

    def test_valid_id_token(self):
        self.assertEqual(auth_mod._verify_token(self._token())["sub"], "user-9")

    def test_expired_token(self):
        with self.assertRaisesRegex(ValueError, "expired"):
            auth_mod._verify_token(self._token(exp=int(time.time()) - 60))

    def test_wrong_audience_or_issuer(self):
        with self.assertRaises(ValueError):
            auth_mod._verify_token(self._token(aud="someone-else"))
        with self.assertRaises(ValueError):
            auth_mod._verify_token(self._token(iss="https://evil.example.com"))

    def test_access_token_rejected(self):
        with self.assertRaisesRegex(ValueError, "id token"):
            auth_mod._verify_token(self._token(token_use="access"))

    def test_unknown_key_id(self):
        with self.assertRaisesRegex(ValueError, "user pool"):
            auth_mod._verify_token(self._token(kid="kid-2"))

    def test_garbage_token(self):
        with self.assertRaisesRegex(ValueError, "Malformed"):
            auth_mod._verify_token("not-a-jwt")


class HttpUtilsTests(unittest.TestCase):
    def test_response_format(self):
        resp = _response(200, {"key": "val", "n": Decimal("3")})
        self.assertEqual(resp["statusCode"], 200)
        self.assertIn("Access-Control-Allow-Origin", resp["headers"])
        body = json.loads(resp["body"])
        self.assertEqual(body, {"key": "val", "n": 3})

    def test_error_envelope(self):
        resp = _error(400, "bad input", field="fileSize")
        body = json.loads(resp["body"])
        self.assertFalse(body["success"])
        self.assertEqual(body["error"], "bad input")
        self.assertEqual(body["error_envelope"]["code"], "INVALID_INPUT")
        self.assertFalse(body["error_envelope"]["retryable"])
        self.assertEqual(body["error_envelope"]["details"], {"field": "fileSize"})

    def test_api_error_mapping(self):
        cases = [
            (ValidationError("nope"), 400, "INVALID_INPUT", False),
            (AuthorizationError("nope"), 403, "PERMISSION_DENIED", False),
            (UpstreamError("nope"), 502, "UPSTREAM_ERROR", True),
        ]
        for exc, status, code, retryable in cases:
            resp = _api_error_response(exc)
            envelope = json.loads(resp["body"])["error_envelope"]
            self.assertEqual(resp["statusCode"], status)
            self.assertEqual(envelope["code"], code)
            self.assertEqual(envelope["retryable"], retryable)

    def test_rate_limited_sets_retry_after(self):
        resp = _api_error_response(RateLimitedError("slow down", retry_after=17))
        self.assertEqual(resp["statusCode"], 429)
        self.assertEqual(resp["headers"]["Retry-After"], "17")

    def test_json_body(self):
        self.assertEqual(_json_body({"body": '{"key": "val"}'}), {"key": "val"})
        self.assertEqual(_json_body({"body": None}), {})

    def test_json_body_base64(self):
        raw = base64.b64encode(b'{"key": "b64"}').decode()
        self.assertEqual(_json_body({"body": raw, "isBase64Encoded": True}), {"key": "b64"})

    def test_json_body_rejects_non_object(self):
        with self.assertRaises(ValueError):
            _json_body({"body": "[1, 2]"})
        with self.assertRaises(ValueError):
            _json_body({"body": "{not json"})

    def test_path_method(self):
        event = {
            "requestContext": {"http": {"method": "post", "path": "/api/v1/uploads/request"}},
            "rawPath": "/api/v1/uploads/request",
        }
        self.assertEqual(_path_method(event), ("POST", "/api/v1/uploads/request"))

    def test_client_ip_prefers_forwarded_for(self):
        event = {
            "headers": {"X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
            "requestContext": {"http": {"sourceIp": "10.0.0.2"}},
        }
        self.assertEqual(_client_ip(event), "203.0.113.9")
        self.assertEqual(_client_ip({"requestContext": {"http": {"sourceIp": "10.0.0.2"}}}), "10.0.0.2")


class SerializationTests(unittest.TestCase):
    def test_serialize_string(self):
        self.assertEqual(_serialize("hello"), {"S": "hello"})

    def test_serialize_item_drops_none(self):
        self.assertEqual(_serialize_item({"a": "x", "b": None}), {"a": {"S": "x"}})

    def test_deserialize_numbers(self):
        out = _deserialize({"count": {"N": "5"}, "ratio": {"N": "0.5"}})
        self.assertEqual(out, {"count": 5, "ratio": 0.5})

    def test_deserialize_nested_map(self):
        out = _deserialize({"media": {"M": {"type": {"S": "image"}, "size": {"N": "10"}}}})
        self.assertEqual(out, {"media": {"type": "image", "size": 10}})

    def test_iso_millis(self):
        value = dt.datetime(2026, 1, 1, 12, 0, 0, 987654, tzinfo=dt.timezone.utc)
        self.assertEqual(iso_millis(value), "2026-01-01T12:00:00.987Z")
        self.assertEqual(iso_millis(value.replace(tzinfo=None)), "2026-01-01T12:00:00.987Z")
        self.assertRegex(iso_millis(), r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")


class AwsClientTests(unittest.TestCase):
    def tearDown(self):
        aws_clients.reset_clients()

    @patch.object(aws_clients.boto3, "client")
    def test_clients_are_lazy_singletons(self, mock_client):
        mock_client.side_effect = lambda service, **kwargs: MagicMock(name=service)
        aws_clients.reset_clients()
        first = aws_clients._get_s3()
        self.assertIs(first, aws_clients._get_s3())
        self.assertEqual(mock_client.call_count, 1)

        aws_clients.reset_clients()
        self.assertIsNot(first, aws_clients._get_s3())
        self.assertEqual(mock_client.call_count, 2)


class RateLimitTests(unittest.TestCase):
    POLICY = RateLimitPolicy(window_seconds=60, max_requests=2)
    NOW = 1_700_000_030.5  # 30.5s into a window that starts at 1_700_000_000 - (1_700_000_000 % 60)

    def setUp(self):
        self._orig_table = rate_limit.RATE_LIMIT_TABLE
        rate_limit.RATE_LIMIT_TABLE = "rate-limits"
        self.ddb = MagicMock()
        patcher = patch.object(rate_limit, "_get_ddb", return_value=self.ddb)
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        rate_limit.RATE_LIMIT_TABLE = self._orig_table

    def _count(self, n):
        self.ddb.update_item.return_value = {"Attributes": {"request_count": {"N": str(n)}}}

    def test_fixed_window_key_and_reset(self):
        self._count(1)
        result = check_rate_limit("user:u1", self.POLICY, now=self.NOW)
        window_start = int(self.NOW // 60) * 60
        self.assertTrue(result.allowed)
        self.assertEqual(result.remaining, 1)
        self.assertEqual(result.reset_at, window_start + 60)
        kwargs = self.ddb.update_item.call_args.kwargs
        self.assertEqual(kwargs["TableName"], "rate-limits")
        self.assertEqual(kwargs["Key"], {"limit_key": {"S": f"ratelimit:user:u1:{window_start}"}})
        self.assertEqual(kwargs["ExpressionAttributeValues"][":exp"], {"N": str(window_start + 61)})

    def test_over_limit_denied(self):
        self._count(3)
        result = check_rate_limit("user:u1", self.POLICY, now=self.NOW)
        self.assertFalse(result.allowed)
        self.assertEqual(result.remaining, 0)

    def test_backend_error_fails_open(self):
        self.ddb.update_item.side_effect = EndpointConnectionError(endpoint_url="https://dynamodb")
        with self.assertLogs(rate_limit.logger, level="WARNING"):
            result = check_rate_limit("user:u1", self.POLICY, now=self.NOW)
        self.assertTrue(result.allowed)

    def test_client_error_fails_open(self):
        self.ddb.update_item.side_effect = ClientError(
            {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow"}},
            "UpdateItem",
        )
        self.assertTrue(check_rate_limit("user:u1", self.POLICY, now=self.NOW).allowed)

    def test_disabled_without_table(self):
        rate_limit.RATE_LIMIT_TABLE = ""
        self.assertTrue(check_rate_limit("user:u1", self.POLICY, now=self.NOW).allowed)
        self.ddb.update_item.assert_not_called()

    def test_enforce_raises_with_retry_after(self):
        self._count(5)
        event = {"headers": {}, "requestContext": {"http": {"sourceIp": "198.51.100.4"}}}
        with self.assertRaises(RateLimitedError) as ctx:
            enforce_rate_limit(event, {"sub": "u1"}, self.POLICY, now=self.NOW)
        window_end = int(self.NOW // 60) * 60 + 60
        self.assertEqual(ctx.exception.retry_after, window_end - int(self.NOW))

    def test_enforce_both_checks_ip_then_user(self):
        self._count(1)
        event = {"headers": {}, "requestContext": {"http": {"sourceIp": "198.51.100.4"}}}
        enforce_rate_limit(event, {"sub": "u1"}, self.POLICY, identify_by="both", now=self.NOW)
        keys = [c.kwargs["Key"]["limit_key"]["S"] for c in self.ddb.update_item.call_args_list]
        self.assertTrue(keys[0].startswith("ratelimit:ip:198.51.100.4:"))
        self.assertTrue(keys[1].startswith("ratelimit:user:u1:"))

    def test_enforce_user_without_identity_falls_back_to_ip(self):
        self._count(1)
        event = {"headers": {}, "requestContext": {"http": {"sourceIp": "198.51.100.4"}}}
        enforce_rate_limit(event, None, self.POLICY, now=self.NOW)
        key = self.ddb.update_item.call_args.kwargs["Key"]["limit_key"]["S"]
        self.assertTrue(key.startswith("ratelimit:ip:198.51.100.4:"))

    def test_enforce_rejects_unknown_mode(self):
        with self.assertRaises(ValueError):
            enforce_rate_limit({}, None, self.POLICY, identify_by="device")


if __name__ == "__main__":
    unittest.main()
