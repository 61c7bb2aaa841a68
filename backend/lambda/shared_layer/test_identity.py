"""test_identity.py — Identity validators and the Graph REST client.

Run from shared_layer directory:
    python3 -m pytest test_identity.py -v
"""

from __future__ import annotations

import io
import json
import os
import sys
import time
import unittest
import urllib.error
from unittest.mock import MagicMock, patch

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))

from taskcommand_shared.auth import AuthGate
from taskcommand_shared.errors import GatewayError, IdentityUnavailableError
from taskcommand_shared.graph_client import (
    AppTokenProvider,
    GraphClient,
    GraphHTTPError,
    GraphTransportError,
    _request,
)
from taskcommand_shared.identity import CognitoIdentityValidator, GraphIdentityValidator, IdentityValidator

_POOL_ID = "us-east-1_TestPool"
_CLIENT_ID = "test-client"


class GraphIdentityValidatorTests(unittest.TestCase):
    def setUp(self):
        self.client = MagicMock()
        self.client.api_base = "https://graph.microsoft.com/v1.0"

    def test_satisfies_protocol(self):
        self.assertIsInstance(GraphIdentityValidator(self.client), IdentityValidator)

    def test_validate_calls_me_with_caller_token(self):
        self.client.get.return_value = {"id": "u1", "displayName": "Ana"}
        self.assertTrue(GraphIdentityValidator(self.client).validate("user-token"))
        self.assertEqual(self.client.get.call_args.args[:2], ("/me", "user-token"))

    def test_validate_401_is_invalid(self):
        self.client.get.side_effect = GraphHTTPError(401, "InvalidAuthenticationToken")
        self.assertFalse(GraphIdentityValidator(self.client).validate("bad"))

    def test_validate_outage_raises(self):
        self.client.get.side_effect = GraphHTTPError(503, "unavailable")
        with self.assertRaises(IdentityUnavailableError):
            GraphIdentityValidator(self.client).validate("t")
        self.client.get.side_effect = GraphTransportError("timed out")
        with self.assertRaises(IdentityUnavailableError):
            GraphIdentityValidator(self.client).validate("t")

    def test_role_without_manager_group_allows_all(self):
        self.assertTrue(GraphIdentityValidator(self.client).is_privileged_role("t"))
        self.client.get.assert_not_called()

    def test_role_matches_group_name_case_insensitive(self):
        self.client.get.return_value = {"value": [{"id": "g1", "displayName": "Managers"}]}
        self.assertTrue(GraphIdentityValidator(self.client, "managers").is_privileged_role("t"))

    def test_role_follows_next_link(self):
        self.client.get.side_effect = [
            {
                "value": [{"id": "g1", "displayName": "Staff"}],
                "@odata.nextLink": "https://graph.microsoft.com/v1.0/me/memberOf?$skiptoken=x",
            },
            {"value": [{"id": "mgr-id", "displayName": "Leads"}]},
        ]
        self.assertTrue(GraphIdentityValidator(self.client, "mgr-id").is_privileged_role("t"))
        self.assertEqual(self.client.get.call_args_list[1].args[0], "/me/memberOf?$skiptoken=x")

    def test_role_missing_group(self):
        self.client.get.return_value = {"value": [{"id": "g1", "displayName": "Staff"}]}
        self.assertFalse(GraphIdentityValidator(self.client, "Managers").is_privileged_role("t"))


class CognitoIdentityValidatorTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        cls.other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    def setUp(self):
        self.validator = CognitoIdentityValidator(_POOL_ID, _CLIENT_ID, "managers")
        patcher = patch.object(
            self.validator, "_get_jwks", return_value={"k1": self.private_key.public_key()},
        )
        patcher.start()
        self.addCleanup(patcher.stop)

    def _token(self, key=None, **overrides):
        claims = {
            "sub": "user-1",
            "aud": _CLIENT_ID,
            "iss": self.validator.issuer,
            "exp": int(time.time()) + 600,
            "token_use": "id",
            "cognito:groups": ["Managers"],
        }
        claims.update(overrides)
        return jwt.encode(claims, key or self.private_key, algorithm="RS256", headers={"kid": "k1"})

    def test_valid_token(self):
        self.assertTrue(self.validator.validate(self._token()))

    def test_expired_token(self):
        self.assertFalse(self.validator.validate(self._token(exp=int(time.time()) - 60)))

    def test_wrong_audience(self):
        self.assertFalse(self.validator.validate(self._token(aud="someone-else")))

    def test_wrong_signature(self):
        self.assertFalse(self.validator.validate(self._token(key=self.other_key)))

    def test_garbage_token(self):
        self.assertFalse(self.validator.validate("not-a-jwt"))

    def test_manager_group_claim(self):
        self.assertTrue(self.validator.is_privileged_role(self._token()))
        self.assertFalse(self.validator.is_privileged_role(self._token(**{"cognito:groups": ["staff"]})))

    def test_jwks_outage_raises(self):
        validator = CognitoIdentityValidator(_POOL_ID, _CLIENT_ID)
        with patch(
            "taskcommand_shared.identity.urllib.request.urlopen",
            side_effect=urllib.error.URLError("timed out"),
        ):
            with self.assertRaises(IdentityUnavailableError):
                validator.validate(self._token())

    def _jwks_response(self, payload):
        resp = MagicMock()
        resp.read.return_value = json.dumps(payload).encode("utf-8")
        resp.__enter__.return_value = resp
        resp.__exit__.return_value = False
        return resp

    def test_malformed_jwks_is_identity_outage(self):
        payloads = [
            {"keys": [{"kty": "RSA"}]},
            {"keys": [{"kid": "k1", "kty": "RSA"}]},
            {"keys": ["not-an-object"]},
            ["not-an-object"],
        ]
        for payload in payloads:
            validator = CognitoIdentityValidator(_POOL_ID, _CLIENT_ID)
            with patch(
                "taskcommand_shared.identity.urllib.request.urlopen",
                return_value=self._jwks_response(payload),
            ):
                with self.assertRaises(IdentityUnavailableError):
                    validator.validate(self._token())

    def test_malformed_jwks_through_auth_gate_is_dependency(self):
        validator = CognitoIdentityValidator(_POOL_ID, _CLIENT_ID)
        with patch(
            "taskcommand_shared.identity.urllib.request.urlopen",
            return_value=self._jwks_response({"keys": [{"kty": "RSA"}]}),
        ):
            with self.assertRaises(GatewayError) as ctx:
                AuthGate(validator).authorize(f"Bearer {self._token()}")
        self.assertEqual(ctx.exception.kind, "dependency")
        self.assertEqual(ctx.exception.http_status, 500)


class GraphClientTests(unittest.TestCase):
    def test_http_error_keeps_status(self):
        err = urllib.error.HTTPError(
            "https://graph.microsoft.com/v1.0/planner/tasks/T1", 412, "Precondition Failed", {}, io.BytesIO(b"etag"),
        )
        with patch("taskcommand_shared.graph_client.urllib.request.urlopen", side_effect=err):
            with self.assertRaises(GraphHTTPError) as ctx:
                _request("PATCH", "https://graph.microsoft.com/v1.0/planner/tasks/T1", timeout_seconds=1)
        self.assertEqual(ctx.exception.status, 412)

    def test_timeout_is_transport_error(self):
        with patch("taskcommand_shared.graph_client.urllib.request.urlopen", side_effect=TimeoutError("slow")):
            with self.assertRaises(GraphTransportError):
                _request("GET", "https://graph.microsoft.com/v1.0/me", timeout_seconds=1)

    def test_get_builds_url_and_auth_header(self):
        client = GraphClient("https://graph.microsoft.com/v1.0/", timeout_seconds=3)
        with patch("taskcommand_shared.graph_client._request", return_value=(200, {}, {"id": "u1"})) as mock_req:
            body = client.get("/me", "tok", query={"$select": "id"})
        self.assertEqual(body, {"id": "u1"})
        args, kwargs = mock_req.call_args
        self.assertEqual(args, ("GET", "https://graph.microsoft.com/v1.0/me?%24select=id"))
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tok")
        self.assertEqual(kwargs["timeout_seconds"], 3)

    def test_app_token_cached(self):
        provider = AppTokenProvider("tenant", "client", "secret", timeout_seconds=3)
        with patch(
            "taskcommand_shared.graph_client._request",
            return_value=(200, {}, {"access_token": "app-token", "expires_in": 3600}),
        ) as mock_req:
            self.assertEqual(provider.get_token(), "app-token")
            self.assertEqual(provider.get_token(), "app-token")
        mock_req.assert_called_once()
        self.assertEqual(
            mock_req.call_args.args[1], "https://login.microsoftonline.com/tenant/oauth2/v2.0/token",
        )

    def test_app_token_missing_access_token(self):
        provider = AppTokenProvider("tenant", "client", "secret", timeout_seconds=3)
        with patch("taskcommand_shared.graph_client._request", return_value=(400, {}, {})):
            with self.assertRaises(GraphTransportError):
                provider.get_token()


if __name__ == "__main__":
    unittest.main()
