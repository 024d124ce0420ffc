import unittest
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import requests
from cryptography.fernet import Fernet

import xero_auth
from token_cache import CredentialExchangeFailure


def _response(status=200, payload=None, content_type="application/json", text=""):
    response = MagicMock()
    response.status_code = status
    response.headers = {"content-type": content_type}
    response.text = text
    if payload is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = payload
    return response


class TestTokenEndpoint(unittest.TestCase):
    @patch("xero_auth.requests.post")
    def test_client_credentials_exchange(self, mock_post):
        mock_post.return_value = _response(payload={"access_token": "m2m-token", "expires_in": 1800, "scope": "accounting.contacts"})

        token = xero_auth.client_credentials_exchange("cid", "secret")

        self.assertEqual(token.value, "m2m-token")
        self.assertEqual(token.scope, "accounting.contacts")
        data = mock_post.call_args.kwargs["data"]
        self.assertEqual(data["grant_type"], "client_credentials")
        self.assertEqual(data["scope"], xero_auth.XERO_M2M_SCOPES)
        self.assertEqual(mock_post.call_args.args[0], "https://identity.xero.com/connect/token")

    @patch("xero_auth.epoch_ms", return_value=1_000_000)
    @patch("xero_auth.requests.post")
    def test_expires_in_defaults_to_thirty_minutes(self, mock_post, _clock):
        mock_post.return_value = _response(payload={"access_token": "t"})
        token = xero_auth.client_credentials_exchange("cid", "secret")
        self.assertEqual(token.expires_at_ms, 1_000_000 + 1800 * 1000)

    def test_missing_credentials(self):
        with patch.object(xero_auth, "XERO_CLIENT_ID", None), patch.object(xero_auth, "XERO_CLIENT_SECRET", None):
            with self.assertRaises(CredentialExchangeFailure):
                xero_auth.client_credentials_exchange()

    @patch("xero_auth.requests.post")
    def test_unauthorized(self, mock_post):
        mock_post.return_value = _response(status=401, payload={"error": "invalid_client"})
        with self.assertRaises(CredentialExchangeFailure) as ctx:
            xero_auth.client_credentials_exchange("cid", "bad")
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertIn("invalid_client", str(ctx.exception))

    @patch("xero_auth.requests.post")
    def test_html_body_is_a_credential_failure(self, mock_post):
        mock_post.return_value = _response(status=200, content_type="text/html; charset=utf-8", text="<html>")
        with self.assertRaises(CredentialExchangeFailure) as ctx:
            xero_auth.client_credentials_exchange("cid", "secret")
        self.assertIn("redirect URI mismatch", str(ctx.exception))

    @patch("xero_auth.requests.post")
    def test_missing_access_token(self, mock_post):
        mock_post.return_value = _response(payload={"token_type": "Bearer"})
        with self.assertRaises(CredentialExchangeFailure):
            xero_auth.client_credentials_exchange("cid", "secret")

    @patch("xero_auth.requests.post", side_effect=requests.ConnectionError("boom"))
    def test_transport_error(self, _post):
        with self.assertRaises(CredentialExchangeFailure):
            xero_auth.client_credentials_exchange("cid", "secret")

    @patch("xero_auth.requests.post")
    def test_refresh_keeps_old_refresh_token_when_not_rotated(self, mock_post):
        mock_post.return_value = _response(payload={"access_token": "new", "expires_in": 1800})
        token = xero_auth.refresh_access_token("old-refresh")
        self.assertEqual(token.value, "new")
        self.assertEqual(token.refresh_token, "old-refresh")
        self.assertEqual(mock_post.call_args.kwargs["data"]["grant_type"], "refresh_token")

    @patch("xero_auth.requests.post")
    def test_code_exchange(self, mock_post):
        mock_post.return_value = _response(payload={"access_token": "a", "refresh_token": "r", "expires_in": 1800})
        token = xero_auth.exchange_code_for_token("the-code")
        self.assertEqual(token.refresh_token, "r")
        self.assertEqual(mock_post.call_args.kwargs["data"]["code"], "the-code")

    def test_refresh_without_token(self):
        with self.assertRaises(CredentialExchangeFailure):
            xero_auth.refresh_access_token("")


class TestTenants(unittest.TestCase):
    @patch("xero_auth.requests.get")
    def test_get_tenants(self, mock_get):
        mock_get.return_value = _response(payload=[{"tenantId": "t1", "tenantName": "Demo"}])
        tenants = xero_auth.get_tenants("token")
        self.assertEqual(tenants[0]["tenantId"], "t1")
        self.assertEqual(mock_get.call_args.kwargs["headers"]["Authorization"], "Bearer token")

    @patch("xero_auth.requests.get")
    def test_get_tenants_unauthorized(self, mock_get):
        mock_get.return_value = _response(status=401, text="unauthorized")
        with self.assertRaises(CredentialExchangeFailure) as ctx:
            xero_auth.get_tenants("token")
        self.assertEqual(ctx.exception.status_code, 401)

    @patch("xero_auth.requests.get")
    def test_get_tenants_html_body_is_a_credential_failure(self, mock_get):
        mock_get.return_value = _response(status=200, content_type="text/html", text="<html>Service Unavailable</html>")
        with self.assertRaises(CredentialExchangeFailure) as ctx:
            xero_auth.get_tenants("token")
        self.assertIn("unreadable", str(ctx.exception))
        self.assertEqual(ctx.exception.details, "<html>Service Unavailable</html>")

    def test_select_tenant(self):
        tenants = [{"tenantId": "t1", "tenantName": "One"}, {"tenantId": "t2", "tenantName": "Two"}]
        self.assertEqual(xero_auth.select_tenant(tenants)["tenantId"], "t1")
        self.assertEqual(xero_auth.select_tenant(tenants, "Two")["tenantId"], "t2")
        self.assertEqual(xero_auth.select_tenant(tenants, "t2")["tenantName"], "Two")
        self.assertEqual(xero_auth.select_tenant(tenants, "missing")["tenantId"], "t1")
        self.assertIsNone(xero_auth.select_tenant([]))


class TestOAuthState(unittest.TestCase):
    def test_plain_state_round_trip(self):
        with patch.object(xero_auth, "fernet", None):
            state = xero_auth.encode_state("user:42")
            self.assertEqual(xero_auth.session_id_from_state(state), "user:42")

    def test_encrypted_state(self):
        with patch.object(xero_auth, "fernet", Fernet(Fernet.generate_key())):
            state = xero_auth.encode_state("session-abc-123")
            self.assertNotIn("session-abc-123", state)
            self.assertEqual(xero_auth.session_id_from_state(state), "session-abc-123")
            self.assertIsNone(xero_auth.session_id_from_state("tampered"))

    def test_missing_state(self):
        self.assertIsNone(xero_auth.session_id_from_state(None))

    def test_authorization_url(self):
        with patch.object(xero_auth, "fernet", None), patch.object(xero_auth, "XERO_CLIENT_ID", "cid"), \
                patch.object(xero_auth, "XERO_REDIRECT_URI", "http://localhost/xero/callback"):
            url, state = xero_auth.build_authorization_url("s1")
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        self.assertEqual(parsed.netloc, "login.xero.com")
        self.assertEqual(query["client_id"], ["cid"])
        self.assertEqual(query["redirect_uri"], ["http://localhost/xero/callback"])
        self.assertEqual(query["state"], [state])
        self.assertIn("offline_access", query["scope"][0])
