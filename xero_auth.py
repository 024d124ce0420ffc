import os
import secrets
import requests
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from cryptography.fernet import Fernet, InvalidToken

from token_cache import BearerToken, CredentialExchangeFailure, TokenLifecycleCache, epoch_ms
from utils import logger, mask_token

# Environment variables
XERO_CLIENT_ID = os.environ.get("XERO_CLIENT_ID")
XERO_CLIENT_SECRET = os.environ.get("XERO_CLIENT_SECRET")
XERO_REDIRECT_URI = os.environ.get("XERO_REDIRECT_URI")
XERO_SCOPES = os.environ.get(
    "XERO_SCOPES",
    "openid profile email accounting.transactions accounting.contacts accounting.settings offline_access",
)
# Scopes must match the custom connection exactly
XERO_M2M_SCOPES = os.environ.get(
    "XERO_M2M_SCOPES",
    "accounting.transactions accounting.settings.read accounting.contacts",
)

XERO_AUTHORIZE_URL = "https://login.xero.com/identity/connect/authorize"
XERO_TOKEN_URL = "https://identity.xero.com/connect/token"
XERO_CONNECTIONS_URL = "https://api.xero.com/connections"

DEFAULT_EXPIRES_IN = 1800
REFRESH_MARGIN_MS = 300_000
HTTP_TIMEOUT = 10

# Encryption setup
TOKEN_ENC_KEY = os.environ.get("TOKEN_ENC_KEY")

if not TOKEN_ENC_KEY:
    logger.warning("TOKEN_ENC_KEY not set; OAuth state will not be encrypted!")
fernet = Fernet(TOKEN_ENC_KEY) if TOKEN_ENC_KEY else None


# ---- OAuth state ----
def encode_state(session_id: str) -> str:
    raw = f"{session_id}:{secrets.token_hex(16)}"
    if not fernet:
        return raw
    return fernet.encrypt(raw.encode("utf-8")).decode("ascii")

def session_id_from_state(state: Optional[str]) -> Optional[str]:
    """Recover the session id bound into an OAuth state value, if any."""
    if not state:
        return None
    raw = state
    if fernet:
        try:
            raw = fernet.decrypt(state.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError):
            logger.warning("OAuth state could not be decrypted")
            return None
    if ":" not in raw:
        return None
    session_id, _nonce = raw.rsplit(":", 1)
    return session_id or None


def build_authorization_url(session_id: str = "default") -> Tuple[str, str]:
    """Return the Xero consent URL and the state value bound to `session_id`."""
    state = encode_state(session_id)
    params = {
        "response_type": "code",
        "client_id": XERO_CLIENT_ID,
        "redirect_uri": XERO_REDIRECT_URI,
        "scope": XERO_SCOPES,
        "state": state,
    }
    logger.info("Built Xero authorization URL for session=%s redirect_uri=%s", session_id, XERO_REDIRECT_URI)
    return f"{XERO_AUTHORIZE_URL}?{urlencode(params)}", state


# ---- Token endpoint ----
def _token_from_response(response: requests.Response, *, fallback_refresh: Optional[str] = None) -> BearerToken:
    content_type = response.headers.get("content-type", "")
    if "text/html" in content_type:
        # Xero answers bad client credentials / redirect mismatches with an HTML page
        logger.error("Xero token endpoint returned HTML (status=%s)", response.status_code)
        raise CredentialExchangeFailure(
            "Invalid Xero credentials or redirect URI mismatch",
            status_code=response.status_code,
            details=response.text[:500],
        )
    if response.status_code != 200:
        try:
            details = response.json()
        except ValueError:
            details = response.text[:500]
        error = details.get("error") if isinstance(details, dict) else None
        logger.error("Xero token request returned %s: %s", response.status_code, details)
        if response.status_code == 401:
            message = "Authentication failed: invalid client id or client secret"
        else:
            message = f"Token request failed with status {response.status_code}"
        if error:
            message = f"{message} ({error})"
        raise CredentialExchangeFailure(message, status_code=response.status_code, details=details)

    try:
        payload = response.json()
    except ValueError:
        raise CredentialExchangeFailure("Token response was not JSON", status_code=response.status_code, details=response.text[:500])
    access_token = payload.get("access_token") if isinstance(payload, dict) else None
    if not access_token:
        logger.error("Xero token missing in response: keys=%s", list(payload) if isinstance(payload, dict) else type(payload).__name__)
        raise CredentialExchangeFailure("Token missing in response", status_code=response.status_code, details=payload)

    expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
    return BearerToken(
        value=access_token,
        expires_at_ms=epoch_ms() + expires_in * 1000,
        scope=payload.get("scope"),
        refresh_token=payload.get("refresh_token") or fallback_refresh,
        token_type=payload.get("token_type") or "Bearer",
    )

def _post_token(data: Dict[str, str], *, fallback_refresh: Optional[str] = None) -> BearerToken:
    try:
        response = requests.post(
            XERO_TOKEN_URL,
            data=data,
            headers={"Accept": "application/json"},
            timeout=HTTP_TIMEOUT,
        )
    except requests.RequestException as exc:
        logger.error("Xero token request failed: %s", exc)
        raise CredentialExchangeFailure(f"Unable to reach Xero identity service: {exc}")
    return _token_from_response(response, fallback_refresh=fallback_refresh)


def client_credentials_exchange(
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    scopes: Optional[str] = None,
) -> BearerToken:
    """Custom connection (machine-to-machine) grant."""
    client_id = client_id or XERO_CLIENT_ID
    client_secret = client_secret or XERO_CLIENT_SECRET
    if not client_id or not client_secret:
        raise CredentialExchangeFailure("XERO_CLIENT_ID and XERO_CLIENT_SECRET must be set")
    token = _post_token({
        "grant_type": "client_credentials",
        "client_id": client_id,
        "client_secret": client_secret,
        "scope": scopes or XERO_M2M_SCOPES,
    })
    logger.info("Xero client-credentials token received: %s scope=%s", mask_token(token.value), token.scope)
    return token

def make_client_credentials_cache(safety_margin_ms: int = 0) -> TokenLifecycleCache:
    return TokenLifecycleCache(client_credentials_exchange, safety_margin_ms=safety_margin_ms, name="xero-m2m")


def exchange_code_for_token(code: str) -> BearerToken:
    if not code:
        raise CredentialExchangeFailure("Missing authorization code")
    logger.info("Exchanging Xero authorization code (redirect_uri=%s)", XERO_REDIRECT_URI)
    token = _post_token({
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": XERO_REDIRECT_URI or "",
        "client_id": XERO_CLIENT_ID or "",
        "client_secret": XERO_CLIENT_SECRET or "",
    })
    if not token.refresh_token:
        logger.warning("Xero authorization token has no refresh_token; offline_access scope missing?")
    return token

def refresh_access_token(refresh_token: str) -> BearerToken:
    if not refresh_token:
        raise CredentialExchangeFailure("No refresh token available")
    logger.info("Refreshing Xero access token")
    return _post_token(
        {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": XERO_CLIENT_ID or "",
            "client_secret": XERO_CLIENT_SECRET or "",
        },
        fallback_refresh=refresh_token,
    )


# ---- Tenants ----
def get_tenants(access_token: str) -> List[Dict[str, Any]]:
    if not access_token:
        raise CredentialExchangeFailure("Access token is missing")
    try:
        response = requests.get(
            XERO_CONNECTIONS_URL,
            headers={"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"},
            timeout=HTTP_TIMEOUT,
        )
    except requests.RequestException as exc:
        logger.error("Xero connections request failed: %s", exc)
        raise CredentialExchangeFailure(f"Unable to reach Xero connections API: {exc}")

    if response.status_code == 401:
        logger.error("Xero connections returned 401 for token %s", mask_token(access_token))
        raise CredentialExchangeFailure("Token may be invalid or expired", status_code=401, details=response.text[:500])
    if response.status_code != 200:
        logger.error("Xero connections returned %s: %s", response.status_code, response.text)
        raise CredentialExchangeFailure(
            f"Failed to get tenants (status {response.status_code})",
            status_code=response.status_code,
            details=response.text[:500],
        )
    try:
        tenants = response.json() or []
    except ValueError:
        logger.error("Xero connections returned a non-JSON body: %s", response.text[:200])
        raise CredentialExchangeFailure("Xero connections API returned an unreadable response", status_code=200, details=response.text[:500])
    logger.info("Retrieved %s Xero tenants", len(tenants))
    return tenants

def select_tenant(tenants: List[Dict[str, Any]], preferred: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Pick the tenant matching `preferred` (id or name), else the first one."""
    if not tenants:
        return None
    if preferred:
        for tenant in tenants:
            if preferred in (tenant.get("tenantId"), tenant.get("tenantName")):
                return tenant
        logger.warning("Preferred tenant %r not among connections; using first", preferred)
    return tenants[0]
