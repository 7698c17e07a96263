# -*- coding: utf-8 -*-
"""
Microsoft authentication module for UnoCloud sync.

This module handles Azure AD authentication using MSAL (Microsoft Authentication
Library) and keeps one bearer token per tenant until it is close to expiry.
"""

import threading
import time

import msal
import requests

from .exceptions import AuthError
from .utils import is_debug_enabled


def build_client_app(tenant_id, client_id, client_secret, login_endpoint):
    """
    Create an MSAL confidential client for the client credentials flow.

    Raises:
        AuthError: If MSAL rejects the authority or credentials format
    """
    # Format: https://login.microsoftonline.com/{tenant_id}
    authority_url = f'https://{login_endpoint}/{tenant_id}'
    try:
        return msal.ConfidentialClientApplication(
            authority=authority_url,
            client_id=client_id,
            client_credential=client_secret,
        )
    except (ValueError, requests.exceptions.RequestException) as e:
        raise AuthError(f"Cannot initialize authentication for tenant {tenant_id}: {e}") from e


def _print_banner(title):
    print("[!] ========================================")
    print(f"[!] {title}")
    print("[!] ========================================")


def acquire_token(tenant_id, client_id, client_secret, login_endpoint, graph_endpoint, app=None):
    """
    Acquire an authentication token from Azure Active Directory using MSAL.

    This function handles the OAuth 2.0 client credentials flow, which is used
    for service-to-service authentication (no user interaction required).

    Args:
        tenant_id (str): Azure AD tenant ID (GUID format)
        client_id (str): Application (client) ID from Azure AD app registration
        client_secret (str): Client secret value from Azure AD app registration
        login_endpoint (str): Azure AD authentication endpoint (e.g., 'login.microsoftonline.com')
        graph_endpoint (str): Microsoft Graph API endpoint (e.g., 'graph.microsoft.com')
        app (msal.ConfidentialClientApplication, optional): Reuse an existing client

    Returns:
        dict: Token dictionary containing:
            - 'access_token': The JWT token to authenticate API calls
            - 'token_type': Usually 'Bearer'
            - 'expires_in': Token lifetime in seconds

    Raises:
        AuthError: If authentication fails (wrong credentials, network issues, etc.)

    Note:
        The app registration must have Graph API Sites.ReadWrite.All permission.
    """
    if app is None:
        app = build_client_app(tenant_id, client_id, client_secret, login_endpoint)

    try:
        # '/.default' scope means "use all permissions granted to this app"
        token = app.acquire_token_for_client(scopes=[f"https://{graph_endpoint}/.default"])
    except requests.exceptions.RequestException as e:
        _print_banner("AUTHENTICATION FAILED")
        print(f"[!] Network error contacting {login_endpoint}: {str(e)[:200]}")
        print("[!]   - Check network connectivity and proxy settings")
        print("[!]   - Verify firewall rules allow the Microsoft identity platform")
        raise AuthError(f"Authentication failed: network error - {e}") from e

    # MSAL returns errors in the token dict, not as exceptions
    if "access_token" in token:
        return token

    error_msg = token.get("error", "unknown_error")
    error_desc = token.get("error_description", "No description provided")
    error_codes = token.get("error_codes", [])

    _print_banner("AUTHENTICATION FAILED")

    if "invalid_client" in error_msg or 7000215 in error_codes:
        print("[!] Error: Invalid client credentials")
        print("[!] Troubleshooting steps:")
        print("[!]   1. Verify the tenant's client_id matches the Azure AD app registration")
        print("[!]   2. Verify the client_secret has no extra spaces and has not expired")
        print("[!]   3. Ensure the Azure tenant_id is correct")
        print(f"[!] Technical details: {error_desc}")
        raise AuthError(f"Authentication failed: Invalid client credentials - {error_desc}")

    if "unauthorized_client" in error_msg or 700016 in error_codes:
        print("[!] Error: Application not authorized")
        print("[!] Troubleshooting steps:")
        print("[!]   1. Go to Azure AD portal → App registrations → Your app → API permissions")
        print("[!]   2. Verify Microsoft Graph Sites.ReadWrite.All (application) is added")
        print("[!]   3. Click 'Grant admin consent' (requires admin privileges)")
        print(f"[!] Technical details: {error_desc}")
        raise AuthError(f"Authentication failed: Application not authorized - {error_desc}")

    if "invalid_scope" in error_msg or "AADSTS70011" in error_desc:
        print("[!] Error: Invalid scope requested")
        print(f"[!]   Verify GRAPH_ENDPOINT is correct: {graph_endpoint}")
        print("[!]   Commercial cloud: graph.microsoft.com, GovCloud: graph.microsoft.us")
        print(f"[!] Technical details: {error_desc}")
        raise AuthError(f"Authentication failed: Invalid scope - {error_desc}")

    if "invalid_request" in error_msg:
        print("[!] Error: Invalid authentication request")
        print("[!]   Verify the Azure tenant_id is a GUID like xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx")
        print(f"[!]   Verify LOGIN_ENDPOINT is correct: {login_endpoint}")
        print(f"[!] Technical details: {error_desc}")
        raise AuthError(f"Authentication failed: Invalid request - {error_desc}")

    print(f"[!] Error: {error_msg}")
    print("[!] Common issues:")
    print("[!]   - Network connectivity problems")
    print("[!]   - Incorrect tenant ID or endpoint configuration")
    print(f"[!]   Description: {error_desc}")
    if error_codes:
        print(f"[!]   Error codes: {error_codes}")
    raise AuthError(f"Authentication failed: {error_msg} - {error_desc}")


class CachedToken:
    """A bearer token and the epoch second it expires at."""

    def __init__(self, access_token, expires_at):
        self.access_token = access_token
        self.expires_at = expires_at

    def is_valid(self, now, margin_seconds):
        return now < self.expires_at - margin_seconds


class TokenCache:
    """
    Thread-safe per-tenant token store.

    lock_for() hands out one lock per tenant so that concurrent refreshes for
    the same tenant result in a single token request.
    """

    def __init__(self):
        self._tokens = {}
        self._locks = {}
        self._guard = threading.Lock()

    def lock_for(self, tenant_id):
        with self._guard:
            if tenant_id not in self._locks:
                self._locks[tenant_id] = threading.Lock()
            return self._locks[tenant_id]

    def get(self, tenant_id):
        with self._guard:
            return self._tokens.get(tenant_id)

    def set(self, tenant_id, token):
        with self._guard:
            self._tokens[tenant_id] = token

    def clear(self, tenant_id=None):
        with self._guard:
            if tenant_id is None:
                self._tokens.clear()
            else:
                self._tokens.pop(tenant_id, None)


class Authenticator:
    """Supplies Graph bearer tokens for configured tenants."""

    def __init__(self, login_endpoint='login.microsoftonline.com', graph_endpoint='graph.microsoft.com',
                 token_cache=None, refresh_margin_seconds=300, clock=time.time):
        """
        Args:
            login_endpoint (str): Azure AD authentication endpoint
            graph_endpoint (str): Microsoft Graph endpoint the tokens are scoped to
            token_cache (TokenCache, optional): Shared cache, a new one by default
            refresh_margin_seconds (int): Refresh tokens this long before expiry
            clock (callable): Time source returning epoch seconds
        """
        self.login_endpoint = login_endpoint
        self.graph_endpoint = graph_endpoint
        self.token_cache = token_cache or TokenCache()
        self.refresh_margin_seconds = refresh_margin_seconds
        self._clock = clock
        self._apps = {}
        self._apps_lock = threading.Lock()

    def _get_app(self, azure):
        key = f"{azure.tenant_id}:{azure.client_id}"
        with self._apps_lock:
            if key not in self._apps:
                self._apps[key] = build_client_app(
                    azure.tenant_id, azure.client_id, azure.client_secret, self.login_endpoint
                )
            return self._apps[key]

    def get_token(self, tenant_id, azure):
        """
        Return a valid bearer token for a tenant, acquiring one when needed.

        Args:
            tenant_id (str): Configured tenant id (cache key)
            azure (AzureConfig): App registration credentials

        Returns:
            str: Access token

        Raises:
            AuthError: If a token cannot be acquired
        """
        cached = self.token_cache.get(tenant_id)
        if cached and cached.is_valid(self._clock(), self.refresh_margin_seconds):
            return cached.access_token

        with self.token_cache.lock_for(tenant_id):
            # Another thread may have refreshed while we waited
            cached = self.token_cache.get(tenant_id)
            if cached and cached.is_valid(self._clock(), self.refresh_margin_seconds):
                return cached.access_token

            if is_debug_enabled():
                print(f"[DEBUG] Acquiring access token for tenant {tenant_id}")

            token = acquire_token(
                azure.tenant_id, azure.client_id, azure.client_secret,
                self.login_endpoint, self.graph_endpoint, app=self._get_app(azure),
            )
            expires_at = self._clock() + int(token.get('expires_in', 3600))
            self.token_cache.set(tenant_id, CachedToken(token['access_token'], expires_at))
            return token['access_token']

    def test_auth(self, tenant_id, azure):
        """
        Check that a tenant's credentials can obtain a token.

        Returns:
            bool: True if a token was acquired
        """
        try:
            self.get_token(tenant_id, azure)
        except AuthError as e:
            print(f"[!] Authentication test failed for tenant {tenant_id}: {e}")
            return False
        print(f"[✓] Authentication successful for tenant {tenant_id}")
        return True

    def clear_cache(self, tenant_id=None):
        """Forget cached tokens for one tenant, or for all tenants."""
        self.token_cache.clear(tenant_id)
