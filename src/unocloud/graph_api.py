# -*- coding: utf-8 -*-
"""
Microsoft Graph API operations for UnoCloud sync.

This module provides the request retry logic and the raw Graph endpoints used
for SharePoint document libraries: site and drive resolution, item lookup,
folder creation, direct and session-based uploads.
"""

import time
import urllib.parse

import requests

from .exceptions import AuthError, GraphAPIError, NotFoundError, UploadError
from .monitoring import RateLimitMonitor
from .utils import is_debug_enabled, is_debug_metadata_enabled, to_posix_path


def _print_banner(title):
    print("[!] ========================================")
    print(f"[!] {title}")
    print("[!] ========================================")


def make_graph_request_with_retry(session, url, headers, method='GET', json_data=None, data=None,
                                  params=None, max_retries=3, timeout=300, rate_monitor=None):
    """
    Make a Graph API request with proper retry handling for transient errors.
    Includes rate limiting monitoring via response header analysis.

    Retry Logic:
        - 429 (Rate Limit): Waits for Retry-After header duration
        - 5xx (Server Error): Exponential backoff (2s, 3s, 5s, ...)
        - Timeouts and connection errors: Exponential backoff
        - 4xx (Client Error, including 409 conflicts): No retry
        - SSL, proxy and redirect errors: No retry (configuration problems)

    Args:
        session (requests.Session): Session used to send the request
        url (str): The Graph API endpoint URL
        headers (dict): Request headers including Authorization
        method (str): HTTP method ('GET', 'POST', 'PATCH', 'PUT', 'DELETE')
        json_data (dict): JSON body (mutually exclusive with data)
        data (bytes): Binary body (mutually exclusive with json_data)
        params (dict): URL query parameters
        max_retries (int): Maximum number of retry attempts (default: 3)
        timeout (int): Seconds before a single attempt times out
        rate_monitor (RateLimitMonitor, optional): Receives every response

    Returns:
        requests.Response: The HTTP response object (possibly a 4xx response)

    Raises:
        GraphAPIError: If all retries are exhausted, or on a non-retryable
            transport failure
    """
    debug_metadata = is_debug_metadata_enabled()
    method = method.upper()
    if method not in ('GET', 'POST', 'PATCH', 'PUT', 'DELETE'):
        raise ValueError(f"Unsupported HTTP method: {method}")

    for attempt in range(max_retries + 1):
        try:
            # Add proactive delay if approaching rate limits
            if rate_monitor is not None and attempt > 0 and rate_monitor.should_slow_down():
                delay = 2 ** attempt
                if is_debug_enabled():
                    print(f"[⚠] Proactive rate limiting delay: {delay}s")
                time.sleep(delay)

            if data is not None:
                response = session.request(method, url, headers=headers, data=data,
                                           params=params, timeout=timeout)
            else:
                response = session.request(method, url, headers=headers, json=json_data,
                                           params=params, timeout=timeout)

            if rate_monitor is not None:
                rate_monitor.analyze_response_headers(response, method=method, url=url)

            if response.status_code == 429:
                retry_after = response.headers.get('Retry-After', '60')
                try:
                    wait_seconds = int(retry_after)
                except ValueError:
                    wait_seconds = 60  # Malformed header

                if attempt < max_retries:
                    if is_debug_enabled():
                        print(f"[!] Rate limited (429). Waiting {wait_seconds} seconds before retry {attempt + 1}/{max_retries}...")
                    if debug_metadata:
                        print(f"[DEBUG] Rate limit response: {response.text[:300]}")
                    time.sleep(wait_seconds)
                    continue

                print(f"[!] Rate limiting exhausted all retries")
                raise GraphAPIError(
                    f"Graph API rate limiting: {response.status_code} after {max_retries} retries",
                    status_code=response.status_code,
                    response_text=response.text[:500],
                )

            if 500 <= response.status_code < 600:
                if attempt < max_retries:
                    wait_seconds = (2 ** attempt) + 1
                    if is_debug_enabled():
                        print(f"[!] Server error ({response.status_code}). Retrying in {wait_seconds} seconds... ({attempt + 1}/{max_retries})")
                    if debug_metadata:
                        print(f"[DEBUG] Server error response: {response.text[:300]}")
                    time.sleep(wait_seconds)
                    continue

                print(f"[!] Server errors exhausted all retries ({response.status_code})")
                raise GraphAPIError(
                    f"Graph API server error: {response.status_code} after {max_retries} retries",
                    status_code=response.status_code,
                    response_text=response.text[:500],
                )

            # Success or client error (client errors are never retried)
            return response

        except requests.exceptions.Timeout as e:
            if attempt < max_retries:
                wait_seconds = (2 ** attempt) + 1
                print(f"[!] Request timeout ({str(e)[:100] or 'timeout'}). Retrying in {wait_seconds} seconds... ({attempt + 1}/{max_retries})")
                time.sleep(wait_seconds)
                continue
            _print_banner("REQUEST TIMEOUT - All retries exhausted")
            print(f"[!] The request to Graph API timed out after {max_retries} retry attempts.")
            print("[!]   - Check your connection speed and connectivity to Microsoft Graph")
            print("[!]   - For large file uploads, consider raising REQUEST_TIMEOUT")
            print(f"[!] URL: {url[:100]}")
            raise GraphAPIError(f"Graph API request timed out after {max_retries} retries") from e

        except requests.exceptions.SSLError as e:
            _print_banner("SSL/TLS CERTIFICATE ERROR")
            print("[!]   - Verify the system certificate store is up to date")
            print("[!]   - Check if a corporate proxy is intercepting TLS connections")
            print("[!]   - Ensure the system clock is accurate")
            print(f"[!] Technical details: {str(e)[:300]}")
            raise GraphAPIError(f"SSL certificate verification failed: {str(e)[:200]}") from e

        except requests.exceptions.ProxyError as e:
            _print_banner("PROXY CONNECTION ERROR")
            print("[!]   - Verify HTTP_PROXY and HTTPS_PROXY are set correctly")
            print("[!]   - Check the proxy allows connections to *.microsoft.com")
            print(f"[!] Technical details: {str(e)[:300]}")
            raise GraphAPIError(f"Proxy connection failed: {str(e)[:200]}") from e

        except requests.exceptions.TooManyRedirects as e:
            _print_banner("TOO MANY REDIRECTS")
            print(f"[!]   - Verify GRAPH_ENDPOINT is correct: {url[:100]}")
            print(f"[!] Technical details: {str(e)[:300]}")
            raise GraphAPIError(f"Too many redirects - possible configuration issue: {str(e)[:200]}") from e

        except requests.exceptions.ConnectionError as e:
            if attempt < max_retries:
                wait_seconds = (2 ** attempt) + 1
                print(f"[!] Network connection error: {str(e)[:100]}. Retrying in {wait_seconds} seconds... ({attempt + 1}/{max_retries})")
                time.sleep(wait_seconds)
                continue
            _print_banner("NETWORK CONNECTION FAILED")
            print(f"[!] Could not establish connection after {max_retries} retry attempts.")
            print("[!]   - Verify internet connectivity and DNS resolution")
            print("[!]   - Ensure the firewall allows HTTPS (port 443) to *.microsoft.com")
            print(f"[!] Technical details: {str(e)[:300]}")
            raise GraphAPIError(f"Network connection failed after {max_retries} retries: {str(e)[:200]}") from e

        except requests.exceptions.RequestException as e:
            if attempt < max_retries:
                wait_seconds = (2 ** attempt) + 1
                print(f"[!] HTTP request error: {str(e)[:100]}. Retrying in {wait_seconds} seconds... ({attempt + 1}/{max_retries})")
                time.sleep(wait_seconds)
                continue
            print(f"[!] HTTP request errors exhausted all retries: {str(e)[:200]}")
            raise GraphAPIError(f"HTTP request failed: {str(e)[:200]}") from e

    raise GraphAPIError("Unexpected error in make_graph_request_with_retry")


def raise_for_graph_error(response, context):
    """
    Convert a non-2xx Graph response into a typed error.

    Raises:
        AuthError: On 401
        NotFoundError: On 404
        GraphAPIError: On any other failure status
    """
    if response.status_code < 400:
        return

    text = response.text[:500] if response.text else ""
    message = f"{context}: {response.status_code} - {text}"
    if is_debug_metadata_enabled():
        print(f"[DEBUG] {message}")

    if response.status_code == 401:
        raise AuthError(message)
    if response.status_code == 404:
        raise NotFoundError(message)
    raise GraphAPIError(message, status_code=response.status_code, response_text=text)


def encode_item_path(path):
    """URL-encode a drive-relative path, keeping '/' separators."""
    return urllib.parse.quote(to_posix_path(path), safe='/')


class GraphClient:
    """
    Raw Microsoft Graph operations for one tenant.

    Every request asks the token provider for a bearer token, so a cached
    token refreshes transparently during long runs.
    """

    def __init__(self, token_provider, graph_endpoint='graph.microsoft.com', timeout=300,
                 max_retries=3, session=None, rate_monitor=None):
        """
        Args:
            token_provider (callable): Returns a valid access token string
            graph_endpoint (str): Microsoft Graph API endpoint
            timeout (int): Seconds per HTTP request
            max_retries (int): Retries for throttled or failed requests
            session (requests.Session, optional): HTTP session, created if omitted
            rate_monitor (RateLimitMonitor, optional): Throttling monitor, created if omitted
        """
        self.token_provider = token_provider
        self.graph_endpoint = graph_endpoint
        self.base_url = f"https://{graph_endpoint}/v1.0"
        self.timeout = timeout
        self.max_retries = max_retries
        self.session = session or requests.Session()
        self.rate_monitor = rate_monitor or RateLimitMonitor()

    @classmethod
    def for_tenant(cls, tenant, authenticator, config=None, **kwargs):
        """
        Create a client bound to a tenant's cached token.

        Args:
            tenant (TenantConfig): Tenant whose app registration is used
            authenticator (Authenticator): Token source
            config (Config, optional): Supplies endpoint, timeout and retry settings
        """
        if config is not None:
            kwargs.setdefault('graph_endpoint', config.graph_endpoint)
            kwargs.setdefault('timeout', config.request_timeout)
            kwargs.setdefault('max_retries', config.max_retry)
        return cls(lambda: authenticator.get_token(tenant.id, tenant.azure), **kwargs)

    def _headers(self, content_type='application/json'):
        return {
            'Authorization': f"Bearer {self.token_provider()}",
            'Accept': 'application/json',
            'Content-Type': content_type,
        }

    def _request(self, method, path, context, json_data=None, data=None, params=None,
                 content_type='application/json'):
        url = path if path.startswith('https://') else f"{self.base_url}{path}"
        if is_debug_metadata_enabled():
            print(f"[DEBUG] {method} {url}")
        response = make_graph_request_with_retry(
            self.session, url, self._headers(content_type), method=method,
            json_data=json_data, data=data, params=params,
            max_retries=self.max_retries, timeout=self.timeout, rate_monitor=self.rate_monitor,
        )
        raise_for_graph_error(response, context)
        return response

    def _get_json(self, path, context, params=None):
        return self._request('GET', path, context, params=params).json()

    def _get_paged(self, path, context, params=None):
        """Collect 'value' across @odata.nextLink pages."""
        items = []
        data = self._get_json(path, context, params=params)
        items.extend(data.get('value', []))
        while data.get('@odata.nextLink'):
            data = self._get_json(data['@odata.nextLink'], context)
            items.extend(data.get('value', []))
        return items

    @staticmethod
    def _item_path(drive_id, item_path, suffix=''):
        """Drive-relative addressing: root, or root:/path: plus an action suffix."""
        encoded = encode_item_path(item_path)
        if not encoded:
            return f"/drives/{drive_id}/root{'/' + suffix if suffix else ''}"
        if suffix:
            return f"/drives/{drive_id}/root:/{encoded}:/{suffix}"
        return f"/drives/{drive_id}/root:/{encoded}"

    # ========================================================================
    # Sites and drives
    # ========================================================================

    def get_site(self, site_url):
        """
        Resolve a SharePoint site URL (https://host/sites/name).

        Returns:
            dict: Site resource including 'id'

        Raises:
            NotFoundError: If the URL cannot be resolved to a site
        """
        parsed = urllib.parse.urlparse(site_url)
        if not parsed.netloc:
            raise NotFoundError(f"Site not found: {site_url} (invalid site URL)")

        site_path = parsed.path.rstrip('/')
        endpoint = f"/sites/{parsed.netloc}:{site_path}" if site_path else f"/sites/{parsed.netloc}"

        try:
            site = self._get_json(endpoint, f"Failed to get site {site_url}")
        except NotFoundError as e:
            raise NotFoundError(f"Site not found: {site_url}") from e
        except GraphAPIError as e:
            if e.status_code == 400:
                raise NotFoundError(f"Site not found: {site_url}") from e
            raise

        if is_debug_enabled():
            print(f"[DEBUG] Found site: {site.get('displayName')} ({site.get('id')})")
        return site

    def list_drives(self, site_id):
        return self._get_paged(f"/sites/{site_id}/drives", f"Failed to list drives for site {site_id}")

    def get_drive(self, site_id, library_name):
        """
        Find a document library by name (case-insensitive).

        Raises:
            NotFoundError: If the site has no library with that name
        """
        wanted = library_name.lower()
        for drive in self.list_drives(site_id):
            if drive.get('name', '').lower() == wanted:
                if is_debug_enabled():
                    print(f"[DEBUG] Found drive: {drive.get('name')} ({drive.get('id')})")
                return drive
        raise NotFoundError(f'Document library "{library_name}" not found')

    resolve_site = get_site
    resolve_library = get_drive

    # ========================================================================
    # Items
    # ========================================================================

    def get_root(self, drive_id):
        return self._get_json(f"/drives/{drive_id}/root", f"Failed to get root of drive {drive_id}")

    def get_item_by_path(self, drive_id, item_path):
        """
        Look up an item by drive-relative path.

        Returns:
            dict: Drive item, or None if nothing exists at that path
        """
        try:
            return self._get_json(self._item_path(drive_id, item_path), f"Failed to get item {item_path}")
        except NotFoundError:
            return None

    def get_item(self, drive_id, item_id):
        """Look up an item by id; None if it does not exist."""
        try:
            return self._get_json(f"/drives/{drive_id}/items/{item_id}", f"Failed to get item {item_id}")
        except NotFoundError:
            return None

    def list_children(self, drive_id, folder_path=''):
        return self._get_paged(self._item_path(drive_id, folder_path, 'children'),
                               f"Failed to list folder {folder_path or '/'}")

    def create_folder(self, drive_id, parent_path, name, conflict_behavior='fail'):
        """
        Create a child folder.

        Raises:
            GraphAPIError: 409 if a same-named item already exists and
                conflict_behavior is 'fail'
        """
        body = {
            'name': name,
            'folder': {},
            '@microsoft.graph.conflictBehavior': conflict_behavior,
        }
        if is_debug_enabled():
            print(f"[DEBUG] Creating folder: {name} in /{to_posix_path(parent_path)}")
        response = self._request('POST', self._item_path(drive_id, parent_path, 'children'),
                                 f"Folder creation failed for {name}", json_data=body)
        return response.json()

    def delete_item(self, drive_id, item_id):
        self._request('DELETE', f"/drives/{drive_id}/items/{item_id}", f"Failed to delete item {item_id}")

    def update_file_system_info(self, drive_id, item_id, created_at, modified_at):
        """
        Set an item's created/modified timestamps (ISO-8601 strings).

        Returns:
            dict: Updated drive item
        """
        body = {'fileSystemInfo': {'createdDateTime': created_at, 'lastModifiedDateTime': modified_at}}
        response = self._request('PATCH', f"/drives/{drive_id}/items/{item_id}",
                                 f"Failed to update timestamps of item {item_id}", json_data=body)
        return response.json()

    # ========================================================================
    # Uploads
    # ========================================================================

    def upload_small_file(self, drive_id, parent_path, name, content, conflict_behavior='replace'):
        """
        Upload a file with a single PUT (up to 4 MiB).

        Args:
            drive_id (str): Target drive
            parent_path (str): Drive-relative folder path ('' for the root)
            name (str): Sanitized file name
            content (bytes): File content
            conflict_behavior (str): 'replace', 'rename' or 'fail'

        Returns:
            dict: Uploaded drive item
        """
        item_path = f"{to_posix_path(parent_path)}/{name}" if to_posix_path(parent_path) else name
        if is_debug_enabled():
            print(f"[DEBUG] Uploading {len(content)} bytes to /{item_path}")
        response = self._request(
            'PUT', self._item_path(drive_id, item_path, 'content'), f"Upload failed for {item_path}",
            data=content, params={'@microsoft.graph.conflictBehavior': conflict_behavior},
            content_type='application/octet-stream',
        )
        return response.json()

    def create_upload_session(self, drive_id, parent_path, name, conflict_behavior='replace',
                              file_system_info=None):
        """
        Create an upload session for a chunked upload.

        Returns:
            dict: Session including 'uploadUrl' and 'expirationDateTime'

        Raises:
            UploadError: If the response carries no upload URL
        """
        item_path = f"{to_posix_path(parent_path)}/{name}" if to_posix_path(parent_path) else name
        item = {'@microsoft.graph.conflictBehavior': conflict_behavior, 'name': name}
        if file_system_info:
            item['fileSystemInfo'] = file_system_info

        response = self._request('POST', self._item_path(drive_id, item_path, 'createUploadSession'),
                                 f"Upload session creation failed for {item_path}",
                                 json_data={'item': item})
        session_data = response.json()
        if not session_data.get('uploadUrl'):
            raise UploadError(f"Upload session for {item_path} returned no uploadUrl")
        if is_debug_enabled():
            print(f"[DEBUG] Upload session created: {session_data['uploadUrl'][:50]}...")
        return session_data

    def upload_chunk(self, upload_url, chunk, range_start, range_end, total_size):
        """
        Upload one byte range to an upload session.

        The session URL is pre-authenticated, so no bearer token is sent.
        Chunks are not retried here; a failed chunk fails the upload.

        Args:
            upload_url (str): uploadUrl from create_upload_session()
            chunk (bytes): Bytes range_start..range_end inclusive
            total_size (int): Total file size in bytes

        Returns:
            dict: The completed drive item after the last chunk, None while
                more chunks are expected
        """
        headers = {
            'Content-Length': str(len(chunk)),
            'Content-Range': f"bytes {range_start}-{range_end}/{total_size}",
        }
        if is_debug_enabled():
            print(f"[DEBUG] Uploading chunk: bytes {range_start}-{range_end}/{total_size}")

        try:
            response = self.session.put(upload_url, headers=headers, data=chunk, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise GraphAPIError(f"Chunk upload failed: {str(e)[:200]}") from e

        self.rate_monitor.analyze_response_headers(response, method='PUT', url=upload_url)
        raise_for_graph_error(response, f"Chunk upload failed (bytes {range_start}-{range_end})")

        if response.status_code == 202 or not response.content:
            return None

        result = response.json()
        return result if result.get('id') else None
