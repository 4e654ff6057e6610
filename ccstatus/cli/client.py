"""HTTP client for the CC Status API."""

import json
import os
import urllib.error
import urllib.parse
import urllib.request
from typing import Optional

# Default API endpoint
DEFAULT_API_URL = "http://127.0.0.1:8420"
API_TIMEOUT = 2  # seconds
# Listing and focus drive AppleScript
AUTOMATION_TIMEOUT = 15


class CCStatusClient:
    """Client for the CC Status API."""

    def __init__(self, api_url: Optional[str] = None):
        """
        Initialize client.

        Args:
            api_url: Base URL for API (default: http://127.0.0.1:8420)
        """
        self.api_url = api_url or os.environ.get("CCSTATUS_API_URL", DEFAULT_API_URL)

    def _request(self, method: str, path: str, data: Optional[dict] = None, timeout: Optional[int] = None) -> tuple[Optional[dict], bool, bool]:
        """
        Make an HTTP request.

        Args:
            method: HTTP method (GET, POST)
            path: API path
            data: Optional JSON data
            timeout: Optional timeout in seconds (default: API_TIMEOUT)

        Returns:
            Tuple of (response_data, success, unavailable)
            - success=True, unavailable=False: Request succeeded
            - success=False, unavailable=True: Connection error (server unavailable)
            - success=False, unavailable=False: API error; response_data holds the error body if any
        """
        url = f"{self.api_url}{path}"
        request_timeout = timeout if timeout is not None else API_TIMEOUT

        try:
            headers = {"Content-Type": "application/json"}
            body = json.dumps(data).encode() if data is not None else None

            req = urllib.request.Request(url, data=body, headers=headers, method=method)
            with urllib.request.urlopen(req, timeout=request_timeout) as response:
                return json.loads(response.read().decode()), True, False

        except urllib.error.HTTPError as e:
            # API responded with an error status
            try:
                error_body = json.loads(e.read().decode())
            except ValueError:
                error_body = None
            return error_body, False, False
        except (urllib.error.URLError, OSError, ValueError):
            # Connection refused, timeout, garbled response - server unavailable
            return None, False, True

    def post_hook(self, payload: dict) -> tuple[Optional[dict], bool, bool]:
        return self._request("POST", "/hooks/claude", payload)

    def post_event(self, payload: dict) -> tuple[Optional[dict], bool, bool]:
        return self._request("POST", "/events", payload)

    def post_codex_notify(self, payload: dict) -> tuple[Optional[dict], bool, bool]:
        return self._request("POST", "/hooks/codex", payload)

    def list_sessions(self, offset: int = 0, limit: Optional[int] = None, with_tmux: bool = False) -> Optional[dict]:
        """Listing payload `{sessions, offset, total}`, or None if unavailable."""
        params = {"offset": offset}
        if limit is not None:
            params["limit"] = limit
        if with_tmux:
            params["with_tmux"] = "true"
        data, success, _ = self._request("GET", f"/sessions?{urllib.parse.urlencode(params)}", timeout=AUTOMATION_TIMEOUT)
        return data if success else None

    def focus(self, index: Optional[int] = None, session_id: Optional[str] = None,
              waiting: bool = False) -> tuple[Optional[dict], bool, bool]:
        payload = {"index": index, "id": session_id, "waiting": waiting}
        return self._request("POST", "/focus", payload, timeout=AUTOMATION_TIMEOUT)

    def acknowledge(self, session_id: str) -> tuple[Optional[dict], bool, bool]:
        path = f"/sessions/{urllib.parse.quote(session_id, safe='/:')}/acknowledge"
        return self._request("POST", path, {})
