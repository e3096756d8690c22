"""
Client Controller - Transmission RPC pause/resume.

Every command is a two-step exchange: a handshake request that the daemon answers with
409 and a fresh session id, then the real request carrying that id.
Session ids are never kept between commands.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

SESSION_HEADER = 'X-Transmission-Session-Id'
HANDSHAKE_PAYLOAD = {'method': 'session-get', 'arguments': {'fields': ['version']}}


class RPCError(Exception):
    """Control API call failed."""


@dataclass
class RPCResponse:
    """Typed view of a Transmission RPC response body."""
    result: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    tag: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.result == 'success'

    @classmethod
    def from_json(cls, payload: Any) -> 'RPCResponse':
        if not isinstance(payload, dict) or not isinstance(payload.get('result'), str):
            raise RPCError(f"Malformed RPC response: {payload!r}")
        arguments = payload.get('arguments', {})
        if not isinstance(arguments, dict):
            raise RPCError(f"Malformed RPC arguments: {arguments!r}")
        return cls(result=payload['result'], arguments=arguments, tag=payload.get('tag'))


class TransmissionRPC:
    """
    Minimal Transmission RPC client.
    """

    def __init__(self, url: str, username: Optional[str] = None,
                 password: Optional[str] = None, timeout: float = 10):
        self.url = url
        self.auth = (username, password) if username else None
        self.timeout = timeout

    @classmethod
    def for_endpoint(cls, host: str, port: int, path: str = '/transmission/rpc',
                     username: Optional[str] = None, password: Optional[str] = None,
                     timeout: float = 10) -> 'TransmissionRPC':
        return cls(f"http://{host}:{port}{path}", username, password, timeout)

    def _post(self, payload: Dict[str, Any], token: Optional[str]) -> requests.Response:
        headers = {SESSION_HEADER: token} if token else {}
        try:
            return requests.post(self.url, json=payload, headers=headers,
                                 auth=self.auth, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise RPCError(f"Control API unreachable: {e}") from e

    def _new_session_token(self) -> Optional[str]:
        """
        Ask the daemon for a session id.

        Returns:
            The token, or None if the daemon does not ask for one
        """
        response = self._post(HANDSHAKE_PAYLOAD, token=None)
        if response.status_code == 409:
            token = response.headers.get(SESSION_HEADER)
            if not token:
                raise RPCError("409 response without a session id")
            return token
        if response.status_code == 401:
            raise RPCError("Control API rejected credentials")
        if response.status_code == 200:
            return None
        raise RPCError(f"Unexpected handshake status {response.status_code}")

    def call(self, method: str, arguments: Optional[Dict[str, Any]] = None) -> RPCResponse:
        """
        Run one RPC method with a freshly obtained session id.

        Raises:
            RPCError: on transport failure or a non-success result
        """
        token = self._new_session_token()

        payload: Dict[str, Any] = {'method': method}
        if arguments:
            payload['arguments'] = arguments

        response = self._post(payload, token)
        if response.status_code == 409:
            raise RPCError("Session id rejected")
        if response.status_code == 401:
            raise RPCError("Control API rejected credentials")
        if response.status_code != 200:
            raise RPCError(f"HTTP {response.status_code} from control API")

        try:
            body = response.json()
        except ValueError as e:
            raise RPCError(f"Response is not JSON: {e}") from e

        parsed = RPCResponse.from_json(body)
        if not parsed.ok:
            raise RPCError(f"{method} failed: {parsed.result}")
        return parsed

    def pause_all(self):
        """Stop every torrent."""
        self.call('torrent-stop')
        logger.info("Paused all torrents")

    def resume_all(self):
        """Start every torrent."""
        self.call('torrent-start')
        logger.info("Resumed all torrents")

    def session_stats(self) -> Dict[str, Any]:
        return self.call('session-stats').arguments
