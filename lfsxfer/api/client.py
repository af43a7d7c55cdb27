"""
LFS API Client

Only the piece the transfer layer needs: confirming an upload with the
server once an agent reports success. Batch negotiation, locks and
the rest of the API live elsewhere.

Verify call (per object, only when the server asked for it):
```
POST <actions.verify.href>
Accept: application/vnd.git-lfs+json
Content-Type: application/vnd.git-lfs+json
<actions.verify.header...>

{"oid": "...", "size": 123}
```
"""

import logging
from typing import Dict, Optional

import httpx

from ..transfer.adapter import TransferObject
from ..transfer.errors import VerificationError

logger = logging.getLogger(__name__)

LFS_MEDIA_TYPE = 'application/vnd.git-lfs+json'


class LfsApiClient:
    """
    Thin async HTTP client for the LFS server.

    Usable as an async context manager; pass a preconfigured
    httpx.AsyncClient to share connections (or to test).
    """

    def __init__(self, timeout: float = 30.0,
                 headers: Optional[Dict[str, str]] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> 'LfsApiClient':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def verify_upload(self, obj: TransferObject) -> None:
        """
        Ask the server to confirm an uploaded object.

        Does nothing if the server did not request verification.

        Raises:
            VerificationError: request failed or server rejected the object
        """
        action = obj.rel('verify')
        if action is None:
            return

        headers = {'Accept': LFS_MEDIA_TYPE, 'Content-Type': LFS_MEDIA_TYPE}
        headers.update(action.header)

        try:
            response = await self._client.post(
                action.href,
                json={'oid': obj.oid, 'size': obj.size},
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise VerificationError(f"Failed to verify {obj.oid!r}: {e}") from e

        if response.status_code >= 300:
            message = _error_message(response)
            raise VerificationError(
                f"Server rejected {obj.oid!r} on verify (HTTP {response.status_code}): {message}"
            )

        logger.debug(f"Verified upload of {obj.oid[:16]}...")


def _error_message(response: httpx.Response) -> str:
    """Pull the LFS error message out of a response body, if any."""
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(body, dict) and body.get('message'):
        return str(body['message'])
    return response.reason_phrase
