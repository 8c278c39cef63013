"""Docker Registry API v2 async client implementation."""

import json
import logging
import re
from typing import Any, AsyncIterator, Dict, Optional, Union
from urllib.parse import urljoin

import aiohttp

from ..exceptions import (
    BlobUploadError,
    ImageAccessError,
    ImageNotFound,
    ManifestError,
    RegistryConnectionError,
)
from ..utils.digest import calculate_digest, validate_digest
from .types import RegistryConfig

logger = logging.getLogger(__name__)

MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
MANIFEST_LIST_V2 = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
CONFIG_V1 = "application/vnd.docker.container.image.v1+json"

MANIFEST_ACCEPT = ", ".join([MANIFEST_V2, OCI_MANIFEST, MANIFEST_LIST_V2, OCI_INDEX])

NOT_FOUND_CODES = {"MANIFEST_UNKNOWN", "NAME_UNKNOWN", "BLOB_UNKNOWN"}

CHUNK_SIZE = 5 * 1024 * 1024  # 5MB

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class RegistryClient:
    """Docker Registry API v2 async client.

    Requests go out anonymously first; a ``Bearer`` challenge is answered
    with a token (using basic credentials when configured) and the request
    is retried once.
    """

    def __init__(
        self,
        config: RegistryConfig,
        connector: Optional[aiohttp.TCPConnector] = None,
    ) -> None:
        """Initialize the registry client.

        Args:
            config: Registry connection settings
            connector: aiohttp connector for connection pooling
        """
        self.config = config
        self.registry_url = config.url.rstrip("/")
        self.connector = connector
        self.session: Optional[aiohttp.ClientSession] = None
        self._tokens: Dict[str, str] = {}

    async def __aenter__(self) -> "RegistryClient":
        """Enter async context manager."""
        if not self.session:
            self.session = aiohttp.ClientSession(
                connector=self.connector,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        await self.close()

    async def close(self) -> None:
        """Close the client session."""
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    def _basic_auth(self) -> Optional[aiohttp.BasicAuth]:
        if self.config.username and self.config.password is not None:
            return aiohttp.BasicAuth(self.config.username, self.config.password)
        return None

    def _headers(self, scope: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = dict(extra or {})
        token = self._tokens.get(scope)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _authenticate(self, challenge: str, scope: str) -> bool:
        """Answer a WWW-Authenticate challenge.

        Returns:
            True if a retry makes sense
        """
        if not challenge.lower().startswith("bearer "):
            # Basic challenge: credentials are attached to every request already
            return False
        params = dict(_CHALLENGE_PARAM.findall(challenge))
        realm = params.pop("realm", None)
        if not realm:
            return False
        params.setdefault("scope", scope)
        try:
            async with self.session.get(
                realm, params=params, auth=self._basic_auth()
            ) as resp:
                if resp.status != 200:
                    return False
                data = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise RegistryConnectionError(f"Token request to {realm} failed: {e}") from e
        token = data.get("token") or data.get("access_token")
        if not token:
            return False
        self._tokens[scope] = token
        return True

    async def _send(
        self,
        method: str,
        url: str,
        scope: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        data: Any = None,
        allow_redirects: bool = True,
    ) -> aiohttp.ClientResponse:
        """Send a request, answering one auth challenge.

        The caller owns the returned response and must release it.
        """
        if not self.session:
            raise ImageAccessError("RegistryClient used outside of its async context")
        auth = None if scope in self._tokens else self._basic_auth()
        resp = await self.session.request(
            method,
            url,
            headers=self._headers(scope, headers),
            data=data,
            auth=auth,
            allow_redirects=allow_redirects,
        )
        if resp.status == 401:
            challenge = resp.headers.get("WWW-Authenticate", "")
            if await self._authenticate(challenge, scope):
                resp.release()
                resp = await self.session.request(
                    method,
                    url,
                    headers=self._headers(scope, headers),
                    data=data,
                    allow_redirects=allow_redirects,
                )
        return resp

    @staticmethod
    async def _error_codes(resp: aiohttp.ClientResponse) -> set[str]:
        try:
            body = await resp.json(content_type=None)
        except (json.JSONDecodeError, aiohttp.ContentTypeError, ValueError):
            return set()
        if not isinstance(body, dict):
            return set()
        return {error.get("code", "") for error in body.get("errors") or []}

    def _resolve(self, location: str) -> str:
        if location.startswith("http"):
            return location
        return urljoin(self.registry_url, location)

    async def get_manifest(self, repository: str, reference: str) -> tuple[Dict, str]:
        """Retrieve a manifest from the registry.

        Args:
            repository: Repository name
            reference: Tag or digest reference

        Returns:
            Tuple of (manifest dictionary, manifest digest)

        Raises:
            ImageNotFound: If the repository or reference does not exist
            ManifestError: If retrieval fails for any other reason
        """
        scope = f"repository:{repository}:pull"
        url = f"{self.registry_url}/v2/{repository}/manifests/{reference}"
        try:
            resp = await self._send("GET", url, scope, headers={"Accept": MANIFEST_ACCEPT})
            async with resp:
                if resp.status == 404:
                    raise ImageNotFound(f"{repository}:{reference} not found")
                if resp.status >= 400:
                    codes = await self._error_codes(resp)
                    if codes & NOT_FOUND_CODES:
                        raise ImageNotFound(f"{repository}:{reference} not found")
                    raise ManifestError(
                        f"Failed to get manifest {repository}:{reference}: {resp.status}"
                    )
                raw = await resp.read()
                digest = resp.headers.get("Docker-Content-Digest") or calculate_digest(raw)
                return json.loads(raw), digest
        except aiohttp.ClientError as e:
            raise RegistryConnectionError(f"Failed to get manifest: {e}") from e

    async def get_blob(self, repository: str, digest: str) -> bytes:
        """Download a whole blob.

        Raises:
            ImageAccessError: If the blob cannot be read
        """
        chunks = [chunk async for chunk in self.stream_blob(repository, digest)]
        return b"".join(chunks)

    async def stream_blob(self, repository: str, digest: str) -> AsyncIterator[bytes]:
        """Stream a blob in chunks."""
        scope = f"repository:{repository}:pull"
        url = f"{self.registry_url}/v2/{repository}/blobs/{digest}"
        try:
            resp = await self._send("GET", url, scope)
            async with resp:
                if resp.status >= 400:
                    raise ImageAccessError(
                        f"Failed to get blob {digest} from {repository}: {resp.status}"
                    )
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    yield chunk
        except aiohttp.ClientError as e:
            raise RegistryConnectionError(f"Failed to get blob: {e}") from e

    async def check_blob_exists(self, repository: str, digest: str) -> bool:
        """Check if a blob exists in the registry.

        Args:
            repository: Repository name
            digest: Blob digest

        Returns:
            True if blob exists
        """
        scope = f"repository:{repository}:pull,push"
        url = f"{self.registry_url}/v2/{repository}/blobs/{digest}"
        try:
            resp = await self._send("HEAD", url, scope)
        except aiohttp.ClientError as e:
            raise RegistryConnectionError(f"Failed to check blob: {e}") from e
        async with resp:
            return resp.status == 200

    async def mount_blob(self, repository: str, digest: str, from_repository: str) -> bool:
        """Mount a blob from another repository of the same registry.

        Returns:
            True if the registry mounted the blob, False if it opened a
            regular upload instead (the caller then uploads the content)
        """
        scope = f"repository:{repository}:pull,push"
        url = (
            f"{self.registry_url}/v2/{repository}/blobs/uploads/"
            f"?mount={digest}&from={from_repository}"
        )
        try:
            resp = await self._send("POST", url, scope)
        except aiohttp.ClientError as e:
            raise BlobUploadError(f"Failed to mount blob: {e}") from e
        async with resp:
            if resp.status == 201:
                return True
            if resp.status == 202:
                # Abandon the upload session the registry opened instead
                return False
            raise BlobUploadError(f"Failed to mount blob {digest}: {resp.status}")

    async def upload_blob(
        self,
        repository: str,
        data: Union[bytes, AsyncIterator[bytes]],
        digest: str,
    ) -> str:
        """Upload a blob to the registry.

        Args:
            repository: Repository name
            data: Blob data (bytes or async iterator)
            digest: Expected blob digest

        Returns:
            Blob digest

        Raises:
            BlobUploadError: If upload fails
        """
        if not validate_digest(digest):
            raise ValueError(f"Invalid digest format: {digest}")

        scope = f"repository:{repository}:pull,push"
        try:
            # Start upload session
            url = f"{self.registry_url}/v2/{repository}/blobs/uploads/"
            resp = await self._send("POST", url, scope)
            async with resp:
                if resp.status >= 400:
                    raise BlobUploadError(
                        f"Failed to start upload for {digest}: {resp.status}"
                    )
                upload_url = self._resolve(resp.headers.get("Location", ""))

            if isinstance(data, (bytes, bytearray)):
                chunks = [data[i : i + CHUNK_SIZE] for i in range(0, len(data), CHUNK_SIZE)]
                source: Any = _iterate(chunks)
            else:
                source = data

            async for chunk in source:
                resp = await self._send(
                    "PATCH",
                    upload_url,
                    scope,
                    data=chunk,
                    headers={
                        "Content-Type": "application/octet-stream",
                        "Content-Length": str(len(chunk)),
                    },
                )
                async with resp:
                    if resp.status >= 400:
                        raise BlobUploadError(
                            f"Failed to upload chunk of {digest}: {resp.status}"
                        )
                    upload_url = self._resolve(resp.headers.get("Location", upload_url))

            # Finalize upload
            final_url = (
                f"{upload_url}&digest={digest}"
                if "?" in upload_url
                else f"{upload_url}?digest={digest}"
            )
            resp = await self._send(
                "PUT", final_url, scope, headers={"Content-Length": "0"}
            )
            async with resp:
                if resp.status >= 400:
                    raise BlobUploadError(f"Failed to finalize {digest}: {resp.status}")

            return digest

        except aiohttp.ClientError as e:
            raise BlobUploadError(f"Failed to upload blob: {e}") from e

    async def upload_manifest(
        self,
        repository: str,
        reference: str,
        manifest: Dict,
        media_type: str = MANIFEST_V2,
    ) -> str:
        """Upload a manifest to the registry.

        Args:
            repository: Repository name
            reference: Tag or digest reference
            manifest: Manifest dictionary
            media_type: Manifest media type

        Returns:
            Manifest digest

        Raises:
            ManifestError: If upload fails
        """
        scope = f"repository:{repository}:pull,push"
        manifest_data = json.dumps(manifest).encode("utf-8")
        try:
            url = f"{self.registry_url}/v2/{repository}/manifests/{reference}"
            resp = await self._send(
                "PUT",
                url,
                scope,
                data=manifest_data,
                headers={
                    "Content-Type": media_type,
                    "Content-Length": str(len(manifest_data)),
                },
            )
            async with resp:
                if resp.status >= 400:
                    raise ManifestError(
                        f"Failed to upload manifest {repository}:{reference}: {resp.status}"
                    )
                return resp.headers.get("Docker-Content-Digest") or calculate_digest(
                    manifest_data
                )

        except aiohttp.ClientError as e:
            raise ManifestError(f"Failed to upload manifest: {e}") from e


async def _iterate(chunks: list) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk
