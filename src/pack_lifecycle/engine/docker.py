"""Docker Engine API adapter over aiohttp."""

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Sequence
from urllib.parse import quote

import aiohttp

from ..core.types import EngineConfig
from ..exceptions import EngineError, ImageNotFound
from ..image.reference import local_tag
from .base import LogStream
from .logs import STREAM_STDERR, STREAM_STDOUT, iter_frames

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class DockerEngine:
    """Async client for the subset of the Docker Engine API the lifecycle needs."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        connector: Optional[aiohttp.BaseConnector] = None,
    ) -> None:
        """Initialize the engine client.

        Args:
            config: Engine connection settings (default: from environment)
            connector: aiohttp connector override (default: derived from host)
        """
        self.config = config or EngineConfig.from_env()
        self.connector = connector
        self.session: Optional[aiohttp.ClientSession] = None

        host = self.config.host
        if host.startswith("unix://"):
            self._socket_path: Optional[str] = host[len("unix://") :]
            self.base_url = "http://docker"
        elif host.startswith(("tcp://", "http://")):
            self._socket_path = None
            self.base_url = "http://" + host.split("://", 1)[1].rstrip("/")
        else:
            raise ValueError(f"Unsupported DOCKER_HOST: {host}")

        if self.config.api_version:
            self.base_url += f"/v{self.config.api_version.lstrip('v')}"

    async def __aenter__(self) -> "DockerEngine":
        """Enter async context manager."""
        if not self.session:
            connector = self.connector
            if connector is None and self._socket_path:
                connector = aiohttp.UnixConnector(path=self._socket_path)
            self.session = aiohttp.ClientSession(
                connector=connector,
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

    def _session(self) -> aiohttp.ClientSession:
        if self.session is None:
            raise EngineError("DockerEngine used outside of its async context")
        return self.session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        expect_json: bool = True,
    ) -> Any:
        """Issue a request and decode the response.

        Raises:
            EngineError: On transport failure or an error status
        """
        try:
            async with self._session().request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=json_body,
                data=data,
                headers=headers,
            ) as resp:
                await self._raise_for_status(resp, f"{method} {path}")
                if expect_json:
                    body = await resp.read()
                    return json.loads(body) if body else None
                return await resp.read()
        except aiohttp.ClientError as e:
            raise EngineError(f"{method} {path} failed: {e}") from e

    @staticmethod
    async def _raise_for_status(resp: aiohttp.ClientResponse, what: str) -> None:
        if resp.status < 400:
            return
        text = await resp.text()
        try:
            message = json.loads(text).get("message", text)
        except (json.JSONDecodeError, AttributeError):
            message = text
        raise EngineError(f"{what}: {resp.status}: {message.strip()}", status=resp.status)

    async def pull_image(self, name: str) -> None:
        """Pull an image and wait for the pull to finish.

        Raises:
            EngineError: If the pull fails
        """
        # An explicit tag keeps the daemon from pulling every tag of the repo
        params = {"fromImage": local_tag(name)}
        logger.info("Pulling image '%s'", name)
        try:
            async with self._session().post(
                f"{self.base_url}/images/create", params=params
            ) as resp:
                await self._raise_for_status(resp, f"pull {name}")
                # Progress is streamed as JSON lines; errors arrive in-band
                async for line in resp.content:
                    if not line.strip():
                        continue
                    try:
                        event = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if event.get("error"):
                        raise EngineError(f"pull {name}: {event['error']}")
        except aiohttp.ClientError as e:
            raise EngineError(f"pull {name} failed: {e}") from e

    async def create_container(
        self,
        image: str,
        binds: Sequence[str] = (),
        cmd: Sequence[str] = (),
        env: Sequence[str] = (),
        *,
        entrypoint: Sequence[str] | None = None,
        user: str | None = None,
        name: str | None = None,
    ) -> str:
        """Create a container without starting it.

        Returns:
            Container ID
        """
        body: Dict[str, Any] = {
            "Image": image,
            "Cmd": list(cmd),
            "Env": list(env),
            "HostConfig": {"Binds": list(binds)},
        }
        if entrypoint is not None:
            body["Entrypoint"] = list(entrypoint)
        if user is not None:
            body["User"] = user
        params = {"name": name} if name else None
        result = await self._request(
            "POST", "/containers/create", params=params, json_body=body
        )
        return result["Id"]

    async def upload_tar(self, container_id: str, data: bytes, dest_path: str) -> None:
        """Extract a tar archive into a container path."""
        await self._request(
            "PUT",
            f"/containers/{container_id}/archive",
            params={"path": dest_path},
            data=data,
            headers={"Content-Type": "application/x-tar"},
            expect_json=False,
        )

    async def download_tar(self, container_id: str, src_path: str) -> bytes:
        """Download a container path as a tar archive.

        Raises:
            EngineError: If the path does not exist (status 404) or the
                request fails
        """
        return await self._request(
            "GET",
            f"/containers/{container_id}/archive",
            params={"path": src_path},
            expect_json=False,
        )

    async def start(self, container_id: str) -> None:
        await self._request(
            "POST", f"/containers/{container_id}/start", expect_json=False
        )

    async def wait(self, container_id: str) -> int:
        """Block until the container exits.

        Returns:
            Exit code
        """
        result = await self._request("POST", f"/containers/{container_id}/wait")
        error = (result.get("Error") or {}).get("Message")
        if error:
            raise EngineError(f"wait {container_id}: {error}")
        return int(result["StatusCode"])

    async def stream_logs(self, container_id: str, stream: LogStream) -> AsyncIterator[bytes]:
        """Follow one output stream of a container until it closes."""
        wanted = STREAM_STDOUT if stream == "stdout" else STREAM_STDERR
        params = {
            "follow": "1",
            "stdout": "1" if stream == "stdout" else "0",
            "stderr": "1" if stream == "stderr" else "0",
        }
        try:
            async with self._session().get(
                f"{self.base_url}/containers/{container_id}/logs", params=params
            ) as resp:
                await self._raise_for_status(resp, f"logs {container_id}")
                async for stream_type, payload in iter_frames(resp.content):
                    if stream_type == wanted:
                        yield payload
        except aiohttp.ClientError as e:
            raise EngineError(f"logs {container_id} failed: {e}") from e

    async def remove(self, container_id: str) -> None:
        await self._request(
            "DELETE",
            f"/containers/{container_id}",
            params={"force": "1"},
            expect_json=False,
        )

    async def create_volume(self, name: str) -> None:
        """Create a named volume; creating an existing volume is a no-op."""
        await self._request("POST", "/volumes/create", json_body={"Name": name})

    async def remove_volume(self, name: str) -> None:
        await self._request(
            "DELETE",
            f"/volumes/{quote(name, safe='')}",
            params={"force": "1"},
            expect_json=False,
        )

    async def inspect_image(self, name: str) -> Dict[str, Any]:
        """Inspect an image in the daemon's store.

        Raises:
            ImageNotFound: If the daemon does not have the image
            EngineError: On any other failure
        """
        try:
            return await self._request("GET", f"/images/{quote(name, safe='')}/json")
        except EngineError as e:
            if e.status == 404:
                raise ImageNotFound(f"image '{name}' not found in daemon") from e
            raise

    async def save_image(self, name: str) -> AsyncIterator[bytes]:
        """Stream a `docker save` archive of an image."""
        try:
            async with self._session().get(
                f"{self.base_url}/images/get", params={"names": name}
            ) as resp:
                await self._raise_for_status(resp, f"save {name}")
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    yield chunk
        except aiohttp.ClientError as e:
            raise EngineError(f"save {name} failed: {e}") from e

    async def load_image(self, data: bytes) -> None:
        """Load a `docker save` formatted archive into the daemon."""
        body = await self._request(
            "POST",
            "/images/load",
            params={"quiet": "1"},
            data=data,
            headers={"Content-Type": "application/x-tar"},
            expect_json=False,
        )
        for line in body.splitlines():
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(event, dict) and event.get("error"):
                raise EngineError(f"load image: {event['error']}")
