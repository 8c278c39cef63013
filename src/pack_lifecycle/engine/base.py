"""The narrow container engine interface the lifecycle depends on."""

from typing import Any, AsyncIterator, Literal, Protocol, Sequence

LogStream = Literal["stdout", "stderr"]


class Engine(Protocol):
    """Container, volume and image operations used by the lifecycle.

    Every method is a coroutine (or async iterator), so cancelling the
    awaiting task aborts the underlying engine call.
    """

    async def pull_image(self, name: str) -> None: ...

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
    ) -> str: ...

    async def upload_tar(self, container_id: str, data: bytes, dest_path: str) -> None: ...

    async def download_tar(self, container_id: str, src_path: str) -> bytes: ...

    async def start(self, container_id: str) -> None: ...

    async def wait(self, container_id: str) -> int: ...

    def stream_logs(self, container_id: str, stream: LogStream) -> AsyncIterator[bytes]: ...

    async def remove(self, container_id: str) -> None: ...

    async def create_volume(self, name: str) -> None: ...

    async def remove_volume(self, name: str) -> None: ...

    async def inspect_image(self, name: str) -> dict[str, Any]: ...

    def save_image(self, name: str) -> AsyncIterator[bytes]: ...

    async def load_image(self, data: bytes) -> None: ...
