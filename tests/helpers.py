"""In-process fakes of the container engine and the image store."""

import asyncio
import io
import json
import shutil
import struct
import tarfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, List, Optional
from urllib.parse import unquote

from aiohttp import web

from pack_lifecycle.exceptions import EngineError, ImageNotFound
from pack_lifecycle.image import models
from pack_lifecycle.image.models import Image, ImageConfig, Layer
from pack_lifecycle.utils.digest import calculate_digest

GROUP_TOML = """
[[buildpacks]]
id = "io.test.bp"
version = "1.0"
"""

RUN_LAYER = "sha256:" + "a" * 64


def write_tree(root: Path, files: Dict[str, str]) -> Path:
    """Write files under root with fixed permissions."""
    root.mkdir(parents=True, exist_ok=True)
    root.chmod(0o755)
    for name, content in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.parent.chmod(0o755)
        path.write_text(content)
        path.chmod(0o644)
    return root


def run_image(name: str = "run:latest", diff_ids=(RUN_LAYER,)) -> Image:
    """A run image with placeholder layers."""
    layers = tuple(
        Layer(digest=diff_id, diff_id=diff_id, size=10, source=name) for diff_id in diff_ids
    )
    return Image(
        name=name,
        layers=layers,
        config=ImageConfig(
            labels={"io.buildpacks.stack.id": "io.test.stack"},
            env=("PATH=/usr/local/bin:/usr/bin:/bin",),
            cmd=("/bin/bash",),
        ),
    )


@dataclass
class Artifact:
    """A layer the fake builder writes: a directory and/or its descriptor."""

    buildpack: str
    name: str
    files: Optional[Dict[str, str]]
    descriptor: Optional[str] = ""


@dataclass
class FakeContainer:
    id: str
    image: str
    binds: List[str]
    cmd: List[str]
    env: List[str]
    entrypoint: Optional[List[str]]
    user: Optional[str]
    name: Optional[str]
    root: Path
    mounts: Dict[str, Path] = field(default_factory=dict)
    exit_code: Optional[int] = None
    output: Dict[str, List[bytes]] = field(
        default_factory=lambda: {"stdout": [], "stderr": []}
    )

    @property
    def program(self) -> str:
        if self.entrypoint:
            return self.entrypoint[0]
        return self.cmd[0] if self.cmd else ""

    def host_path(self, path: str) -> Path:
        for mount_point, host in self.mounts.items():
            if path == mount_point or path.startswith(mount_point + "/"):
                return host / path[len(mount_point) :].lstrip("/")
        return self.root / path.lstrip("/")


class FakeEngine:
    """Runs lifecycle "binaries" as Python callables against host directories.

    Volumes are directories, containers are records with a root directory
    and bind mounts. Failures are injected per method (``errors``) or per
    program exit code (``exit_codes``); programs listed in ``hang`` never
    exit.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.volumes: Dict[str, Path] = {}
        self.containers: Dict[str, FakeContainer] = {}
        self.created_volumes: List[str] = []
        self.removed_volumes: List[str] = []
        self.removed_containers: List[str] = []
        self.started: List[str] = []
        self.pulled: List[str] = []
        self.loaded: List[bytes] = []
        self.images: Dict[str, dict] = {}
        self.saved: Dict[str, bytes] = {}
        self.errors: Dict[str, Exception] = {}
        self.exit_codes: Dict[str, int] = {}
        self.hang: set = set()
        self.waiting = asyncio.Event()
        self.group_toml: Optional[str] = GROUP_TOML
        self.artifacts: List[Artifact] = []
        self.analyzed: List[str] = []
        self.programs: Dict[str, Callable[[FakeContainer], int]] = {
            "chown": lambda container: 0,
            "true": lambda container: 0,
            "/packs/detector": self._detector,
            "/packs/analyzer": self._analyzer,
            "/packs/builder": self._builder,
        }
        self._next_id = 0

    def _check(self, operation: str) -> None:
        error = self.errors.get(operation)
        if error is not None:
            raise error

    def volume_path(self, name: str) -> Path:
        return self.volumes[name]

    async def pull_image(self, name: str) -> None:
        self._check("pull_image")
        self.pulled.append(name)

    async def create_container(
        self, image, binds=(), cmd=(), env=(), *, entrypoint=None, user=None, name=None
    ) -> str:
        self._check("create_container")
        self._next_id += 1
        container_id = f"ctr{self._next_id}"
        container = FakeContainer(
            id=container_id,
            image=image,
            binds=list(binds),
            cmd=list(cmd),
            env=list(env),
            entrypoint=list(entrypoint) if entrypoint is not None else None,
            user=user,
            name=name,
            root=self.root / "containers" / container_id,
        )
        container.root.mkdir(parents=True)
        for bind in binds:
            volume, mount_point = bind.split(":", 1)
            if volume not in self.volumes:
                raise EngineError(f"no such volume: {volume}", status=404)
            container.mounts[mount_point] = self.volumes[volume]
        self.containers[container_id] = container
        return container_id

    async def upload_tar(self, container_id: str, data: bytes, dest_path: str) -> None:
        self._check("upload_tar")
        dest = self.containers[container_id].host_path(dest_path)
        dest.mkdir(parents=True, exist_ok=True)
        with tarfile.open(fileobj=io.BytesIO(data)) as tar:
            tar.extractall(dest, filter="tar")

    async def download_tar(self, container_id: str, src_path: str) -> bytes:
        self._check("download_tar")
        src = self.containers[container_id].host_path(src_path)
        if not src.exists():
            raise EngineError(f"Could not find the file {src_path}", status=404)
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            tar.add(src, arcname=Path(src_path).name)
        return buffer.getvalue()

    async def start(self, container_id: str) -> None:
        self._check("start")
        container = self.containers[container_id]
        self.started.append(container.program)
        exit_code = self.programs[container.program](container)
        container.exit_code = self.exit_codes.get(container.program, exit_code)

    async def wait(self, container_id: str) -> int:
        self._check("wait")
        container = self.containers[container_id]
        if container.program in self.hang:
            self.waiting.set()
            await asyncio.Event().wait()
        return container.exit_code

    async def stream_logs(self, container_id: str, stream: str):
        for chunk in self.containers[container_id].output[stream]:
            yield chunk

    async def remove(self, container_id: str) -> None:
        self.removed_containers.append(container_id)
        self._check("remove")
        self.containers.pop(container_id, None)

    async def create_volume(self, name: str) -> None:
        self._check("create_volume")
        self.created_volumes.append(name)
        path = self.root / "volumes" / name
        path.mkdir(parents=True, exist_ok=True)
        self.volumes[name] = path

    async def remove_volume(self, name: str) -> None:
        self.removed_volumes.append(name)
        self._check("remove_volume")
        path = self.volumes.pop(name, None)
        if path is not None:
            shutil.rmtree(path)

    async def inspect_image(self, name: str) -> dict:
        if name not in self.images:
            raise ImageNotFound(f"image '{name}' not found in daemon")
        return self.images[name]

    async def save_image(self, name: str):
        data = self.saved[name]
        for start in range(0, len(data), 1024):
            yield data[start : start + 1024]

    async def load_image(self, data: bytes) -> None:
        self.loaded.append(data)

    def _detector(self, container: FakeContainer) -> int:
        container.output["stdout"].append(b"detecting\n")
        if self.group_toml is not None:
            container.host_path("/workspace/group.toml").write_text(self.group_toml)
        return 0

    def _analyzer(self, container: FakeContainer) -> int:
        self.analyzed.append(container.host_path("/tmp/metadata.json").read_text())
        return 0

    def _builder(self, container: FakeContainer) -> int:
        container.output["stdout"].append(b"building\nstill building\n")
        container.output["stderr"].append(b"a warning\n")
        write_tree(container.host_path("/launch/config"), {"metadata.toml": "[[processes]]\n"})
        for artifact in self.artifacts:
            bp_dir = container.host_path(f"/launch/{artifact.buildpack}")
            bp_dir.mkdir(parents=True, exist_ok=True)
            if artifact.files is not None:
                write_tree(bp_dir / artifact.name, artifact.files)
            if artifact.descriptor is not None:
                (bp_dir / f"{artifact.name}.toml").write_text(artifact.descriptor)
        return 0


class MemoryImageStore:
    """Image store holding images in a dict; digests hash the config and layers."""

    def __init__(self, images: Optional[Dict[str, Image]] = None) -> None:
        self.images: Dict[str, Image] = dict(images or {})
        self.writes: List[Image] = []
        self.errors: Dict[str, Exception] = {}
        self.closed = False

    async def read_existing(self, name: str) -> Image:
        if "read_existing" in self.errors:
            raise self.errors["read_existing"]
        if name not in self.images:
            raise ImageNotFound(f"{name} not found")
        return self.images[name]

    def append_layer(self, image: Image, layer: Layer) -> Image:
        return models.append_layer(image, layer)

    def set_label(self, image: Image, key: str, value: str) -> Image:
        return models.set_label(image, key, value)

    async def write(self, image: Image) -> str:
        if "write" in self.errors:
            raise self.errors["write"]
        document = {
            "config": image.config.to_document(image.diff_ids),
            "layers": [layer.digest for layer in image.layers],
        }
        digest = calculate_digest(json.dumps(document, sort_keys=True).encode("utf-8"))
        self.writes.append(image)
        self.images[image.name] = replace(image, digest=digest)
        return digest

    async def close(self) -> None:
        self.closed = True


class FakeDockerAPI:
    """A Docker Engine API stand-in served by aiohttp's test server."""

    def __init__(self) -> None:
        self.images: Dict[str, dict] = {}
        self.saved: Dict[str, bytes] = {}
        self.loaded: List[bytes] = []
        self.pulled: List[str] = []
        self.pull_error: Optional[str] = None
        self.load_error: Optional[str] = None
        self.containers: Dict[str, dict] = {}
        self.archives: Dict[tuple, bytes] = {}
        self.volumes: List[str] = []
        self.logs: Dict[str, List[tuple]] = {}
        self.exit_code = 0

    def app(self):
        app = web.Application()
        app.router.add_post("/images/create", self.pull)
        app.router.add_get("/images/get", self.save)
        app.router.add_post("/images/load", self.load)
        app.router.add_get("/images/{name:.+}/json", self.inspect)
        app.router.add_post("/containers/create", self.create)
        app.router.add_put("/containers/{id}/archive", self.put_archive)
        app.router.add_get("/containers/{id}/archive", self.get_archive)
        app.router.add_post("/containers/{id}/start", self.start)
        app.router.add_post("/containers/{id}/wait", self.wait)
        app.router.add_get("/containers/{id}/logs", self.get_logs)
        app.router.add_delete("/containers/{id}", self.remove)
        app.router.add_post("/volumes/create", self.create_volume)
        app.router.add_delete("/volumes/{name}", self.remove_volume)
        return app

    @staticmethod
    def _not_found(message: str):
        return web.json_response({"message": message}, status=404)

    async def pull(self, request):
        self.pulled.append(request.query["fromImage"])
        events = [{"status": "Pulling from library/test"}]
        if self.pull_error:
            events.append({"errorDetail": {"message": self.pull_error}, "error": self.pull_error})
        else:
            events.append({"status": "Downloaded newer image"})
        body = "\n".join(json.dumps(event) for event in events) + "\n"
        return web.Response(text=body, content_type="application/json")

    async def save(self, request):
        name = request.query["names"]
        if name not in self.saved:
            return self._not_found(f"reference does not exist: {name}")
        return web.Response(body=self.saved[name], content_type="application/x-tar")

    async def load(self, request):
        self.loaded.append(await request.read())
        if self.load_error:
            return web.json_response(
                {"errorDetail": {"message": self.load_error}, "error": self.load_error}
            )
        return web.json_response({"stream": "Loaded image\n"})

    async def inspect(self, request):
        name = unquote(request.match_info["name"])
        if name not in self.images:
            return self._not_found(f"No such image: {name}")
        return web.json_response(self.images[name])

    async def create(self, request):
        body = await request.json()
        container_id = f"c{len(self.containers) + 1}"
        self.containers[container_id] = {"body": body, "name": request.query.get("name")}
        return web.json_response({"Id": container_id, "Warnings": []}, status=201)

    async def put_archive(self, request):
        key = (request.match_info["id"], request.query["path"])
        self.archives[key] = await request.read()
        return web.Response(status=200)

    async def get_archive(self, request):
        key = (request.match_info["id"], request.query["path"])
        if key not in self.archives:
            return self._not_found(f"Could not find the file {key[1]} in container")
        return web.Response(body=self.archives[key], content_type="application/x-tar")

    async def start(self, request):
        self.containers[request.match_info["id"]]["started"] = True
        return web.Response(status=204)

    async def wait(self, request):
        return web.json_response({"StatusCode": self.exit_code, "Error": None})

    async def get_logs(self, request):
        wanted = {
            1: request.query.get("stdout") == "1",
            2: request.query.get("stderr") == "1",
        }
        body = b"".join(
            struct.pack(">BxxxI", stream, len(payload)) + payload
            for stream, payload in self.logs.get(request.match_info["id"], [])
            if wanted[stream]
        )
        return web.Response(body=body, content_type="application/vnd.docker.raw-stream")

    async def remove(self, request):
        if request.match_info["id"] not in self.containers:
            return self._not_found("No such container")
        self.containers.pop(request.match_info["id"])
        return web.Response(status=204)

    async def create_volume(self, request):
        body = await request.json()
        self.volumes.append(body["Name"])
        return web.json_response({"Name": body["Name"], "Driver": "local"}, status=201)

    async def remove_volume(self, request):
        name = request.match_info["name"]
        if name not in self.volumes:
            return self._not_found(f"get {name}: no such volume")
        self.volumes.remove(name)
        return web.Response(status=204)
