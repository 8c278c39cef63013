"""Build metadata recorded on exported images.

The metadata is the provenance record of an image: which run image it sits
on, which layers hold the app and config, and which layers each buildpack
contributed. It is stored as JSON in a single image label::

    {
      "run_image": {"name": "...", "sha": "sha256:..."},
      "app": {"sha": "sha256:..."},
      "config": {"sha": "sha256:..."},
      "buildpacks": [
        {"key": "...", "layers": {"<name>": {"sha": "sha256:...", "data": ...}}}
      ]
    }
"""

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass
class RunImageMetadata:
    name: str = ""
    sha: str = ""


@dataclass
class LayerRef:
    sha: str = ""


@dataclass
class LayerMetadata:
    sha: str
    data: Any = None


@dataclass
class BuildpackMetadata:
    key: str
    layers: dict[str, LayerMetadata] = field(default_factory=dict)


@dataclass
class BuildMetadata:
    run_image: RunImageMetadata = field(default_factory=RunImageMetadata)
    app: LayerRef = field(default_factory=LayerRef)
    config: LayerRef = field(default_factory=LayerRef)
    buildpacks: list[BuildpackMetadata] = field(default_factory=list)

    def buildpack(self, key: str) -> BuildpackMetadata | None:
        for buildpack in self.buildpacks:
            if buildpack.key == key:
                return buildpack
        return None

    def layer_shas(self) -> list[str]:
        """SHAs of every layer this image contributes on top of the run image."""
        shas = [self.app.sha, self.config.sha]
        for buildpack in self.buildpacks:
            shas.extend(layer.sha for layer in buildpack.layers.values())
        return shas

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_image": {"name": self.run_image.name, "sha": self.run_image.sha},
            "app": {"sha": self.app.sha},
            "config": {"sha": self.config.sha},
            "buildpacks": [
                {
                    "key": buildpack.key,
                    "layers": {
                        name: {"sha": layer.sha, "data": layer.data}
                        for name, layer in buildpack.layers.items()
                    },
                }
                for buildpack in self.buildpacks
            ],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BuildMetadata":
        """Build metadata from a decoded label.

        Raises:
            ValueError: If the document does not have the expected shape
        """
        if not isinstance(data, dict):
            raise ValueError("Build metadata must be a JSON object")
        try:
            run_image = data.get("run_image") or {}
            buildpacks = []
            for entry in data.get("buildpacks") or []:
                layers = {
                    name: LayerMetadata(sha=layer.get("sha", ""), data=layer.get("data"))
                    for name, layer in (entry.get("layers") or {}).items()
                }
                buildpacks.append(BuildpackMetadata(key=entry["key"], layers=layers))
            return cls(
                run_image=RunImageMetadata(
                    name=run_image.get("name", ""), sha=run_image.get("sha", "")
                ),
                app=LayerRef(sha=(data.get("app") or {}).get("sha", "")),
                config=LayerRef(sha=(data.get("config") or {}).get("sha", "")),
                buildpacks=buildpacks,
            )
        except (AttributeError, KeyError, TypeError) as e:
            raise ValueError(f"Malformed build metadata: {e}") from e

    @classmethod
    def from_json(cls, label: str) -> "BuildMetadata":
        """Parse the label value.

        Raises:
            ValueError: If the label is not valid metadata JSON
        """
        try:
            data = json.loads(label)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid build metadata JSON: {e}") from e
        return cls.from_dict(data)
