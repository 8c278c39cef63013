"""Read-only view over the base portion of an image's layers."""

from typing import Sequence

from ..exceptions import RebaseBoundaryNotFound
from .models import Layer


class LayerLister:
    """Lists an image's layers up to and including a given diffID.

    This is deliberately not an ``Image``: a truncated stack has no digest,
    manifest or config of its own, so only ``layers()`` is offered.
    """

    def __init__(self, layers: Sequence[Layer], top_diff_id: str) -> None:
        self._layers = tuple(layers)
        self.top_diff_id = top_diff_id

    def boundary_index(self) -> int:
        """Index of the lowest layer whose diffID is the top diffID.

        Raises:
            RebaseBoundaryNotFound: If no layer matches
        """
        if self.top_diff_id:
            for index, layer in enumerate(self._layers):
                if layer.diff_id == self.top_diff_id:
                    return index
        raise RebaseBoundaryNotFound(
            f"could not find base layer {self.top_diff_id or '<unset>'} in image"
        )

    def layers(self) -> tuple[Layer, ...]:
        return self._layers[: self.boundary_index() + 1]
