"""Release image types and the provider protocol."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import yaml

from ...utils.errors import ReleaseLookupError


@dataclass(frozen=True)
class ReleaseImage:
    """A resolved release: its pull spec and the image of every component."""

    pull_spec: str
    images: dict[str, str] = field(default_factory=dict)

    def component_images(self) -> dict[str, str]:
        """Return a copy of the component name to image pull spec mapping."""
        return dict(self.images)

    def image(self, component: str) -> str:
        """Return the image of one component.

        Raises:
            ReleaseLookupError: If the release does not ship the component
        """
        try:
            return self.images[component]
        except KeyError:
            raise ReleaseLookupError(f"release {self.pull_spec} has no image for component {component}") from None


class ReleaseImageProvider(Protocol):
    """Protocol for resolving a release pull spec to component images."""

    def lookup(
        self,
        pull_spec: str,
        pull_secret_name: str | None = None,
        namespace: str | None = None,
    ) -> ReleaseImage:
        """Resolve a release image.

        Args:
            pull_spec: Release image pull spec
            pull_secret_name: Name of a docker config secret used to pull it
            namespace: Namespace the pull secret lives in

        Returns:
            The resolved release

        Raises:
            ReleaseLookupError: If the release cannot be resolved
        """
        ...


def parse_image_references(pull_spec: str, document: str) -> ReleaseImage:
    """Parse an ``image-references`` ImageStream into a ReleaseImage.

    Each ``spec.tags[]`` entry maps its ``name`` to ``from.name``.

    Raises:
        ReleaseLookupError: If the document is not a parseable ImageStream
    """
    try:
        data: Any = yaml.safe_load(document)
    except yaml.YAMLError as e:
        raise ReleaseLookupError(f"cannot parse image references of {pull_spec}: {e}") from e
    if not isinstance(data, dict) or data.get("kind") != "ImageStream":
        raise ReleaseLookupError(f"image references of {pull_spec} are not an ImageStream")

    images: dict[str, str] = {}
    for tag in (data.get("spec") or {}).get("tags") or []:
        name = tag.get("name")
        source = (tag.get("from") or {}).get("name")
        if name and source:
            images[name] = source
    return ReleaseImage(pull_spec=pull_spec, images=images)
