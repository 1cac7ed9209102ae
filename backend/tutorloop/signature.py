from collections.abc import Iterable

from tutorloop.session import SurfaceElement


def compute_signature(elements: Iterable[SurfaceElement]) -> str:
    """
    Cheap fingerprint of the work surface.

    Built from the (id, version) pair of every live element in surface order,
    so bumping any element's version (or adding/removing one) changes it.
    An empty surface yields "".
    """
    return "|".join(
        f"{element.id}:{element.version}" for element in elements if not element.is_deleted
    )


def parse_elements(raw: object) -> list[SurfaceElement]:
    """Read canvas elements from a client payload, skipping malformed entries."""
    if not isinstance(raw, list):
        return []
    elements: list[SurfaceElement] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        element_id = item.get("id")
        version = item.get("version")
        if not isinstance(element_id, str) or not isinstance(version, (int, float)):
            continue
        elements.append(
            SurfaceElement(
                id=element_id,
                version=int(version),
                is_deleted=bool(item.get("isDeleted", False)),
            )
        )
    return elements
