"""
Owner references

Every generated object points back at its PostgresCluster so the Kubernetes
garbage collector removes it with the cluster. At most one owner may be the
controller; that owner receives the object's change events.
"""

from typing import Optional

from postgres_operator.errors import AlreadyOwnedError
from postgres_operator.models import Cluster


def owner_reference(owner: Cluster, controller: bool) -> dict:
    reference = {
        "apiVersion": owner.reference()["apiVersion"],
        "kind": owner.reference()["kind"],
        "name": owner.name,
        "uid": owner.uid,
    }
    if controller:
        reference["controller"] = True
        reference["blockOwnerDeletion"] = True
    return reference


def controller_of(obj: dict) -> Optional[dict]:
    """Return the controller owner reference of obj, if any"""
    for reference in (obj.get("metadata") or {}).get("ownerReferences") or []:
        if reference.get("controller"):
            return reference
    return None


def is_controlled_by(obj: dict, owner: Cluster) -> bool:
    reference = controller_of(obj)
    return reference is not None and reference.get("uid") == owner.uid


def assign_owner(owner: Cluster, dependent: dict, exclusive: bool) -> dict:
    """
    Attach owner to dependent, in place

    Args:
        owner: The PostgresCluster that owns dependent
        dependent: Object manifest; its metadata.ownerReferences is updated
        exclusive: Set owner as the controller rather than a plain owner

    Returns:
        The dependent, for chaining

    Raises:
        AlreadyOwnedError: exclusive is set and another controller exists
    """
    metadata = dependent.setdefault("metadata", {})
    references = list(metadata.get("ownerReferences") or [])

    if exclusive:
        existing = controller_of(dependent)
        if existing is not None and existing.get("uid") != owner.uid:
            raise AlreadyOwnedError(
                f"{dependent.get('kind', 'object')} {metadata.get('name')} is already "
                f"controlled by {existing.get('kind')} {existing.get('name')}"
            )

    reference = owner_reference(owner, controller=exclusive)
    for index, current in enumerate(references):
        if current.get("uid") == owner.uid:
            # A plain owner reference never demotes an existing controller one
            if current.get("controller") and not exclusive:
                reference = dict(current)
            references[index] = reference
            break
    else:
        references.append(reference)

    metadata["ownerReferences"] = references
    return dependent
