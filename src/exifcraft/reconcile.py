"""
Tag reconciliation: decide which freshly generated values are actually written.

Every function here is pure. The orchestrator feeds it the pending write-set built
from the task outputs, the per-tag overwrite policies and a snapshot of the values
currently stored in the image, and gets back the subset that should be committed.
Dry runs go through exactly the same path.
"""

from collections.abc import Iterable, Mapping
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field


if TYPE_CHECKING:
    from exifcraft.config import TagBinding


class OverwritePolicy(StrEnum):
    """Per-tag rule for replacing an existing value."""

    ALLOW = "allow"
    AVOID = "avoid"


class ReconcileResult(BaseModel):
    """Outcome of reconciling one image's pending write-set."""

    to_write: dict[str, str] = Field(default_factory=dict)
    skipped: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_write


def is_empty_value(value: Any) -> bool:  # noqa: ANN401
    """
    Return True when an existing tag value counts as empty.

    Missing values and whitespace-only strings are empty. Sequences are empty unless at
    least one element is itself non-empty, so keyword lists like ``["", " "]`` are empty;
    mappings (XMP structures) follow the same rule over their values.
    Any other scalar (numbers, dates) is non-empty.

    Examples:
        >>> is_empty_value(None), is_empty_value("  "), is_empty_value(["", [" "]])
        (True, True, True)
        >>> is_empty_value(["", "Beach"]), is_empty_value(0)
        (False, False)

    """
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, Mapping):
        return all(is_empty_value(item) for item in value.values())
    if isinstance(value, (list, tuple, set, frozenset)):
        return all(is_empty_value(item) for item in value)
    return False


def reconcile(
    pending: Mapping[str, str],
    policies: Mapping[str, OverwritePolicy],
    existing: Mapping[str, Any],
    *,
    default_policy: OverwritePolicy = OverwritePolicy.ALLOW,
) -> ReconcileResult:
    """
    Resolve a pending write-set against the tag values already present in the image.

    Args:
        pending: Tag name to generated value, accumulated across the enabled tasks
        policies: Tag name to overwrite policy; tags without an entry use default_policy
        existing: Tag name to current value; absent tags are treated as empty
        default_policy: Policy applied to tags that have no configured policy

    Returns:
        ReconcileResult whose ``to_write`` holds only the tags to commit and whose
        ``skipped`` lists the tags protected by the AVOID policy, in pending order.

    Examples:
        >>> reconcile({"Title": "Sunset"}, {"Title": OverwritePolicy.AVOID}, {"Title": "Old"})
        ReconcileResult(to_write={}, skipped=['Title'])

    """
    to_write: dict[str, str] = {}
    skipped: list[str] = []
    for tag, value in pending.items():
        policy = policies.get(tag, default_policy)
        if policy == OverwritePolicy.AVOID and not is_empty_value(existing.get(tag)):
            skipped.append(tag)
            continue
        to_write[tag] = value
    return ReconcileResult(to_write=to_write, skipped=skipped)


def merge_task_output(
    pending: dict[str, str],
    policies: dict[str, OverwritePolicy],
    bindings: "Iterable[TagBinding]",
    value: str,
) -> None:
    """
    Fold one task's generated value into the pending write-set and policy map.

    Mutates: pending, policies. A later task binding the same tag replaces both the
    value and the policy recorded by an earlier task; a binding without a policy
    removes the earlier one so the default applies.

    Examples:
        >>> from exifcraft.config import TagBinding
        >>> pending, policies = {}, {}
        >>> merge_task_output(pending, policies, [TagBinding(name="Description")], "A")
        >>> merge_task_output(pending, policies, [TagBinding(name="Description")], "B")
        >>> pending
        {'Description': 'B'}

    """
    for binding in bindings:
        pending[binding.name] = value
        if binding.overwrite_policy is None:
            policies.pop(binding.name, None)
        else:
            policies[binding.name] = binding.overwrite_policy


def preview(value: str, length: int = 100) -> str:
    """
    Shorten a generated value for logs and dry-run reports.

    Examples:
        >>> preview("Golden light over the bay", length=11)
        'Golden ligh...'

    """
    return value if len(value) <= length else f"{value[:length]}..."
