"""
Field mask merge

Applies a google.protobuf.FieldMask style update to JSON documents. Mask paths
may use proto field names (snake_case); they are matched against the
lowerCamelCase JSON names the documents are stored with.
"""

import copy
import re
from typing import Any, Dict, List

from search.errors import InvalidArgumentError

_SEGMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def to_lower_camel(segment: str) -> str:
    """update_time -> updateTime; already camel-cased names are unchanged"""
    head, *rest = segment.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def parse_field_mask(paths: List[str]) -> Dict[str, Any]:
    """
    Parse mask paths into a tree

    parse_field_mask(["details.type", "details.severity", "note_name"])
        -> {"details": {"type": {}, "severity": {}}, "noteName": {}}

    A path covering a parent absorbs its children.

    Raises:
        InvalidArgumentError: empty path, empty segment or invalid characters
    """
    tree: Dict[str, Any] = {}

    for path in paths:
        if not path:
            raise InvalidArgumentError("empty field mask path")

        segments = path.split(".")
        for segment in segments:
            if not _SEGMENT_RE.match(segment):
                raise InvalidArgumentError(
                    f"invalid field mask path: {path}",
                    details={"path": path},
                )

        node = tree
        for i, segment in enumerate(segments):
            name = to_lower_camel(segment)
            is_leaf = i == len(segments) - 1

            if name in node and not node[name]:
                # an ancestor is already masked as a whole
                break
            if is_leaf:
                node[name] = {}
            else:
                node = node.setdefault(name, {})

    return tree


def _merge(target: Dict[str, Any], patch: Any, tree: Dict[str, Any]) -> None:
    for name, children in tree.items():
        patch_value = patch.get(name) if isinstance(patch, dict) else None
        has_value = isinstance(patch, dict) and name in patch

        if children:
            if not isinstance(target.get(name), dict):
                if not has_value:
                    continue
                target[name] = {}
            _merge(target[name], patch_value if has_value else {}, children)
            continue

        if has_value:
            target[name] = copy.deepcopy(patch_value)
        else:
            target.pop(name, None)


def apply_field_mask(current: Dict[str, Any], patch: Dict[str, Any], paths: List[str]) -> Dict[str, Any]:
    """
    Merge the masked fields of patch into a copy of current

    Each masked leaf is copied from patch, or removed when patch lacks it.
    Fields outside the mask are untouched.

    Args:
        current: stored document
        patch: caller-supplied partial document
        paths: field mask paths

    Returns:
        merged document (current is not modified)
    """
    merged = copy.deepcopy(current)
    _merge(merged, patch, parse_field_mask(paths))
    return merged
