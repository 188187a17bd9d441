"""Template tree -> sandbox mount tree.

Mount tree shape, as expected by the sandbox runtime:

    {"index.html": {"file": {"contents": "..."}},
     "src": {"directory": {"main.js": {"file": {"contents": "..."}}}}}

The root folder's own name is dropped: callers mount the *contents* of the
root, never the root as a subdirectory.

Precondition: every node is a well-formed TemplateFile or TemplateFolder.
Malformed nodes are a caller bug and are not handled here.
"""

from __future__ import annotations

from typing import Any

from playground.templates.tree import TemplateFolder, TemplateItem

MountNode = dict[str, Any]
MountTree = dict[str, MountNode]


def mount_key(item: TemplateItem) -> str:
    if isinstance(item, TemplateFolder):
        return item.folder_name
    return item.name


def _mount_node(item: TemplateItem) -> MountNode:
    if isinstance(item, TemplateFolder):
        return {"directory": transform_to_mount_tree(item)}
    return {"file": {"contents": item.content}}


def transform_to_mount_tree(root: TemplateFolder) -> MountTree:
    out: MountTree = {}
    for item in root.items:
        out[mount_key(item)] = _mount_node(item)
    return out


def count_mount_files(tree: MountTree) -> int:
    total = 0
    for node in tree.values():
        if "file" in node:
            total += 1
        else:
            total += count_mount_files(node.get("directory") or {})
    return total


__all__ = [
    "MountNode",
    "MountTree",
    "count_mount_files",
    "mount_key",
    "transform_to_mount_tree",
]
