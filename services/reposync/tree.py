"""
Rebuilds the nested directory structure of a repository from the flat
file list stored in the cache.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Iterator, Optional

from loguru import logger

if TYPE_CHECKING:
    from .cache import FileRecord


@dataclass
class TreeNode:
    """A file or directory in the reconstructed tree."""
    name: str
    path: str
    type: str  # 'file' or 'dir'
    sha: str = ""
    size: Optional[int] = None
    download_url: Optional[str] = None
    children: Optional[list["TreeNode"]] = None  # [] for directories, None for files

    @property
    def is_dir(self) -> bool:
        return self.type == "dir"


def build_tree(files: Iterable["FileRecord"]) -> list[TreeNode]:
    """
    Build a nested tree from flat file records.

    Records are visited in path order. A parent path is a strict prefix of
    its children's paths, so every directory is already in the lookup table
    by the time its first child arrives. Entries whose parent is missing (or
    is a file) are attached to the root.

    Returns:
        Root-level nodes. Directories always carry a list of children,
        empty when the directory has none.
    """
    roots: list[TreeNode] = []
    by_path: dict[str, TreeNode] = {}

    for record in sorted(files, key=lambda f: f.path):
        node = TreeNode(
            name=record.name,
            path=record.path,
            type=record.type,
            sha=record.sha,
            size=record.size,
            download_url=record.download_url,
            children=[] if record.type == "dir" else None,
        )
        by_path[record.path] = node

        if not record.parent_path:
            roots.append(node)
            continue

        parent = by_path.get(record.parent_path)
        if parent is None or parent.children is None:
            logger.warning(
                f"Parent {record.parent_path!r} of {record.path!r} is not a cached directory, "
                f"attaching to root"
            )
            roots.append(node)
            continue

        parent.children.append(node)

    return roots


def iter_tree(nodes: Iterable[TreeNode]) -> Iterator[TreeNode]:
    """Depth-first, pre-order walk."""
    for node in nodes:
        yield node
        if node.children:
            yield from iter_tree(node.children)


def flatten_tree(nodes: Iterable[TreeNode]) -> list[str]:
    """Depth-first list of every path in the tree."""
    return [node.path for node in iter_tree(nodes)]
