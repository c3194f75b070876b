"""
DOM snapshot parsing for selector healing.

Turns the serialized page captured at failure time into a queryable tree
of element nodes. Parsing is best-effort: BeautifulSoup's ``html.parser``
backend closes unclosed tags and tolerates malformed markup, so the only
hard failures are oversized or non-text snapshots.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Union
from bs4 import BeautifulSoup, NavigableString, Tag

from ..core.exceptions import InvalidSnapshot, SnapshotTooLarge

logger = logging.getLogger(__name__)

DEFAULT_MAX_SNAPSHOT_BYTES = 2 * 1024 * 1024

_WHITESPACE = re.compile(r"\s+")


def normalize_text(value: str) -> str:
    """Collapse runs of whitespace and strip the ends."""
    return _WHITESPACE.sub(" ", value or "").strip()


@dataclass
class ElementNode:
    """One element of a parsed snapshot."""
    tag: str
    attributes: Dict[str, str]
    classes: List[str]
    text: str
    depth: int
    sibling_index: int
    path: str
    document_index: int
    parent: Optional['ElementNode'] = field(default=None, repr=False, compare=False)
    children: List['ElementNode'] = field(default_factory=list, repr=False, compare=False)
    # Text of this element and all of its descendants; filled in by the analyzer
    full_text: str = field(default="", repr=False, compare=False)

    @property
    def element_id(self) -> str:
        return self.attributes.get("id", "")

    @property
    def path_segments(self) -> List[str]:
        return self.path.split("/")


class ElementTree:
    """Queryable view over the elements of a snapshot, in document order."""

    def __init__(self, roots: List[ElementNode], elements: List[ElementNode]):
        self.roots = roots
        self.elements = elements

    def __iter__(self) -> Iterator[ElementNode]:
        return iter(self.elements)

    def __len__(self) -> int:
        return len(self.elements)

    def find_by_id(self, element_id: str) -> Optional[ElementNode]:
        for node in self.elements:
            if node.element_id == element_id:
                return node
        return None

    def find_by_path(self, path: str) -> Optional[ElementNode]:
        for node in self.elements:
            if node.path == path:
                return node
        return None

    def select(self, predicate: Callable[[ElementNode], bool]) -> List[ElementNode]:
        """Return every element the predicate accepts, in document order."""
        return [node for node in self.elements if predicate(node)]


class DOMAnalyzer:
    """Parses serialized page snapshots into element trees."""

    def __init__(self, max_snapshot_bytes: int = DEFAULT_MAX_SNAPSHOT_BYTES):
        self.max_snapshot_bytes = max_snapshot_bytes

    def parse(self, snapshot: Union[str, bytes]) -> ElementTree:
        """
        Parse a DOM snapshot.

        Args:
            snapshot: Serialized markup, as text or UTF-8 bytes

        Returns:
            ElementTree with every element in pre-order

        Raises:
            SnapshotTooLarge: If the snapshot exceeds the size bound
            InvalidSnapshot: If the snapshot is not text
        """
        if isinstance(snapshot, bytes):
            size = len(snapshot)
            self._check_size(size)
            try:
                snapshot = snapshot.decode("utf-8")
            except UnicodeDecodeError as e:
                raise InvalidSnapshot(f"Snapshot is not valid UTF-8 text: {e}") from e
        elif isinstance(snapshot, str):
            self._check_size(len(snapshot.encode("utf-8")))
        else:
            raise InvalidSnapshot(f"Snapshot must be text, got {type(snapshot).__name__}")

        soup = BeautifulSoup(snapshot, "html.parser")
        elements: List[ElementNode] = []
        roots = self._build_elements(soup, elements)
        self._fill_full_text(elements)

        logger.debug(f"Parsed snapshot into {len(elements)} elements")
        return ElementTree(roots, elements)

    def _check_size(self, size: int) -> None:
        if size > self.max_snapshot_bytes:
            raise SnapshotTooLarge(size, self.max_snapshot_bytes)

    def _build_elements(self, soup: BeautifulSoup, elements: List[ElementNode]) -> List[ElementNode]:
        """
        Walk the parsed markup in pre-order with an explicit stack.

        Snapshots can nest far deeper than the interpreter's recursion limit,
        so the walk never recurses.
        """
        roots: List[ElementNode] = []
        stack = [(tag, None) for tag in reversed(self._child_tags(soup))]
        while stack:
            tag, parent_node = stack.pop()
            siblings = parent_node.children if parent_node is not None else roots
            sibling_index = len(siblings)

            segment = f"{tag.name}[{sibling_index}]"
            node = ElementNode(
                tag=tag.name.lower(),
                attributes=self._extract_attributes(tag),
                classes=self._extract_classes(tag),
                text=self._direct_text(tag),
                depth=parent_node.depth + 1 if parent_node is not None else 0,
                sibling_index=sibling_index,
                path=f"{parent_node.path}/{segment}" if parent_node is not None else segment,
                document_index=len(elements),
                parent=parent_node,
            )
            elements.append(node)
            siblings.append(node)
            stack.extend((child, node) for child in reversed(self._child_tags(tag)))
        return roots

    def _child_tags(self, element: Tag) -> List[Tag]:
        return [child for child in element.children if isinstance(child, Tag)]

    def _fill_full_text(self, elements: List[ElementNode]) -> None:
        # Reverse pre-order visits every child before its parent.
        for node in reversed(elements):
            parts = [node.text] + [child.full_text for child in node.children]
            node.full_text = normalize_text(" ".join(p for p in parts if p))

    def _extract_attributes(self, element: Tag) -> Dict[str, str]:
        attributes = {}
        for name, value in element.attrs.items():
            if isinstance(value, (list, tuple)):
                value = " ".join(value)
            attributes[name.lower()] = value if value is not None else ""
        return attributes

    def _extract_classes(self, element: Tag) -> List[str]:
        raw = element.get("class") or []
        if isinstance(raw, str):
            raw = raw.split()
        classes = []
        for name in raw:
            if name and name not in classes:
                classes.append(name)
        return classes

    def _direct_text(self, element: Tag) -> str:
        # Comments, doctypes and CDATA are NavigableString subclasses.
        parts = [str(s) for s in element.children if type(s) is NavigableString]
        return normalize_text(" ".join(parts))
