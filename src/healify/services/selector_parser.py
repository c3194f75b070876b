"""
Locator grammar for selector healing.

Parses the pragmatic subset of locator syntaxes that test suites actually
use into a structured predicate:

- CSS compounds: ``button``, ``#id``, ``.a.b``, ``[attr]``, ``[attr=v]``,
  ``[attr^=v]``, ``[attr$=v]``, ``[attr*=v]``, ``[attr~=v]``, plus the
  ``:has-text("...")`` / ``:text-is("...")`` pseudo-classes
- Engine prefixes: ``css=``, ``id=``, ``name=``, ``class=``, ``link=``,
  ``text=``, ``testid=`` / ``data-testid=``, ``xpath=``
- Single-step XPath: ``//tag[@attr='v']``, ``contains()``,
  ``starts-with()``, ``text()``

Anything else (combinators, positional pseudo-classes, multi-step XPath)
raises UnsupportedSelectorSyntax so the failure can be escalated.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..core.exceptions import UnsupportedSelectorSyntax
from .dom_analyzer import ElementNode, normalize_text

logger = logging.getLogger(__name__)

_IDENT = re.compile(r"(?:[\w-]|\\.)+")
_TAG = re.compile(r"\*|[A-Za-z][\w-]*")
_QUOTED = r"\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*'"
_ATTRIBUTE = re.compile(
    r"\[\s*([\w:.-]+)\s*(?:([~^$*]?=)\s*(" + _QUOTED + r"|[^\]\s\"']+)\s*)?\]"
)
_TEXT_PSEUDO = re.compile(r":(has-text|text-is|text)\(\s*(" + _QUOTED + r")\s*\)")
_PREFIX = re.compile(r"^(css|id|name|class|link|text|testid|data-testid|xpath)\s*=\s*", re.IGNORECASE)

_XPATH_STEP = re.compile(r"^//(\*|[A-Za-z][\w-]*)((?:\[.*\])?)$", re.DOTALL)
_XPATH_CONDITIONS = [
    ("attr_eq", re.compile(r"@([\w:.-]+)\s*=\s*(" + _QUOTED + r")")),
    ("contains_text", re.compile(r"contains\(\s*(?:text\(\)|\.)\s*,\s*(" + _QUOTED + r")\s*\)")),
    ("contains_attr", re.compile(r"contains\(\s*@([\w:.-]+)\s*,\s*(" + _QUOTED + r")\s*\)")),
    ("starts_attr", re.compile(r"starts-with\(\s*@([\w:.-]+)\s*,\s*(" + _QUOTED + r")\s*\)")),
    ("text_eq", re.compile(r"(?:text\(\)|normalize-space\(\s*(?:\.|text\(\))?\s*\)|\.)\s*=\s*(" + _QUOTED + r")")),
    ("attr_exists", re.compile(r"@([\w:.-]+)")),
]
_XPATH_AND = re.compile(r"\s+and\s+")

TEST_ID_ATTRIBUTE = "data-testid"


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        value = value[1:-1]
    return re.sub(r"\\(.)", r"\1", value)


def _unescape(ident: str) -> str:
    return re.sub(r"\\(.)", r"\1", ident)


def quote(value: str) -> str:
    """Quote a value for use inside a synthesized selector."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


@dataclass(frozen=True)
class AttributePredicate:
    """One ``[name op value]`` condition."""
    name: str
    operator: str = "exists"
    value: Optional[str] = None

    def matches(self, actual: Optional[str]) -> bool:
        if actual is None:
            return False
        if self.operator == "exists":
            return True
        expected = self.value or ""
        if self.operator == "=":
            return actual == expected
        if self.operator == "^=":
            return bool(expected) and actual.startswith(expected)
        if self.operator == "$=":
            return bool(expected) and actual.endswith(expected)
        if self.operator == "*=":
            return bool(expected) and expected in actual
        if self.operator == "~=":
            return expected in actual.split()
        return False


@dataclass
class SelectorPredicate:
    """Structured form of a locator string."""
    source: str
    syntax: str = "css"
    tag: Optional[str] = None
    element_id: Optional[str] = None
    classes: List[str] = field(default_factory=list)
    attributes: List[AttributePredicate] = field(default_factory=list)
    text: Optional[str] = None
    text_match: str = "equals"

    @property
    def is_empty(self) -> bool:
        return not (self.tag or self.element_id or self.classes or self.attributes or self.text)

    def matches(self, node: ElementNode) -> bool:
        """Exact evaluation of the predicate against one element."""
        if self.tag and node.tag != self.tag:
            return False
        if self.element_id is not None and node.element_id != self.element_id:
            return False
        if any(cls not in node.classes for cls in self.classes):
            return False
        if not all(attr.matches(node.attributes.get(attr.name)) for attr in self.attributes):
            return False
        if self.text is not None:
            candidate = node.text or node.full_text
            expected = normalize_text(self.text)
            if self.text_match == "contains":
                return expected.lower() in candidate.lower()
            return candidate == expected
        return True


class SelectorParser:
    """Parses locator strings into SelectorPredicate objects."""

    def parse(self, selector: str) -> SelectorPredicate:
        """
        Parse a locator string.

        Raises:
            UnsupportedSelectorSyntax: If the locator is empty or outside the
                supported subset
        """
        if not isinstance(selector, str) or not selector.strip():
            raise UnsupportedSelectorSyntax(str(selector), "empty selector")

        source = selector
        selector = selector.strip()

        prefix = _PREFIX.match(selector)
        if prefix:
            engine = prefix.group(1).lower()
            body = selector[prefix.end():].strip()
            if not body:
                raise UnsupportedSelectorSyntax(source, f"{engine}= prefix without a value")
            return self._parse_engine(source, engine, body)

        if selector.startswith("/") or selector.startswith("("):
            return self._parse_xpath(source, selector)

        return self._parse_css(source, selector)

    def _parse_engine(self, source: str, engine: str, body: str) -> SelectorPredicate:
        if engine == "css":
            return self._parse_css(source, body)
        if engine == "xpath":
            return self._parse_xpath(source, body)
        if engine == "text":
            return SelectorPredicate(source=source, syntax="text", text=_unquote(body))
        if engine == "link":
            return SelectorPredicate(source=source, syntax="text", tag="a", text=_unquote(body))
        if engine in ("testid", "data-testid"):
            return SelectorPredicate(
                source=source, syntax="testid",
                attributes=[AttributePredicate(TEST_ID_ATTRIBUTE, "=", _unquote(body))],
            )
        if engine == "id":
            return SelectorPredicate(source=source, syntax="css", element_id=_unquote(body))
        if engine == "name":
            return SelectorPredicate(
                source=source, syntax="css",
                attributes=[AttributePredicate("name", "=", _unquote(body))],
            )
        # class=
        classes = _unquote(body).split()
        return SelectorPredicate(source=source, syntax="css", classes=classes)

    def _parse_css(self, source: str, selector: str) -> SelectorPredicate:
        predicate = SelectorPredicate(source=source, syntax="css")
        pos = 0
        length = len(selector)

        tag_match = _TAG.match(selector)
        if tag_match:
            if tag_match.group(0) != "*":
                predicate.tag = tag_match.group(0).lower()
            pos = tag_match.end()

        while pos < length:
            char = selector[pos]
            if char == "#":
                ident = _IDENT.match(selector, pos + 1)
                if not ident:
                    raise UnsupportedSelectorSyntax(source, "expected an id after '#'", pos)
                if predicate.element_id is not None:
                    raise UnsupportedSelectorSyntax(source, "more than one id", pos)
                predicate.element_id = _unescape(ident.group(0))
                pos = ident.end()
            elif char == ".":
                ident = _IDENT.match(selector, pos + 1)
                if not ident:
                    raise UnsupportedSelectorSyntax(source, "expected a class after '.'", pos)
                name = _unescape(ident.group(0))
                if name not in predicate.classes:
                    predicate.classes.append(name)
                pos = ident.end()
            elif char == "[":
                attr = _ATTRIBUTE.match(selector, pos)
                if not attr:
                    raise UnsupportedSelectorSyntax(source, "malformed attribute predicate", pos)
                predicate.attributes.append(self._attribute(attr.group(1), attr.group(2), attr.group(3)))
                pos = attr.end()
            elif char == ":":
                pseudo = _TEXT_PSEUDO.match(selector, pos)
                if not pseudo:
                    raise UnsupportedSelectorSyntax(source, "unsupported pseudo-class", pos)
                if predicate.text is not None:
                    raise UnsupportedSelectorSyntax(source, "more than one text predicate", pos)
                predicate.text = _unquote(pseudo.group(2))
                predicate.text_match = "equals" if pseudo.group(1) == "text-is" else "contains"
                pos = pseudo.end()
            elif char.isspace() or char in ">+~,":
                raise UnsupportedSelectorSyntax(source, "combinators and selector lists are not supported", pos)
            else:
                raise UnsupportedSelectorSyntax(source, f"unexpected character {char!r}", pos)

        if predicate.is_empty:
            raise UnsupportedSelectorSyntax(source, "selector does not constrain any element property")
        return predicate

    def _attribute(self, name: str, operator: Optional[str], raw_value: Optional[str]) -> AttributePredicate:
        name = name.lower()
        if operator is None:
            return AttributePredicate(name)
        return AttributePredicate(name, operator, _unquote(raw_value))

    def _parse_xpath(self, source: str, selector: str) -> SelectorPredicate:
        step = _XPATH_STEP.match(selector)
        if not step:
            raise UnsupportedSelectorSyntax(source, "only single-step '//tag[...]' XPath is supported")

        predicate = SelectorPredicate(source=source, syntax="xpath")
        if step.group(1) != "*":
            predicate.tag = step.group(1).lower()

        for condition in self._split_brackets(source, step.group(2)):
            for part in self._split_and(condition):
                self._apply_xpath_condition(source, predicate, part)

        if predicate.is_empty:
            raise UnsupportedSelectorSyntax(source, "selector does not constrain any element property")
        return predicate

    def _split_brackets(self, source: str, text: str) -> List[str]:
        """Split ``[a][b]`` into ``['a', 'b']`` while honouring quotes."""
        conditions = []
        depth = 0
        quote_char = None
        start = 0
        for index, char in enumerate(text):
            if quote_char:
                if char == quote_char:
                    quote_char = None
                continue
            if char in "\"'":
                quote_char = char
            elif char == "[":
                if depth == 0:
                    start = index + 1
                depth += 1
            elif char == "]":
                depth -= 1
                if depth == 0:
                    conditions.append(text[start:index].strip())
                elif depth < 0:
                    raise UnsupportedSelectorSyntax(source, "unbalanced brackets")
        if depth != 0 or quote_char:
            raise UnsupportedSelectorSyntax(source, "unbalanced brackets or quotes")
        return conditions

    def _split_and(self, condition: str) -> List[str]:
        parts = []
        quote_char = None
        start = 0
        index = 0
        while index < len(condition):
            char = condition[index]
            if quote_char:
                if char == quote_char:
                    quote_char = None
            elif char in "\"'":
                quote_char = char
            else:
                joiner = _XPATH_AND.match(condition, index)
                if joiner:
                    parts.append(condition[start:index].strip())
                    start = index = joiner.end()
                    continue
            index += 1
        parts.append(condition[start:].strip())
        return parts

    def _apply_xpath_condition(self, source: str, predicate: SelectorPredicate, condition: str) -> None:
        for kind, pattern in _XPATH_CONDITIONS:
            match = pattern.fullmatch(condition)
            if not match:
                continue
            if kind == "attr_eq":
                name, value = match.group(1).lower(), _unquote(match.group(2))
                if name == "id":
                    predicate.element_id = value
                else:
                    predicate.attributes.append(AttributePredicate(name, "=", value))
            elif kind == "contains_attr":
                name, value = match.group(1).lower(), _unquote(match.group(2))
                if name == "class" and " " not in value.strip():
                    predicate.classes.append(value.strip())
                else:
                    predicate.attributes.append(AttributePredicate(name, "*=", value))
            elif kind == "starts_attr":
                predicate.attributes.append(
                    AttributePredicate(match.group(1).lower(), "^=", _unquote(match.group(2)))
                )
            elif kind == "text_eq":
                predicate.text = _unquote(match.group(1))
                predicate.text_match = "equals"
            elif kind == "contains_text":
                predicate.text = _unquote(match.group(1))
                predicate.text_match = "contains"
            else:
                predicate.attributes.append(AttributePredicate(match.group(1).lower()))
            return
        raise UnsupportedSelectorSyntax(source, f"unsupported XPath condition [{condition}]")


_default_parser = SelectorParser()


def parse_selector(selector: str) -> SelectorPredicate:
    """Parse a locator string with the default parser."""
    return _default_parser.parse(selector)
