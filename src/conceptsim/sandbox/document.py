"""Document model for generated markup.

Markup is parsed with BeautifulSoup into a tree that lives entirely inside one
sandbox instance. Generated code reaches it only through the ``document`` and
``canvas`` names injected into the sandbox namespace, which wrap the parsed
tags.
"""

from __future__ import annotations

from typing import Any, Iterator

from bs4 import BeautifulSoup, Tag

from ..errors import SandboxLimitError

# Active content is never taken from markup; the artifact script is the only code path.
STRIPPED_TAGS = {"script", "iframe", "object", "embed", "frame", "frameset", "base"}


class MarkupError(ValueError):
    pass


class Element:
    """Script-facing handle on one parsed tag."""

    def __init__(self, document: "SandboxDocument", tag: Tag) -> None:
        self._document = document
        self._tag = tag

    @property
    def tag(self) -> str:
        return self._tag.name

    @property
    def id(self) -> str | None:
        return self.get_attribute("id")

    @property
    def parent(self) -> "Element | None":
        parent = self._tag.parent
        if parent is None or parent is self._document._soup:
            return None
        return self._document._wrap(parent)

    @property
    def children(self) -> list["Element | str"]:
        return [self._document._wrap(node) if isinstance(node, Tag) else str(node) for node in self._tag.contents]

    def get_attribute(self, name: str) -> str | None:
        value = self._tag.get(name)
        if isinstance(value, list):
            return " ".join(value)
        return value

    def set_attribute(self, name: str, value: Any) -> None:
        if name.lower().startswith("on"):
            return
        self._tag[name] = str(value)

    def append_child(self, child: "Element | str") -> "Element | str":
        if isinstance(child, Element):
            self._tag.append(child._tag)
        else:
            self._tag.append(str(child))
        return child

    def remove_child(self, child: "Element | str") -> None:
        if isinstance(child, Element):
            if child._tag.parent is not self._tag:
                raise ValueError("node is not a child of this element")
            child._tag.extract()
            return
        for node in self._tag.contents:
            if not isinstance(node, Tag) and str(node) == child:
                node.extract()
                return
        raise ValueError("node is not a child of this element")

    def clear_children(self) -> None:
        self._tag.clear()

    @property
    def text_content(self) -> str:
        return self._tag.get_text()

    @text_content.setter
    def text_content(self, value: Any) -> None:
        self._tag.string = str(value)

    def iter_elements(self) -> Iterator["Element"]:
        for descendant in self._tag.find_all(True):
            yield self._document._wrap(descendant)

    def to_html(self) -> str:
        return str(self._tag)

    def __repr__(self) -> str:
        return f"<Element {self.tag} id={self.id!r}>"


class CanvasContext2D:
    """Recording 2D drawing context.

    Commands accumulate into the current frame; clearing the whole canvas
    starts a new frame.
    """

    _STYLE_PROPERTIES = ("fill_style", "stroke_style", "line_width", "font", "global_alpha", "text_align")

    def __init__(self, canvas: "CanvasElement", max_commands: int) -> None:
        object.__setattr__(self, "_canvas", canvas)
        object.__setattr__(self, "_max_commands", max_commands)
        object.__setattr__(self, "commands", [])
        object.__setattr__(self, "frames", 0)
        object.__setattr__(self, "_styles", {"fill_style": "#000000", "stroke_style": "#000000", "line_width": 1.0})

    def __getattr__(self, name: str) -> Any:
        if name in self._STYLE_PROPERTIES:
            return self._styles.get(name)
        raise AttributeError(name)

    def __setattr__(self, name: str, value: Any) -> None:
        if name not in self._STYLE_PROPERTIES:
            raise AttributeError(f"canvas context has no property '{name}'")
        self._styles[name] = value
        self._record("set", name, value)

    def _record(self, op: str, *args: Any) -> None:
        if len(self.commands) >= self._max_commands:
            raise SandboxLimitError("draw command", self._max_commands)
        self.commands.append({"op": op, "args": list(args)})

    def clear_rect(self, x: float, y: float, w: float, h: float) -> None:
        if x <= 0 and y <= 0 and w >= self._canvas.width and h >= self._canvas.height:
            self.commands.clear()
            object.__setattr__(self, "frames", self.frames + 1)
        self._record("clear_rect", x, y, w, h)

    def fill_rect(self, x: float, y: float, w: float, h: float) -> None:
        self._record("fill_rect", x, y, w, h)

    def stroke_rect(self, x: float, y: float, w: float, h: float) -> None:
        self._record("stroke_rect", x, y, w, h)

    def begin_path(self) -> None:
        self._record("begin_path")

    def close_path(self) -> None:
        self._record("close_path")

    def move_to(self, x: float, y: float) -> None:
        self._record("move_to", x, y)

    def line_to(self, x: float, y: float) -> None:
        self._record("line_to", x, y)

    def rect(self, x: float, y: float, w: float, h: float) -> None:
        self._record("rect", x, y, w, h)

    def arc(self, x: float, y: float, radius: float, start: float, end: float, counterclockwise: bool = False) -> None:
        if radius < 0:
            raise ValueError("arc radius must be non-negative")
        self._record("arc", x, y, radius, start, end, counterclockwise)

    def fill(self) -> None:
        self._record("fill")

    def stroke(self) -> None:
        self._record("stroke")

    def fill_text(self, text: Any, x: float, y: float) -> None:
        self._record("fill_text", str(text), x, y)

    def save(self) -> None:
        self._record("save")

    def restore(self) -> None:
        self._record("restore")

    def translate(self, x: float, y: float) -> None:
        self._record("translate", x, y)

    def rotate(self, angle: float) -> None:
        self._record("rotate", angle)

    def scale(self, x: float, y: float) -> None:
        self._record("scale", x, y)



class CanvasElement(Element):
    def __init__(self, document: "SandboxDocument", tag: Tag, *, max_commands: int = 5000) -> None:
        super().__init__(document, tag)
        self._max_commands = max_commands
        self._context: CanvasContext2D | None = None

    def _dimension(self, name: str, default: int) -> int:
        try:
            return int(float(self.get_attribute(name) or default))
        except ValueError:
            return default

    @property
    def width(self) -> int:
        return self._dimension("width", 300)

    @property
    def height(self) -> int:
        return self._dimension("height", 150)

    def get_context(self, kind: str = "2d") -> CanvasContext2D | None:
        if kind != "2d":
            return None
        if self._context is None:
            self._context = CanvasContext2D(self, self._max_commands)
        return self._context


class SandboxDocument:
    """Per-instance document; nothing in it is shared with the host."""

    def __init__(self, *, max_draw_commands: int = 5000) -> None:
        self.max_draw_commands = max_draw_commands
        self._soup = BeautifulSoup("<body></body>", "html.parser")
        self._elements: dict[int, Element] = {}
        self.body = self._wrap(self._soup.body)
        self.stripped_tags: list[str] = []

    def _wrap(self, tag: Tag) -> Element:
        # one handle per tag, so repeated lookups return the same object
        element = self._elements.get(id(tag))
        if element is None:
            if tag.name == "canvas":
                element = CanvasElement(self, tag, max_commands=self.max_draw_commands)
            else:
                element = Element(self, tag)
            self._elements[id(tag)] = element
        return element

    @classmethod
    def parse(cls, markup: str, *, max_draw_commands: int = 5000) -> "SandboxDocument":
        document = cls(max_draw_commands=max_draw_commands)
        fragment = BeautifulSoup(markup, "html.parser")
        for tag in fragment.find_all(list(STRIPPED_TAGS)):
            if tag.decomposed:
                continue
            document.stripped_tags.append(tag.name)
            document.stripped_tags.extend(inner.name for inner in tag.find_all(True))
            tag.decompose()
        for tag in fragment.find_all(True):
            for name in [name for name in tag.attrs if name.lower().startswith("on")]:
                del tag[name]
        root = fragment.body or fragment
        body = document.body._tag
        for node in list(root.contents):
            body.append(node.extract())
        if body.find(True) is None:
            raise MarkupError("markup contains no elements")
        return document

    def create_element(self, tag: str, attributes: dict[str, str] | None = None) -> Element:
        attrs = {name: str(value) for name, value in (attributes or {}).items() if not name.lower().startswith("on")}
        return self._wrap(self._soup.new_tag(tag.lower(), attrs=attrs))

    def get_element_by_id(self, element_id: str) -> Element | None:
        found = self.body._tag.find(id=element_id)
        return self._wrap(found) if found is not None else None

    def get_elements_by_tag_name(self, tag: str) -> list[Element]:
        return [self._wrap(found) for found in self.body._tag.find_all(tag.lower())]

    @property
    def canvases(self) -> list[CanvasElement]:
        return [self._wrap(found) for found in self.body._tag.find_all("canvas")]

    def clear(self) -> None:
        self.body._tag.clear()
        self._elements = {id(self.body._tag): self.body}

    def show_error(self, title: str, message: str) -> None:
        self.clear()
        block = self._soup.new_tag("div", attrs={"class": "error"})
        heading = self._soup.new_tag("h3")
        heading.string = title
        detail = self._soup.new_tag("p")
        detail.string = message
        block.append(heading)
        block.append(detail)
        self.body._tag.append(block)

    def to_html(self) -> str:
        return self.body.to_html()
